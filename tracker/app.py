from typing import List, Optional, Sequence

import structlog

from tracker.config import Config
from tracker.graph import GraphWindowManager
from tracker.metrics import SAMPLES_INSERTED, TRACKED_SERVICES
from tracker.models import ProbeResult
from tracker.protocol import (
    HistoryGraphMessage,
    InitMessage,
    PublicConfig,
    ServerPayload,
    ServerUpdate,
    ServiceDescriptor,
    UpdateServersMessage,
)
from tracker.records import RecordTracker
from tracker.registration import ServiceRegistration
from tracker.retention import RetentionPruner
from tracker.server import SyncServer
from tracker.store.base import TimeSeriesStore
from tracker.store.factory import create_store
from tracker.timeline import TimeTracker

logger = structlog.get_logger(__name__)


class TrackerApp:
    """Owns the registrations and runs the startup sequence and probe-round ingestion."""

    def __init__(self, config: Config, store: Optional[TimeSeriesStore] = None) -> None:
        self.config = config
        self.time_tracker = TimeTracker(config)
        self.registrations: List[ServiceRegistration] = [
            ServiceRegistration(server_id, name, address, config)
            for server_id, (name, address) in enumerate(config.service_descriptors())
        ]
        self.store: Optional[TimeSeriesStore] = None
        if config.log_to_database:
            self.store = store if store is not None else create_store(config)
        self.pruner: Optional[RetentionPruner] = None
        self.sync_server = SyncServer(self.build_init_message, self.build_history_graph_message)
        self.ready = False
        TRACKED_SERVICES.set(len(self.registrations))

    async def start(self) -> None:
        if self.store is None:
            logger.info("Database logging disabled, starting without history")
            self.ready = True
            return

        await self.store.connect()
        await self.store.ensure_schema()

        self.pruner = RetentionPruner(
            self.store,
            retention_window_ms=self.config.graph_duration_ms,
            cleanup_interval_ms=self.config.old_pings_cleanup_interval_ms,
        )
        await self.pruner.start()

        graph = GraphWindowManager(self.store, self.time_tracker)
        await graph.load_graph_points(self.config.graph_duration_ms, self.registrations)
        await RecordTracker(self.store).refresh(self.registrations)

        self.ready = True
        logger.info("Tracker ready", services=len(self.registrations), backend=self.config.database_backend)

    async def stop(self) -> None:
        self.ready = False
        if self.pruner is not None:
            await self.pruner.stop()
        if self.store is not None:
            await self.store.close()

    async def handle_round(self, results: Sequence[ProbeResult], timestamp: Optional[int] = None) -> UpdateServersMessage:
        """Persist and broadcast one probing round."""
        timestamp = TimeTracker.epoch_millis() if timestamp is None else timestamp
        by_address = {result.address: result for result in results}
        add_graph_point = self.time_tracker.new_point_timestamp(timestamp)

        updates = []
        for registration in self.registrations:
            result = by_address.get(registration.address)
            if result is None:
                result = ProbeResult(registration.address, error="No response")

            new_record = registration.beats_record(result.metric_value)
            if self.store is not None and result.metric_value is not None:
                await self.store.insert_sample(registration.address, timestamp, result.metric_value)
                SAMPLES_INSERTED.inc()
                if new_record:
                    await self.store.update_record(registration.address, result.metric_value, timestamp)

            update = registration.handle_ping(timestamp, result.metric_value, result.error, add_graph_point)
            updates.append(ServerUpdate.model_validate(update))

        message = UpdateServersMessage(timestamp=timestamp, updates=updates, update_history_graph=add_graph_point)
        await self.sync_server.broadcast(message)
        return message

    def public_config(self) -> PublicConfig:
        return PublicConfig(
            servers=[ServiceDescriptor(name=reg.name, address=reg.address) for reg in self.registrations],
            graph_duration=self.config.graph_duration_ms,
            is_graph_visible=self.config.is_graph_visible,
            known_versions=self.config.known_versions,
        )

    def build_init_message(self) -> InitMessage:
        return InitMessage(
            config=self.public_config(),
            servers=[ServerPayload.model_validate(reg.init_payload()) for reg in self.registrations],
            timestamp_points=self.time_tracker.points,
        )

    def build_history_graph_message(self) -> Optional[HistoryGraphMessage]:
        if not self.config.is_graph_visible:
            return None
        return HistoryGraphMessage(
            timestamps=self.time_tracker.points,
            graph_data=[reg.graph_values for reg in self.registrations],
        )
