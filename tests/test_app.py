import pytest

from tracker.app import TrackerApp
from tracker.config import Config
from tracker.models import ProbeResult, Record, RecordData
from tracker.store.sql import SQLStore
from tracker.timeline import TimeTracker


@pytest.fixture
def app_config(database_url):
    return Config(
        database_url=database_url,
        servers=["Alpha=alpha.example.net", "Beta=beta.example.net"],
        old_pings_cleanup_interval_ms=0,
    )


async def seed(database_url, samples):
    store = SQLStore(database_url)
    await store.connect()
    await store.ensure_schema()
    for sample in samples:
        await store.insert_sample(*sample)
    await store.close()


class TestStartup:
    @pytest.mark.asyncio
    async def test_without_database(self, config):
        app = TrackerApp(config.model_copy(update={"servers": ["alpha.example.net"]}))
        await app.start()
        assert app.ready
        assert app.store is None
        assert app.registrations[0].record_data is None
        await app.stop()

    @pytest.mark.asyncio
    async def test_loads_history_and_records(self, app_config, database_url):
        now = TimeTracker.epoch_millis()
        await seed(database_url, [
            ("alpha.example.net", now - 120_000, 10),
            ("alpha.example.net", now - 60_000, 14),
            ("beta.example.net", now - 60_000, 3),
            ("alpha.example.net", now - app_config.graph_duration_ms - 1, 99),
        ])
        app = TrackerApp(app_config)
        await app.start()

        alpha, beta = app.registrations
        assert app.ready
        assert alpha.graph_values == [10, 14]
        assert app.time_tracker.points == [now - 120_000, now - 60_000]
        # the pruned 99 sample is gone before records are computed
        assert alpha.record_data == RecordData(metric_value=14, timestamp=(now - 60_000) // 1000)
        assert beta.record_data.metric_value == 3
        assert await app.store.get_record("alpha.example.net") == Record("alpha.example.net", 14, now - 60_000)
        await app.stop()


class TestHandleRound:
    @pytest.mark.asyncio
    async def test_round_persists_and_updates_records(self, app_config):
        app = TrackerApp(app_config)
        await app.start()

        message = await app.handle_round(
            [ProbeResult("alpha.example.net", 25), ProbeResult("beta.example.net", error="Timed out")],
            timestamp=5_000_000,
        )

        assert message.update_history_graph is True
        assert message.updates[0].metric_value == 25
        assert message.updates[0].record_data.metric_value == 25
        assert message.updates[1].error == "Timed out"
        assert await app.store.get_record("alpha.example.net") == Record("alpha.example.net", 25, 5_000_000)
        assert await app.store.get_record("beta.example.net") is None
        assert len(await app.store.query_range(5_000_000, 5_000_000)) == 1

        second = await app.handle_round([ProbeResult("alpha.example.net", 7)], timestamp=5_010_000)
        assert second.update_history_graph is False
        assert second.updates[0].record_data is None
        assert second.updates[1].error == "No response"
        assert await app.store.get_record("alpha.example.net") == Record("alpha.example.net", 25, 5_000_000)
        await app.stop()

    @pytest.mark.asyncio
    async def test_history_graph_matches_axis(self, config):
        app = TrackerApp(config.model_copy(update={"servers": ["a.example.net", "b.example.net"]}))
        await app.handle_round([ProbeResult("a.example.net", 1), ProbeResult("b.example.net", 2)], timestamp=0)
        await app.handle_round([ProbeResult("a.example.net", 3)], timestamp=60_000)

        history = app.build_history_graph_message()

        assert history.timestamps == [0, 60_000]
        assert history.graph_data == [[1, 3], [2, None]]

    def test_hidden_graphs_have_no_history(self, config):
        app = TrackerApp(config.model_copy(update={"is_graph_visible": False}))
        assert app.build_history_graph_message() is None

    @pytest.mark.asyncio
    async def test_init_message(self, config):
        app = TrackerApp(config.model_copy(update={"servers": ["Alpha=alpha.example.net"]}))
        init = app.build_init_message()
        assert init.config.servers[0].name == "Alpha"
        assert init.servers[0].error == "Waiting..."
        assert init.servers[0].metric_value_history is None

        await app.handle_round([ProbeResult("alpha.example.net", 4)], timestamp=1000)
        init = app.build_init_message()
        assert init.servers[0].metric_value_history == [4]
        assert init.timestamp_points == [1000]
