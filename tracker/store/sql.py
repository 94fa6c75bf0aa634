import time
from typing import List, Optional

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from tracker.errors import ReadError, SchemaError, StoreConnectionError, WriteError
from tracker.models import Record, Sample
from tracker.store.base import TimeSeriesStore

logger = structlog.get_logger(__name__)

metadata = MetaData()

# Column names match the tables created by earlier releases so existing files keep working.
pings = Table(
    "pings",
    metadata,
    Column("timestamp", BigInteger, nullable=False),
    Column("ip", String(255)),
    Column("playerCount", Integer),
    Column("ip_key", String(255)),
    Index("ip_index", "ip_key", "playerCount"),
    Index("timestamp_index", "timestamp"),
)

players_record = Table(
    "players_record",
    metadata,
    Column("timestamp", BigInteger),
    Column("ip", String(255), primary_key=True, nullable=False),
    Column("playerCount", Integer),
)


class SQLStore(TimeSeriesStore):
    """Tabular backend over SQLAlchemy's asyncio engine (SQLite through aiosqlite by default)."""

    def __init__(self, connection_url: str) -> None:
        self._connection_url = connection_url
        self._engine: Optional[AsyncEngine] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreConnectionError("Database connection not established")
        return self._engine

    async def connect(self) -> None:
        try:
            self._engine = create_async_engine(self._connection_url, echo=False)
            async with self._engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to connect to database", error=str(e))
            raise StoreConnectionError(str(e)) from e
        logger.info("Connected to database", dialect=self._engine.dialect.name)

    async def ensure_schema(self) -> None:
        try:
            async with self.engine.begin() as connection:
                await connection.run_sync(metadata.create_all)
        except SQLAlchemyError as e:
            logger.error("Cannot create table or table index", error=str(e))
            raise SchemaError(str(e)) from e

        await self._migrate_step("add ip_key column", self._add_key_column)
        await self._migrate_step("backfill ip_key", self._backfill_key_column)
        await self._migrate_step("rebuild sample indexes", self._rebuild_indexes)

    async def _migrate_step(self, name: str, step) -> None:
        try:
            async with self.engine.begin() as connection:
                await step(connection)
        except SQLAlchemyError as e:
            logger.warning("Schema migration step failed, skipping", step=name, error=str(e))

    async def _add_key_column(self, connection: AsyncConnection) -> None:
        columns = await connection.run_sync(lambda conn: inspect(conn).get_columns(pings.name))
        if any(column["name"] == "ip_key" for column in columns):
            return
        await connection.execute(text("ALTER TABLE pings ADD COLUMN ip_key VARCHAR(255)"))
        logger.info("Added ip_key column to pings")

    async def _backfill_key_column(self, connection: AsyncConnection) -> None:
        result = await connection.execute(
            update(pings).where(pings.c.ip_key.is_(None)).values(ip_key=pings.c.ip)
        )
        if result.rowcount:
            logger.info("Backfilled ip_key", rows=result.rowcount)

    async def _rebuild_indexes(self, connection: AsyncConnection) -> None:
        existing = await connection.run_sync(lambda conn: inspect(conn).get_indexes(pings.name))
        existing_columns = {index["name"]: list(index["column_names"]) for index in existing}
        for index in pings.indexes:
            wanted = [column.name for column in index.columns]
            if existing_columns.get(index.name) == wanted:
                continue
            if index.name in existing_columns:
                await connection.run_sync(index.drop)
            await connection.run_sync(index.create)
            logger.info("Rebuilt index", index=index.name, columns=wanted)

    async def insert_sample(self, service_id: str, timestamp: int, metric_value: int) -> None:
        try:
            sample = Sample(service_id, timestamp, metric_value)
        except ValueError as e:
            logger.error("Rejected sample", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e
        try:
            async with self.engine.begin() as connection:
                await connection.execute(
                    pings.insert().values(
                        timestamp=sample.timestamp,
                        ip=sample.service_id,
                        playerCount=sample.metric_value,
                        ip_key=sample.service_id,
                    )
                )
        except SQLAlchemyError as e:
            logger.error("Failed to insert sample", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e

    async def query_range(self, start_time: int, end_time: int) -> List[Sample]:
        query = select(pings.c.ip, pings.c.timestamp, pings.c.playerCount).where(
            pings.c.timestamp >= start_time, pings.c.timestamp <= end_time
        )
        try:
            async with self.engine.connect() as connection:
                rows = (await connection.execute(query)).all()
        except SQLAlchemyError as e:
            logger.error("Failed to query samples", start_time=start_time, end_time=end_time, error=str(e))
            raise ReadError(str(e)) from e
        return [Sample(row.ip, row.timestamp, row.playerCount) for row in rows]

    async def get_record(self, service_id: str) -> Optional[Record]:
        query = select(players_record).where(players_record.c.ip == service_id)
        try:
            async with self.engine.connect() as connection:
                row = (await connection.execute(query)).first()
        except SQLAlchemyError as e:
            logger.error("Failed to get record", service_id=service_id, error=str(e))
            raise ReadError(str(e)) from e
        if row is None:
            return None
        return Record(row.ip, row.playerCount, row.timestamp)

    async def get_legacy_record_fallback(self, service_id: str) -> Optional[Record]:
        query = (
            select(pings.c.ip, pings.c.timestamp, pings.c.playerCount)
            .where(pings.c.ip_key == service_id)
            .order_by(pings.c.playerCount.desc())
            .limit(1)
        )
        try:
            async with self.engine.connect() as connection:
                row = (await connection.execute(query)).first()
        except SQLAlchemyError as e:
            logger.error("Failed to get legacy record", service_id=service_id, error=str(e))
            raise ReadError(str(e)) from e
        if row is None:
            return None
        return Record(row.ip, row.playerCount, row.timestamp)

    async def insert_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        try:
            async with self.engine.begin() as connection:
                await connection.execute(
                    players_record.insert().values(ip=service_id, playerCount=metric_value, timestamp=timestamp)
                )
        except IntegrityError:
            logger.debug("Record already exists", service_id=service_id)
        except SQLAlchemyError as e:
            logger.error("Failed to insert record", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e

    async def update_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        statement = (
            update(players_record)
            .where(players_record.c.ip == service_id)
            .values(playerCount=metric_value, timestamp=timestamp)
        )
        try:
            async with self.engine.begin() as connection:
                result = await connection.execute(statement)
        except SQLAlchemyError as e:
            logger.error("Cannot update record", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e
        if result.rowcount == 0:
            await self.insert_record(service_id, metric_value, timestamp)

    async def delete_older_than(self, cutoff: int) -> int:
        started = time.monotonic()
        try:
            async with self.engine.begin() as connection:
                result = await connection.execute(delete(pings).where(pings.c.timestamp < cutoff))
        except SQLAlchemyError as e:
            logger.error("Failed to delete old samples", cutoff=cutoff, error=str(e))
            raise WriteError(str(e)) from e
        logger.debug("Deleted old samples", cutoff=cutoff, rows=result.rowcount,
                     elapsed_ms=round((time.monotonic() - started) * 1000, 2))
        return result.rowcount

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
