from typing import Any, List, Mapping, Optional

import structlog
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from tracker.errors import ReadError, SchemaError, StoreConnectionError, WriteError
from tracker.models import Record, Sample
from tracker.store.base import TimeSeriesStore

logger = structlog.get_logger(__name__)

SAMPLES_COLLECTION = "pings"
RECORDS_COLLECTION = "players_record"

# IndexOptionsConflict, IndexKeySpecsConflict, DuplicateKey
INDEX_CONFLICT_CODES = (85, 86, 11000)


class MongoStore(TimeSeriesStore):
    """Document backend. Keeps the `pings`/`players_record` layout so existing databases load as-is."""

    def __init__(self, connection_url: str, database_name: str = "tracker") -> None:
        self._connection_url = connection_url
        self._database_name = database_name
        self._client: Optional[AsyncMongoClient] = None
        self._db = None

    def _collection(self, name: str):
        if self._db is None:
            raise StoreConnectionError("Database connection not established")
        return self._db[name]

    async def connect(self) -> None:
        try:
            self._client = AsyncMongoClient(self._connection_url)
            await self._client.admin.command("ping")
            self._db = self._client.get_default_database(self._database_name)
        except PyMongoError as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise StoreConnectionError(str(e)) from e
        logger.info("Connected to MongoDB", database=self._db.name)

    async def ensure_schema(self) -> None:
        samples = self._collection(SAMPLES_COLLECTION)
        records = self._collection(RECORDS_COLLECTION)
        try:
            await samples.create_index([("ip", ASCENDING), ("playerCount", ASCENDING)])
            await samples.create_index([("timestamp", ASCENDING)])
        except PyMongoError as e:
            logger.error("Cannot create collection index", error=str(e))
            raise SchemaError(str(e)) from e

        try:
            await records.create_index([("ip", ASCENDING)], unique=True)
        except OperationFailure as e:
            if e.code not in INDEX_CONFLICT_CODES:
                logger.error("Cannot create collection index", error=str(e))
                raise SchemaError(str(e)) from e
            # databases from earlier releases carry a non-unique ip_1 or duplicate record docs
            logger.warning("Keeping existing record index", code=e.code, error=str(e))
        except PyMongoError as e:
            logger.error("Cannot create collection index", error=str(e))
            raise SchemaError(str(e)) from e

    async def insert_sample(self, service_id: str, timestamp: int, metric_value: int) -> None:
        try:
            sample = Sample(service_id, timestamp, metric_value)
        except ValueError as e:
            logger.error("Rejected sample", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e
        try:
            await self._collection(SAMPLES_COLLECTION).insert_one(
                {"timestamp": sample.timestamp, "ip": sample.service_id, "playerCount": sample.metric_value}
            )
        except PyMongoError as e:
            logger.error("Failed to insert sample", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e

    async def query_range(self, start_time: int, end_time: int) -> List[Sample]:
        query = {"timestamp": {"$gte": start_time, "$lte": end_time}}
        try:
            documents = await self._collection(SAMPLES_COLLECTION).find(query).to_list()
        except PyMongoError as e:
            logger.error("Failed to query samples", start_time=start_time, end_time=end_time, error=str(e))
            raise ReadError(str(e)) from e
        return [Sample(doc["ip"], doc["timestamp"], doc["playerCount"]) for doc in documents]

    async def get_record(self, service_id: str) -> Optional[Record]:
        try:
            document = await self._collection(RECORDS_COLLECTION).find_one({"ip": service_id})
        except PyMongoError as e:
            logger.error("Failed to get record", service_id=service_id, error=str(e))
            raise ReadError(str(e)) from e
        return _to_record(document)

    async def get_legacy_record_fallback(self, service_id: str) -> Optional[Record]:
        try:
            document = await self._collection(SAMPLES_COLLECTION).find_one(
                {"ip": service_id}, sort=[("playerCount", DESCENDING)]
            )
        except PyMongoError as e:
            logger.error("Failed to get legacy record", service_id=service_id, error=str(e))
            raise ReadError(str(e)) from e
        return _to_record(document)

    async def insert_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        document = {"timestamp": timestamp, "ip": service_id, "playerCount": metric_value}
        try:
            await self._collection(RECORDS_COLLECTION).insert_one(document)
        except DuplicateKeyError:
            logger.debug("Record already exists", service_id=service_id)
        except PyMongoError as e:
            logger.error("Failed to insert record", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e

    async def update_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        update = {"$set": {"playerCount": metric_value, "timestamp": timestamp}}
        try:
            await self._collection(RECORDS_COLLECTION).update_one({"ip": service_id}, update, upsert=True)
        except DuplicateKeyError:
            # concurrent upserts on the same ip; the other writer created the row
            logger.debug("Record upsert raced", service_id=service_id)
        except PyMongoError as e:
            logger.error("Cannot update record", service_id=service_id, timestamp=timestamp, error=str(e))
            raise WriteError(str(e)) from e

    async def delete_older_than(self, cutoff: int) -> int:
        try:
            result = await self._collection(SAMPLES_COLLECTION).delete_many({"timestamp": {"$lt": cutoff}})
        except PyMongoError as e:
            logger.error("Failed to delete old samples", cutoff=cutoff, error=str(e))
            raise WriteError(str(e)) from e
        return result.deleted_count

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._db = None


def _to_record(document: Optional[Mapping[str, Any]]) -> Optional[Record]:
    if document is None:
        return None
    return Record(document["ip"], document["playerCount"], document["timestamp"])
