from tracker.config import Config
from tracker.store.base import TimeSeriesStore


def create_store(config: Config) -> TimeSeriesStore:
    """Pick the backend named by the configuration. Called once at startup."""
    backend = config.database_backend.lower()
    if backend == "mongodb":
        from tracker.store.mongo import MongoStore

        return MongoStore(config.database_url)
    if backend == "sql":
        from tracker.store.sql import SQLStore

        return SQLStore(config.database_url)
    raise ValueError(f"Unknown database backend: {config.database_backend}")
