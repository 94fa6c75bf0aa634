from typing import List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from tracker.config import Config
from tracker.models import RecordData
from tracker.store.sql import SQLStore


class FakeRegistration:
    """Minimal stand-in for a tracked service on the server side."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.record_data: Optional[RecordData] = None
        self.loaded: List[Tuple[int, List[int], List[int]]] = []
        self.peak_searches = 0

    def load_graph_points(self, start_time: int, timestamps: Sequence[int], values: Sequence[int]) -> None:
        self.loaded.append((start_time, list(timestamps), list(values)))

    def find_new_graph_peak(self):
        self.peak_searches += 1
        return None


@pytest.fixture
def config():
    return Config(log_to_database=False, old_pings_cleanup_interval_ms=0)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}"


@pytest_asyncio.fixture
async def sql_store(database_url):
    store = SQLStore(database_url)
    await store.connect()
    await store.ensure_schema()
    yield store
    await store.close()
