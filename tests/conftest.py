from datetime import datetime, timedelta, timezone

import pytest

from upload_tokens.storage.cleanup import SampledCleanup
from upload_tokens.storage.sqlite import SQLiteTokenStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tokens.db")


@pytest.fixture
async def store(db_path, clock):
    store = SQLiteTokenStore(db_path, pool_size=3, cleanup=SampledCleanup(0.0), clock=clock)
    async with store:
        await store.migrate()
        yield store
