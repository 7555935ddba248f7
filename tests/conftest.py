"""Shared fixtures: a controllable clock, retry-without-waiting, fault injection."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pingpick.api import create_app
from pingpick.config import Settings
from pingpick.database import InMemoryKeyValueDatabase
from pingpick.errors import StoreUnavailable
from pingpick.models import Location
from pingpick.store import RetryPolicy

T0 = datetime(2025, 7, 2, 9, 0, 0, tzinfo=UTC)
HERE = Location(lat=12.9716, lng=77.5946)
NO_WAIT = RetryPolicy(attempts=3, base_delay_ms=0, max_delay_ms=0)


class Clock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def no_sleep(_seconds: float) -> None:
    return None


class FlakyDatabase(InMemoryKeyValueDatabase):
    """
    Raises StoreUnavailable from conditional writes for the next
    `fail_writes` calls. Any key in `broken_keys` fails on every
    `update_if` and `create`.
    """

    def __init__(self, *, fail_writes: int = 0, broken_keys=()) -> None:
        super().__init__()
        self.fail_writes = fail_writes
        self.broken_keys = set(broken_keys)
        self.write_attempts = 0

    def update_if(self, key, precondition, mutate):
        self.write_attempts += 1
        if key in self.broken_keys:
            raise StoreUnavailable(f"update {key}")
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreUnavailable(f"update {key}")
        return super().update_if(key, precondition, mutate)

    def create(self, key, value):
        if key in self.broken_keys:
            raise StoreUnavailable(f"create {key}")
        return super().create(key, value)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def db() -> InMemoryKeyValueDatabase:
    return InMemoryKeyValueDatabase()


@pytest.fixture
def deps(clock: Clock) -> dict:
    return {"now_fn": clock, "sleep_fn": no_sleep, "retry": NO_WAIT}


@pytest_asyncio.fixture
async def client():
    app = create_app(Settings())
    app.state.retry = NO_WAIT
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client
