"""Record store access shared by every lifecycle component.

Invariants:
    - Ping records change only through transition_ping (compare-and-set)
    - StoreUnavailable is retried with bounded exponential backoff, then raised
    - No lock is held by callers across a store call; update_if is the only
      serialization point
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from pingpick.config import Settings, get_settings
from pingpick.database import InMemoryKeyValueDatabase
from pingpick.errors import NotFound, StoreUnavailable
from pingpick.models import Alert, NoShowRecord, Ping, PingStatus, Response, ping_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]

RecordDatabase = InMemoryKeyValueDatabase[str, Ping | Response | Alert | NoShowRecord]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 2_000

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            attempts=settings.store_retry_attempts,
            base_delay_ms=settings.store_retry_base_delay_ms,
            max_delay_ms=settings.store_retry_max_delay_ms,
        )

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry `attempt`, with ±25% jitter."""
        delay = min(self.max_delay_ms, (2**attempt) * self.base_delay_ms)
        return delay * random.uniform(0.75, 1.25) / 1000  # nosec B311


async def with_store_retry(
    op: Callable[[], T],
    *,
    operation: str,
    retry: RetryPolicy | None = None,
    sleep_fn: SleepFn = asyncio.sleep,
) -> T:
    policy = retry or RetryPolicy.from_settings()
    for attempt in range(policy.attempts):
        try:
            return op()
        except StoreUnavailable:
            if attempt + 1 >= policy.attempts:
                logger.error(
                    f"Store unavailable during {operation}, giving up",
                    extra={"attempt": attempt + 1, "error_code": "STORE_UNAVAILABLE"},
                )
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                f"Store unavailable during {operation}, retry in {delay:.3f}s",
                extra={"attempt": attempt + 1},
            )
            await sleep_fn(delay)
    raise StoreUnavailable(operation)


async def fetch_ping(
    db: RecordDatabase,
    ping_id: str,
    *,
    retry: RetryPolicy | None = None,
    sleep_fn: SleepFn = asyncio.sleep,
) -> Ping:
    ping = await with_store_retry(
        lambda: db.get(ping_key(ping_id)),
        operation="read ping",
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if not isinstance(ping, Ping):
        raise NotFound("Ping", ping_id)
    return ping


async def transition_ping(
    db: RecordDatabase,
    ping_id: str,
    *,
    allowed_from: Collection[PingStatus],
    changes: Callable[[Ping], dict],
    guard: Callable[[Ping], bool] | None = None,
    retry: RetryPolicy | None = None,
    sleep_fn: SleepFn = asyncio.sleep,
) -> Ping | None:
    """
    Compare-and-set on a ping's status.

    Applies `changes(current)` only if the stored ping is in one of
    `allowed_from` (and `guard`, when given, holds). Returns the updated
    ping, or None if the precondition failed at write time.
    """

    def precondition(value) -> bool:
        if not isinstance(value, Ping) or value.status not in allowed_from:
            return False
        return guard is None or guard(value)

    def mutate(value: Ping) -> Ping:
        return value.model_copy(update=changes(value))

    return await with_store_retry(
        lambda: db.update_if(ping_key(ping_id), precondition, mutate),
        operation="conditional ping write",
        retry=retry,
        sleep_fn=sleep_fn,
    )
