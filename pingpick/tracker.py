"""
Reservation view over committed pings, and pickup confirmation.

The deadline always comes from CommittedResponse.expires_at so the tracker
and the sweeper can never disagree about when a hold ends.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from pingpick.errors import StaleState
from pingpick.models import AlertKind, Ping, PingStatus, Reservation
from pingpick.notifier import emit
from pingpick.store import (
    NowFn,
    RecordDatabase,
    RetryPolicy,
    SleepFn,
    fetch_ping,
    transition_ping,
    utcnow,
)

logger = logging.getLogger(__name__)


def remaining_for(ping: Ping, now: datetime) -> timedelta:
    if ping.committed_response is None:
        raise StaleState(
            f"Ping is {ping.status.value} and has no reservation", ping_id=ping.id
        )
    if ping.status != PingStatus.COMMITTED:
        return timedelta(0)
    return max(timedelta(0), ping.committed_response.expires_at - now)


def reservation_view(ping: Ping, now: datetime) -> Reservation:
    remaining = remaining_for(ping, now)
    offer = ping.committed_response
    return Reservation(
        ping_id=ping.id,
        requester_id=ping.requester_id,
        provider_id=offer.provider_id,
        item_name=ping.item_name,
        status=ping.status,
        expires_at=offer.expires_at,
        remaining_seconds=remaining.total_seconds(),
    )


async def remaining_time(
    db: RecordDatabase,
    ping_id: str,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> timedelta:
    ping = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    return remaining_for(ping, now_fn())


async def get_reservation(
    db: RecordDatabase,
    ping_id: str,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> Reservation:
    ping = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    return reservation_view(ping, now_fn())


def list_active_reservations_for_provider(
    db: RecordDatabase, provider_id: str, *, now_fn: NowFn = utcnow
) -> list[Reservation]:
    now = now_fn()
    pings = db.query(
        lambda v: isinstance(v, Ping)
        and v.status == PingStatus.COMMITTED
        and v.committed_response.provider_id == provider_id
    )
    reservations = [reservation_view(p, now) for p in pings]
    return sorted(reservations, key=lambda r: r.expires_at)


async def complete_pickup(
    db: RecordDatabase,
    ping_id: str,
    confirmed_by: str,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> Ping:
    """
    Move a committed ping to completed. A repeat call on an already
    completed ping is a no-op and emits nothing.
    """
    await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)

    now = now_fn()
    completed = await transition_ping(
        db,
        ping_id,
        allowed_from={PingStatus.COMMITTED},
        changes=lambda _p: {
            "status": PingStatus.COMPLETED,
            "completed_at": now,
            "completed_by": confirmed_by,
            "updated_at": now,
        },
        retry=retry,
        sleep_fn=sleep_fn,
    )

    if completed is None:
        current = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
        if current.status == PingStatus.COMPLETED:
            return current
        raise StaleState(
            f"Ping is {current.status.value}; only a committed ping can be picked up",
            ping_id=ping_id,
        )

    offer = completed.committed_response
    logger.info(
        f"Pickup confirmed by {confirmed_by}",
        extra={"ping_id": ping_id, "provider_id": offer.provider_id},
    )
    provider = offer.provider_name or offer.provider_id
    await emit(
        db,
        completed.requester_id,
        AlertKind.COMPLETION,
        ping_id,
        f"Pickup of {completed.item_name} from {provider} is complete.",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
    await emit(
        db,
        offer.provider_id,
        AlertKind.COMPLETION,
        ping_id,
        f"{completed.item_name} was picked up.",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
    return completed
