"""
Opening, cancelling and widening ping broadcasts.

No alert is emitted here: opening a ping is not a transition anyone else
is told about, and a cancelled ping simply leaves the provider view.
"""

import asyncio
import logging
import math
import uuid

from pingpick.config import get_settings
from pingpick.errors import InvalidRequest, StaleState, StoreUnavailable
from pingpick.models import Location, Ping, PingStatus, Urgency, ping_key
from pingpick.store import (
    NowFn,
    RecordDatabase,
    RetryPolicy,
    SleepFn,
    fetch_ping,
    transition_ping,
    utcnow,
    with_store_retry,
)

logger = logging.getLogger(__name__)


async def open_ping(
    db: RecordDatabase,
    item_name: str,
    urgency: Urgency,
    requester_id: str,
    location: Location,
    radius_km: float,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
    single_active_reservation: bool | None = None,
) -> Ping:
    item_name = (item_name or "").strip()
    if not item_name:
        raise InvalidRequest("itemName must not be empty", field="itemName")
    _check_radius(radius_km)
    if not requester_id:
        raise InvalidRequest("requesterId must not be empty", field="requesterId")

    if single_active_reservation is None:
        single_active_reservation = get_settings().single_active_reservation
    if single_active_reservation and _has_committed_ping(db, requester_id):
        raise InvalidRequest(
            "Requester already holds an active reservation; "
            "complete or let it expire before pinging again",
            field="requesterId",
        )

    now = now_fn()
    ping = Ping(
        id=uuid.uuid4().hex,
        item_name=item_name,
        urgency=Urgency(urgency),
        requester_id=requester_id,
        location=location,
        radius_km=radius_km,
        status=PingStatus.OPEN,
        created_at=now,
        updated_at=now,
    )
    created = await with_store_retry(
        lambda: db.create(ping_key(ping.id), ping),
        operation="create ping",
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if not created:
        # uuid collision; nothing sensible to retry against
        raise StoreUnavailable("create ping")

    logger.info(
        f"Opened ping for {item_name!r} ({ping.urgency.value}, {radius_km} km)",
        extra={"ping_id": ping.id},
    )
    return ping


async def cancel_ping(
    db: RecordDatabase,
    ping_id: str,
    requester_id: str,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> Ping:
    ping = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    if ping.requester_id != requester_id:
        raise InvalidRequest(
            "Only the requester who opened a ping may cancel it",
            field="requesterId",
            ping_id=ping_id,
        )

    now = now_fn()
    cancelled = await transition_ping(
        db,
        ping_id,
        allowed_from={PingStatus.OPEN},
        changes=lambda _p: {
            "status": PingStatus.CANCELLED,
            "cancelled_at": now,
            "updated_at": now,
        },
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if cancelled is not None:
        logger.info("Ping cancelled by requester", extra={"ping_id": ping_id})
        return cancelled

    current = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    if current.status == PingStatus.CANCELLED:
        return current
    if current.status == PingStatus.COMMITTED:
        raise StaleState(
            "Ping already has a reservation and can no longer be cancelled",
            ping_id=ping_id,
        )
    raise StaleState(f"Ping is {current.status.value}", ping_id=ping_id)


async def expand_radius(
    db: RecordDatabase,
    ping_id: str,
    radius_km: float,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> Ping:
    _check_radius(radius_km, ping_id=ping_id)
    await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)

    now = now_fn()
    updated = await transition_ping(
        db,
        ping_id,
        allowed_from={PingStatus.OPEN},
        guard=lambda p: radius_km >= p.radius_km,
        changes=lambda _p: {"radius_km": radius_km, "updated_at": now},
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if updated is not None:
        return updated

    current = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    if current.status == PingStatus.OPEN:
        _check_not_shrinking(current, radius_km)
    raise StaleState("Radius can only change while a ping is open", ping_id=ping_id)


def _check_radius(radius_km: float, ping_id: str | None = None) -> None:
    if not math.isfinite(radius_km) or radius_km <= 0:
        raise InvalidRequest(
            "radiusKm must be a finite number greater than zero",
            field="radiusKm",
            ping_id=ping_id,
        )


def _check_not_shrinking(ping: Ping, radius_km: float) -> None:
    if radius_km < ping.radius_km:
        raise InvalidRequest(
            f"radiusKm can only grow (currently {ping.radius_km} km)",
            field="radiusKm",
            ping_id=ping.id,
        )


def _has_committed_ping(db: RecordDatabase, requester_id: str) -> bool:
    return any(
        isinstance(v, Ping)
        and v.requester_id == requester_id
        and v.status == PingStatus.COMMITTED
        for v in db.all()
    )
