"""
Authoritative reservation expiry.

A background loop periodically moves committed pings whose deadline has
passed to expired, whether or not any client is watching. Each ping is
expired with the same compare-and-set used everywhere else, so a pickup
confirmed at the last moment wins or loses cleanly.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from pingpick.errors import StaleState, StoreUnavailable
from pingpick.models import AlertKind, NoShowRecord, Ping, PingStatus, no_show_key
from pingpick.notifier import emit
from pingpick.store import (
    NowFn,
    RecordDatabase,
    RetryPolicy,
    SleepFn,
    transition_ping,
    utcnow,
    with_store_retry,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: list[str] = field(default_factory=list)
    lost_races: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _is_overdue(ping: Ping, now: datetime) -> bool:
    return (
        ping.status == PingStatus.COMMITTED
        and ping.committed_response is not None
        and ping.committed_response.expires_at <= now
    )


async def sweep_expired_reservations(
    db: RecordDatabase,
    *,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> SweepResult:
    now = now_fn()
    due: list[Ping] = await with_store_retry(
        lambda: db.query(lambda v: isinstance(v, Ping) and _is_overdue(v, now)),
        operation="scan committed pings",
        retry=retry,
        sleep_fn=sleep_fn,
    )

    result = SweepResult()
    for ping in due:
        try:
            await _expire(
                db, ping.id, now, now_fn=now_fn, sleep_fn=sleep_fn, retry=retry
            )
        except StaleState:
            logger.debug("Ping resolved before sweep", extra={"ping_id": ping.id})
            result.lost_races.append(ping.id)
        except Exception:
            # one bad record never stops the rest of the batch
            logger.exception("Failed to expire ping", extra={"ping_id": ping.id})
            result.failed.append(ping.id)
        else:
            result.expired.append(ping.id)

    if due:
        logger.info(
            f"Sweep: {len(result.expired)} expired, "
            f"{len(result.lost_races)} already resolved, {len(result.failed)} failed"
        )
    return result


async def _expire(
    db: RecordDatabase,
    ping_id: str,
    now: datetime,
    *,
    now_fn: NowFn,
    sleep_fn: SleepFn,
    retry: RetryPolicy | None,
) -> Ping:
    expired = await transition_ping(
        db,
        ping_id,
        allowed_from={PingStatus.COMMITTED},
        guard=lambda p: p.committed_response.expires_at <= now,
        changes=lambda _p: {
            "status": PingStatus.EXPIRED,
            "expired_at": now,
            "updated_at": now,
        },
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if expired is None:
        raise StaleState("Ping left committed state during sweep", ping_id=ping_id)

    offer = expired.committed_response
    record = NoShowRecord(
        ping_id=ping_id,
        provider_id=offer.provider_id,
        requester_id=expired.requester_id,
        item_name=expired.item_name,
        reservation_minutes=offer.reservation_minutes,
        expired_at=now,
    )
    # ping is already expired here; the alerts below must still go out
    try:
        await with_store_retry(
            lambda: db.create(no_show_key(ping_id), record),
            operation="record no-show",
            retry=retry,
            sleep_fn=sleep_fn,
        )
    except StoreUnavailable:
        logger.error(
            "Dropped no-show record for expired ping",
            extra={
                "ping_id": ping_id,
                "provider_id": offer.provider_id,
                "error_code": "STORE_UNAVAILABLE",
            },
        )
    logger.info(
        "Reservation expired without pickup",
        extra={"ping_id": ping_id, "provider_id": offer.provider_id},
    )

    await emit(
        db,
        offer.provider_id,
        AlertKind.NO_SHOW,
        ping_id,
        f"No-show: {expired.item_name} was not picked up within "
        f"{offer.reservation_minutes} minutes. The hold is released.",
        title="No-Show",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
    await emit(
        db,
        expired.requester_id,
        AlertKind.NO_SHOW,
        ping_id,
        f"Your reservation for {expired.item_name} timed out after "
        f"{offer.reservation_minutes} minutes.",
        title="Reservation Timed Out",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
    return expired


async def run_expiry_sweeper(
    db: RecordDatabase,
    *,
    interval_seconds: float,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> None:
    """Sweep forever at a fixed interval until cancelled."""
    logger.info(f"Expiry sweeper started, every {interval_seconds}s")
    try:
        while True:
            try:
                await sweep_expired_reservations(
                    db, now_fn=now_fn, sleep_fn=sleep_fn, retry=retry
                )
            except Exception:
                logger.exception("Sweep pass failed; retrying next interval")
            await sleep_fn(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Expiry sweeper stopped")
        return
