"""
Provider responses and the first-acceptance-wins commit.

Every answer to an open ping is stored once as a Response record. An
available answer then attempts a compare-and-set of the ping from open to
committed; exactly one racing provider sees it succeed, the rest get
accepted=False.
"""

import asyncio
import logging
from dataclasses import dataclass

from pingpick.errors import InvalidRequest, StaleState
from pingpick.models import (
    AlertKind,
    CommittedResponse,
    Ping,
    PingStatus,
    Response,
    response_key,
)
from pingpick.notifier import emit
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

ALREADY_RESERVED = "Already reserved by someone else"


@dataclass(frozen=True)
class Offer:
    """Optional details shown to the requester alongside an acceptance."""

    provider_name: str | None = None
    distance_km: float | None = None
    price: str | None = None
    address: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class RespondResult:
    accepted: bool
    ping: Ping
    reason: str | None = None


async def respond_to_ping(
    db: RecordDatabase,
    ping_id: str,
    provider_id: str,
    available: bool,
    reservation_minutes: int | None = None,
    *,
    offer: Offer | None = None,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> RespondResult:
    if not provider_id:
        raise InvalidRequest("providerId must not be empty", field="providerId")
    if available and (reservation_minutes is None or reservation_minutes <= 0):
        raise InvalidRequest(
            "reservationMinutes must be greater than zero when available",
            field="reservationMinutes",
            ping_id=ping_id,
        )
    offer = offer or Offer()

    ping = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    if ping.status == PingStatus.COMMITTED and available:
        # not recorded: the winner repeating itself or a late loser
        return await _resolve_lost_commit(
            db, ping_id, provider_id, retry=retry, sleep_fn=sleep_fn
        )
    if ping.status != PingStatus.OPEN:
        raise StaleState(
            f"Ping is {ping.status.value} and no longer takes responses",
            ping_id=ping_id,
        )

    responded_at = now_fn()
    response = Response(
        ping_id=ping_id,
        provider_id=provider_id,
        provider_name=offer.provider_name,
        available=available,
        reservation_minutes=reservation_minutes if available else None,
        responded_at=responded_at,
    )
    await _record_response(db, response, retry=retry, sleep_fn=sleep_fn)

    if not available:
        logger.info(
            "Provider declined",
            extra={"ping_id": ping_id, "provider_id": provider_id},
        )
        return RespondResult(accepted=True, ping=ping)

    snapshot = CommittedResponse(
        provider_id=provider_id,
        provider_name=offer.provider_name,
        distance_km=offer.distance_km,
        price=offer.price,
        address=offer.address,
        phone=offer.phone,
        reservation_minutes=reservation_minutes,
        responded_at=responded_at,
    )
    committed = await transition_ping(
        db,
        ping_id,
        allowed_from={PingStatus.OPEN},
        changes=lambda _p: {
            "status": PingStatus.COMMITTED,
            "committed_response": snapshot,
            "updated_at": responded_at,
        },
        retry=retry,
        sleep_fn=sleep_fn,
    )

    if committed is None:
        return await _resolve_lost_commit(
            db, ping_id, provider_id, retry=retry, sleep_fn=sleep_fn
        )

    logger.info(
        f"Ping committed for {reservation_minutes} min",
        extra={"ping_id": ping_id, "provider_id": provider_id},
    )
    await _notify_commit(db, committed, now_fn=now_fn, sleep_fn=sleep_fn, retry=retry)
    return RespondResult(accepted=True, ping=committed)


async def _record_response(
    db: RecordDatabase,
    response: Response,
    *,
    retry: RetryPolicy | None,
    sleep_fn: SleepFn,
) -> None:
    """
    Store a provider's answer once. A repeat of the same answer is a retry
    and passes; a changed answer is rejected.
    """
    key = response_key(response.ping_id, response.provider_id)
    created = await with_store_retry(
        lambda: db.create(key, response),
        operation="record response",
        retry=retry,
        sleep_fn=sleep_fn,
    )
    if created:
        return

    existing = db.get(key)
    if isinstance(existing, Response) and existing.available != response.available:
        raise StaleState(
            "Provider has already answered this ping", ping_id=response.ping_id
        )


async def _resolve_lost_commit(
    db: RecordDatabase,
    ping_id: str,
    provider_id: str,
    *,
    retry: RetryPolicy | None,
    sleep_fn: SleepFn,
) -> RespondResult:
    current = await fetch_ping(db, ping_id, retry=retry, sleep_fn=sleep_fn)
    winner = current.committed_response

    # our own earlier write landed before a store fault; treat as ours
    if winner is not None and winner.provider_id == provider_id:
        return RespondResult(accepted=True, ping=current)

    if current.status == PingStatus.COMMITTED:
        logger.debug(
            "Lost commit race",
            extra={"ping_id": ping_id, "provider_id": provider_id},
        )
        return RespondResult(accepted=False, ping=current, reason=ALREADY_RESERVED)

    raise StaleState(
        f"Ping is {current.status.value} and no longer takes responses",
        ping_id=ping_id,
    )


async def _notify_commit(
    db: RecordDatabase,
    ping: Ping,
    *,
    now_fn: NowFn,
    sleep_fn: SleepFn,
    retry: RetryPolicy | None,
) -> None:
    offer = ping.committed_response
    provider = offer.provider_name or offer.provider_id
    price = f" at {offer.price}" if offer.price else ""
    await emit(
        db,
        ping.requester_id,
        AlertKind.RESPONSE,
        ping.id,
        f"{provider} has {ping.item_name} available{price}. "
        f"Held for {offer.reservation_minutes} minutes.",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
    await emit(
        db,
        offer.provider_id,
        AlertKind.RESERVATION,
        ping.id,
        f"You are holding {ping.item_name} for "
        f"{offer.reservation_minutes} minutes.",
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        retry=retry,
    )
