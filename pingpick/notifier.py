"""
Alert emission for externally visible ping transitions.

Delivery is at-least-once and fire-and-forget: a store failure is logged and
the alert dropped, never raised into the transition that triggered it.
"""

import asyncio
import logging
import uuid

from pingpick.errors import StoreUnavailable
from pingpick.models import Alert, AlertKind, alert_key
from pingpick.store import (
    NowFn,
    RecordDatabase,
    RetryPolicy,
    SleepFn,
    utcnow,
    with_store_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLES = {
    AlertKind.RESPONSE: "Provider Response",
    AlertKind.RESERVATION: "Reservation Confirmed",
    AlertKind.COMPLETION: "Pickup Completed",
    AlertKind.NO_SHOW: "Reservation Expired",
}


async def emit(
    db: RecordDatabase,
    recipient_id: str,
    kind: AlertKind,
    ping_id: str,
    message: str,
    *,
    title: str | None = None,
    now_fn: NowFn = utcnow,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> Alert | None:
    alert = Alert(
        id=uuid.uuid4().hex,
        recipient_id=recipient_id,
        kind=kind,
        ping_id=ping_id,
        title=title or DEFAULT_TITLES[kind],
        message=message,
        created_at=now_fn(),
    )
    try:
        await with_store_retry(
            lambda: db.create(alert_key(alert.id), alert),
            operation="append alert",
            retry=retry,
            sleep_fn=sleep_fn,
        )
    except StoreUnavailable:
        logger.error(
            f"Dropped {kind.value} alert for {recipient_id}",
            extra={"ping_id": ping_id, "recipient_id": recipient_id},
        )
        return None

    logger.info(
        f"Alert {kind.value} -> {recipient_id}",
        extra={"ping_id": ping_id, "recipient_id": recipient_id},
    )
    return alert


def alerts_for(db: RecordDatabase, recipient_id: str) -> list[Alert]:
    """Recipient's alerts in creation order."""
    return db.query(lambda v: isinstance(v, Alert) and v.recipient_id == recipient_id)


async def mark_alerts_read(
    db: RecordDatabase,
    recipient_id: str,
    *,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> int:
    marked = 0
    for alert in alerts_for(db, recipient_id):
        if alert.read:
            continue
        updated = await with_store_retry(
            lambda a=alert: db.update_if(
                alert_key(a.id),
                lambda v: isinstance(v, Alert) and not v.read,
                lambda v: v.model_copy(update={"read": True}),
            ),
            operation="mark alert read",
            retry=retry,
            sleep_fn=sleep_fn,
        )
        if updated is not None:
            marked += 1
    return marked


async def clear_alerts(
    db: RecordDatabase,
    recipient_id: str,
    *,
    sleep_fn: SleepFn = asyncio.sleep,
    retry: RetryPolicy | None = None,
) -> int:
    alerts = alerts_for(db, recipient_id)
    for alert in alerts:
        await with_store_retry(
            lambda a=alert: db.delete(alert_key(a.id)),
            operation="delete alert",
            retry=retry,
            sleep_fn=sleep_fn,
        )
    return len(alerts)
