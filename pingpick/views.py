"""
Read models for requester and provider clients.

Lists are one-shot reads; watch_* return live subscriptions owned by the
record store, each yielding the full current view after every change.
"""

from pingpick.database import Watch
from pingpick.models import Alert, NoShowRecord, Ping, PingStatus, Response
from pingpick.notifier import alerts_for
from pingpick.store import RecordDatabase


def _is_open(value) -> bool:
    return isinstance(value, Ping) and value.status == PingStatus.OPEN


def list_open_pings_for_provider(db: RecordDatabase, provider_id: str) -> list[Ping]:
    """
    Open pings this provider has not answered yet. Radius filtering is
    left to the client.
    """
    answered = {
        v.ping_id
        for v in db.query(
            lambda v: isinstance(v, Response) and v.provider_id == provider_id
        )
    }
    return [p for p in db.query(_is_open) if p.id not in answered]


def watch_open_pings(db: RecordDatabase) -> Watch[Ping]:
    return db.watch(_is_open)


def watch_pings_for_requester(db: RecordDatabase, requester_id: str) -> Watch[Ping]:
    """The requester's committed pings, pushed as soon as a commit lands."""
    return db.watch(
        lambda v: isinstance(v, Ping)
        and v.requester_id == requester_id
        and v.status == PingStatus.COMMITTED
    )


def list_alerts(db: RecordDatabase, recipient_id: str) -> list[Alert]:
    return alerts_for(db, recipient_id)


def watch_alerts(db: RecordDatabase, recipient_id: str) -> Watch[Alert]:
    return db.watch(lambda v: isinstance(v, Alert) and v.recipient_id == recipient_id)


def list_no_show_reports(db: RecordDatabase, provider_id: str) -> list[NoShowRecord]:
    records = db.query(
        lambda v: isinstance(v, NoShowRecord) and v.provider_id == provider_id
    )
    return sorted(records, key=lambda r: r.expired_at, reverse=True)
