"""
Record types for pings, provider responses, alerts and no-show records.

Wire format is camelCase; attributes are snake_case.
"""

from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Urgency(StrEnum):
    NORMAL = "normal"
    EMERGENCY = "emergency"


class PingStatus(StrEnum):
    OPEN = "open"
    COMMITTED = "committed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {PingStatus.COMPLETED, PingStatus.EXPIRED, PingStatus.CANCELLED}
)


class AlertKind(StrEnum):
    RESPONSE = "response"
    RESERVATION = "reservation"
    COMPLETION = "completion"
    NO_SHOW = "no-show"


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Location(Record):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class CommittedResponse(Record):
    """Snapshot of the winning offer. Written once, never changed."""

    provider_id: str
    provider_name: str | None = None
    distance_km: float | None = None
    price: str | None = None
    address: str | None = None
    phone: str | None = None
    reservation_minutes: int
    responded_at: datetime

    @property
    def expires_at(self) -> datetime:
        # single source of the deadline for both tracker and sweeper
        return self.responded_at + timedelta(minutes=self.reservation_minutes)


class Ping(Record):
    id: str
    item_name: str
    urgency: Urgency = Urgency.NORMAL
    requester_id: str
    location: Location
    radius_km: float
    status: PingStatus = PingStatus.OPEN
    created_at: datetime
    updated_at: datetime | None = None
    committed_response: CommittedResponse | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    expired_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def expires_at(self) -> datetime | None:
        if self.committed_response is None:
            return None
        return self.committed_response.expires_at


class Response(Record):
    ping_id: str
    provider_id: str
    provider_name: str | None = None
    available: bool
    reservation_minutes: int | None = None  # set iff available
    responded_at: datetime


class Alert(Record):
    id: str
    recipient_id: str
    kind: AlertKind
    ping_id: str
    title: str
    message: str
    created_at: datetime
    read: bool = False


class NoShowRecord(Record):
    ping_id: str
    provider_id: str
    requester_id: str
    item_name: str
    reservation_minutes: int
    expired_at: datetime


class Reservation(Record):
    """Derived hold on a committed ping. Computed on read, never stored."""

    ping_id: str
    requester_id: str
    provider_id: str
    item_name: str
    status: PingStatus
    expires_at: datetime
    remaining_seconds: float


def ping_key(ping_id: str) -> str:
    return f"ping:{ping_id}"


def response_key(ping_id: str, provider_id: str) -> str:
    return f"response:{ping_id}:{provider_id}"


def alert_key(alert_id: str) -> str:
    return f"alert:{alert_id}"


def no_show_key(ping_id: str) -> str:
    return f"no_show:{ping_id}"
