import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from pingpick.arbiter import ALREADY_RESERVED, Offer, respond_to_ping
from pingpick.broadcaster import cancel_ping, expand_radius, open_ping
from pingpick.config import Settings, get_settings
from pingpick.database import InMemoryKeyValueDatabase, Watch
from pingpick.error_handlers import register_error_handlers
from pingpick.models import Location, Record, Urgency
from pingpick.notifier import clear_alerts, mark_alerts_read
from pingpick.observability import setup_logging
from pingpick.store import RecordDatabase, RetryPolicy, fetch_ping
from pingpick.sweeper import run_expiry_sweeper, sweep_expired_reservations
from pingpick.tracker import (
    complete_pickup,
    get_reservation,
    list_active_reservations_for_provider,
)
from pingpick.views import (
    list_alerts,
    list_no_show_reports,
    list_open_pings_for_provider,
    watch_alerts,
    watch_open_pings,
    watch_pings_for_requester,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# stop proxies and browsers from batching streamed events
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


class OpenPingRequest(Record):
    item_name: str
    urgency: Urgency = Urgency.NORMAL
    requester_id: str
    location: Location
    radius_km: float | None = None


class RespondRequest(Record):
    provider_id: str
    available: bool
    reservation_minutes: int | None = None
    provider_name: str | None = None
    distance_km: float | None = None
    price: str | None = None
    address: str | None = None
    phone: str | None = None


class CancelPingRequest(Record):
    requester_id: str


class ExpandRadiusRequest(Record):
    radius_km: float


class CompletePickupRequest(Record):
    confirmed_by: str


def _wire(record: BaseModel) -> dict:
    return record.model_dump(mode="json", by_alias=True)


def _deps(request: Request) -> tuple[RecordDatabase, dict]:
    state = request.app.state
    return state.database, {
        "now_fn": state.now_fn,
        "sleep_fn": state.sleep_fn,
        "retry": state.retry,
    }


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/pings", status_code=201)
async def open_ping_route(body: OpenPingRequest, request: Request) -> dict:
    db, deps = _deps(request)
    settings: Settings = request.app.state.settings
    radius = body.radius_km
    if radius is None:
        radius = settings.default_radius_km
    ping = await open_ping(
        db,
        body.item_name,
        body.urgency,
        body.requester_id,
        body.location,
        radius,
        single_active_reservation=settings.single_active_reservation,
        **deps,
    )
    return _wire(ping)


@router.get("/pings/open/stream")
async def stream_open_pings(request: Request) -> StreamingResponse:
    db, _ = _deps(request)
    return _sse_response(watch_open_pings(db), request)


@router.get("/pings/{ping_id}")
async def get_ping_route(ping_id: str, request: Request) -> dict:
    db, deps = _deps(request)
    ping = await fetch_ping(
        db, ping_id, retry=deps["retry"], sleep_fn=deps["sleep_fn"]
    )
    return _wire(ping)


@router.post("/pings/{ping_id}/responses")
async def respond_route(ping_id: str, body: RespondRequest, request: Request) -> dict:
    db, deps = _deps(request)
    result = await respond_to_ping(
        db,
        ping_id,
        body.provider_id,
        body.available,
        body.reservation_minutes,
        offer=Offer(
            provider_name=body.provider_name,
            distance_km=body.distance_km,
            price=body.price,
            address=body.address,
            phone=body.phone,
        ),
        **deps,
    )
    if not result.accepted:
        return {
            "accepted": False,
            "pingId": ping_id,
            "status": result.ping.status.value,
            "message": result.reason or ALREADY_RESERVED,
        }
    return {
        "accepted": True,
        "pingId": ping_id,
        "status": result.ping.status.value,
        "committed": body.available,
    }


@router.post("/pings/{ping_id}/cancel")
async def cancel_route(
    ping_id: str, body: CancelPingRequest, request: Request
) -> dict:
    db, deps = _deps(request)
    return _wire(await cancel_ping(db, ping_id, body.requester_id, **deps))


@router.post("/pings/{ping_id}/radius")
async def expand_radius_route(
    ping_id: str, body: ExpandRadiusRequest, request: Request
) -> dict:
    db, deps = _deps(request)
    return _wire(await expand_radius(db, ping_id, body.radius_km, **deps))


@router.post("/pings/{ping_id}/complete")
async def complete_route(
    ping_id: str, body: CompletePickupRequest, request: Request
) -> dict:
    db, deps = _deps(request)
    return _wire(await complete_pickup(db, ping_id, body.confirmed_by, **deps))


@router.get("/pings/{ping_id}/reservation")
async def reservation_route(ping_id: str, request: Request) -> dict:
    db, deps = _deps(request)
    return _wire(await get_reservation(db, ping_id, **deps))


@router.get("/providers/{provider_id}/open-pings")
async def provider_open_pings(provider_id: str, request: Request) -> list[dict]:
    db, _ = _deps(request)
    return [_wire(p) for p in list_open_pings_for_provider(db, provider_id)]


@router.get("/providers/{provider_id}/reservations")
async def provider_reservations(provider_id: str, request: Request) -> list[dict]:
    db, _ = _deps(request)
    reservations = list_active_reservations_for_provider(
        db, provider_id, now_fn=request.app.state.now_fn
    )
    return [_wire(r) for r in reservations]


@router.get("/providers/{provider_id}/no-shows")
async def provider_no_shows(provider_id: str, request: Request) -> list[dict]:
    db, _ = _deps(request)
    return [_wire(r) for r in list_no_show_reports(db, provider_id)]


@router.get("/requesters/{requester_id}/pings/stream")
async def stream_requester_pings(
    requester_id: str, request: Request
) -> StreamingResponse:
    db, _ = _deps(request)
    return _sse_response(watch_pings_for_requester(db, requester_id), request)


@router.get("/recipients/{recipient_id}/alerts")
async def recipient_alerts(recipient_id: str, request: Request) -> list[dict]:
    db, _ = _deps(request)
    return [_wire(a) for a in list_alerts(db, recipient_id)]


@router.get("/recipients/{recipient_id}/alerts/stream")
async def stream_recipient_alerts(
    recipient_id: str, request: Request
) -> StreamingResponse:
    db, _ = _deps(request)
    return _sse_response(watch_alerts(db, recipient_id), request)


@router.post("/recipients/{recipient_id}/alerts/read")
async def read_alerts(recipient_id: str, request: Request) -> dict:
    db, deps = _deps(request)
    marked = await mark_alerts_read(
        db, recipient_id, sleep_fn=deps["sleep_fn"], retry=deps["retry"]
    )
    return {"recipientId": recipient_id, "marked": marked}


@router.delete("/recipients/{recipient_id}/alerts")
async def delete_alerts(recipient_id: str, request: Request) -> dict:
    db, deps = _deps(request)
    deleted = await clear_alerts(
        db, recipient_id, sleep_fn=deps["sleep_fn"], retry=deps["retry"]
    )
    return {"recipientId": recipient_id, "deleted": deleted}


@router.post("/sweeps")
async def run_sweep(request: Request) -> dict:
    db, deps = _deps(request)
    result = await sweep_expired_reservations(db, **deps)
    return {
        "expired": result.expired,
        "alreadyResolved": result.lost_races,
        "failed": result.failed,
    }


def _sse_response(watch: Watch, request: Request) -> StreamingResponse:
    async def events() -> AsyncIterator[str]:
        async with watch:
            async for snapshot in watch:
                if await request.is_disconnected():
                    break
                payload = json.dumps([_wire(r) for r in snapshot])
                yield f"data: {payload}\n\n"

    return StreamingResponse(
        events(), media_type="text/event-stream", headers=_SSE_HEADERS
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, settings.log_format)

    # read clock/sleep through app.state so tests can swap them after startup
    task = asyncio.create_task(
        run_expiry_sweeper(
            app.state.database,
            interval_seconds=settings.sweep_interval_seconds,
            now_fn=lambda: app.state.now_fn(),
            sleep_fn=lambda seconds: app.state.sleep_fn(seconds),
            retry=app.state.retry,
        )
    )
    app.state.background_tasks.add(task)
    task.add_done_callback(app.state.background_tasks.discard)
    logger.info(f"{settings.app_name} started")

    yield

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    logger.info(f"{settings.app_name} shutting down")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    db: RecordDatabase = InMemoryKeyValueDatabase()
    app.state.settings = settings
    app.state.database = db

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep
    app.state.retry = RetryPolicy.from_settings(settings)

    app.state.background_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(router)
    return app
