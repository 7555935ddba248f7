import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from conftest import HERE, NO_WAIT, Clock, FlakyDatabase, no_sleep

from pingpick.arbiter import Offer, respond_to_ping
from pingpick.broadcaster import cancel_ping, expand_radius, open_ping
from pingpick.database import InMemoryKeyValueDatabase
from pingpick.errors import InvalidRequest, NotFound, StaleState, StoreUnavailable
from pingpick.models import Alert, AlertKind, Ping, PingStatus, Urgency
from pingpick.store import RetryPolicy, fetch_ping
from pingpick.tracker import complete_pickup, get_reservation, remaining_time


async def _open(db, deps, **kwargs) -> Ping:
    args = {
        "item_name": "Amoxicillin",
        "urgency": Urgency.NORMAL,
        "requester_id": "user-1",
        "location": HERE,
        "radius_km": 3,
    }
    args.update(kwargs)
    return await open_ping(db, **args, **deps)


def _alerts(db, recipient_id=None) -> list[Alert]:
    return [
        v
        for v in db.all()
        if isinstance(v, Alert) and recipient_id in (None, v.recipient_id)
    ]


@pytest.mark.asyncio
async def test_open_ping_emits_no_alert(db, deps) -> None:
    ping = await _open(db, deps)
    assert ping.status == PingStatus.OPEN
    assert ping.committed_response is None
    assert _alerts(db) == []


@pytest.mark.asyncio
async def test_requester_may_hold_several_open_pings(db, deps) -> None:
    first = await _open(db, deps)
    second = await _open(db, deps, item_name="Insulin")
    assert first.id != second.id
    assert {
        p.status for p in db.all() if isinstance(p, Ping)
    } == {PingStatus.OPEN}


@pytest.mark.asyncio
async def test_single_active_reservation_policy(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 30, **deps)

    # default policy: allowed
    await _open(db, deps, single_active_reservation=False)

    with pytest.raises(InvalidRequest):
        await _open(db, deps, single_active_reservation=True)

    # another requester is unaffected
    await _open(db, deps, requester_id="user-2", single_active_reservation=True)


@pytest.mark.asyncio
async def test_decline_is_informational(db, deps) -> None:
    ping = await _open(db, deps)
    result = await respond_to_ping(db, ping.id, "pharmacy-a", False, **deps)

    assert result.accepted is True
    assert (await fetch_ping(db, ping.id)).status == PingStatus.OPEN
    assert _alerts(db) == []


@pytest.mark.asyncio
async def test_decline_drops_reservation_minutes(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", False, 15, **deps)
    record = db.get(f"response:{ping.id}:pharmacy-a")
    assert record.reservation_minutes is None


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes", [0, -5, None])
async def test_accept_requires_positive_minutes(db, deps, minutes) -> None:
    ping = await _open(db, deps)
    with pytest.raises(InvalidRequest):
        await respond_to_ping(db, ping.id, "pharmacy-a", True, minutes, **deps)

    stored = await fetch_ping(db, ping.id)
    assert stored.status == PingStatus.OPEN
    assert db.get(f"response:{ping.id}:pharmacy-a") is None


@pytest.mark.asyncio
async def test_commit_snapshot_and_alerts(db, deps, clock: Clock) -> None:
    ping = await _open(db, deps)
    clock.advance(minutes=2)
    result = await respond_to_ping(
        db,
        ping.id,
        "pharmacy-a",
        True,
        20,
        offer=Offer(provider_name="City Pharmacy", distance_km=1.2, price="$8"),
        **deps,
    )

    assert result.accepted is True
    offer = result.ping.committed_response
    assert offer.provider_name == "City Pharmacy"
    assert offer.distance_km == 1.2
    assert offer.responded_at == clock.now
    assert offer.expires_at == clock.now + timedelta(minutes=20)

    requester = _alerts(db, "user-1")
    assert [a.kind for a in requester] == [AlertKind.RESPONSE]
    assert "City Pharmacy" in requester[0].message
    assert [a.kind for a in _alerts(db, "pharmacy-a")] == [AlertKind.RESERVATION]


@pytest.mark.asyncio
async def test_second_acceptance_loses_and_snapshot_is_immutable(db, deps) -> None:
    ping = await _open(db, deps)
    first = await respond_to_ping(db, ping.id, "pharmacy-a", True, 30, **deps)
    second = await respond_to_ping(db, ping.id, "pharmacy-b", True, 5, **deps)

    assert first.accepted is True
    assert second.accepted is False
    assert second.reason == "Already reserved by someone else"

    stored = await fetch_ping(db, ping.id)
    assert stored.committed_response == first.ping.committed_response
    # the loser does not trigger any notification
    assert _alerts(db, "pharmacy-b") == []


@pytest.mark.asyncio
async def test_gathered_acceptances_commit_exactly_once(db, deps) -> None:
    ping = await _open(db, deps)
    results = await asyncio.gather(
        *(
            respond_to_ping(db, ping.id, f"pharmacy-{i}", True, 30, **deps)
            for i in range(10)
        )
    )
    assert sum(r.accepted for r in results) == 1
    assert len(_alerts(db, "user-1")) == 1


def test_threaded_acceptances_commit_exactly_once() -> None:
    db = InMemoryKeyValueDatabase()
    clock = Clock()
    deps = {"now_fn": clock, "sleep_fn": no_sleep, "retry": NO_WAIT}
    ping = asyncio.run(_open(db, deps))

    n = 16
    barrier = threading.Barrier(n)

    def respond(i: int) -> bool:
        barrier.wait()
        result = asyncio.run(
            respond_to_ping(db, ping.id, f"pharmacy-{i}", True, 30, **deps)
        )
        return result.accepted

    with ThreadPoolExecutor(max_workers=n) as pool:
        accepted = list(pool.map(respond, range(n)))

    assert accepted.count(True) == 1
    assert accepted.count(False) == n - 1
    stored = db.get(f"ping:{ping.id}")
    assert stored.status == PingStatus.COMMITTED
    winner = accepted.index(True)
    assert stored.committed_response.provider_id == f"pharmacy-{winner}"


@pytest.mark.asyncio
async def test_respond_to_unknown_ping(db, deps) -> None:
    with pytest.raises(NotFound):
        await respond_to_ping(db, "missing", "pharmacy-a", True, 10, **deps)


@pytest.mark.asyncio
async def test_response_against_cancelled_ping_is_stale(db, deps) -> None:
    ping = await _open(db, deps)
    await cancel_ping(db, ping.id, "user-1", **deps)

    with pytest.raises(StaleState):
        await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    with pytest.raises(StaleState):
        await respond_to_ping(db, ping.id, "pharmacy-a", False, **deps)


@pytest.mark.asyncio
async def test_late_decline_cannot_rewrite_the_winning_response(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)

    with pytest.raises(StaleState):
        await respond_to_ping(db, ping.id, "pharmacy-a", False, **deps)

    record = db.get(f"response:{ping.id}:pharmacy-a")
    assert record.available is True
    assert record.reservation_minutes == 10
    stored = await fetch_ping(db, ping.id)
    assert stored.committed_response.provider_id == "pharmacy-a"


@pytest.mark.asyncio
async def test_provider_cannot_change_its_answer(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", False, **deps)

    with pytest.raises(StaleState):
        await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    assert (await fetch_ping(db, ping.id)).status == PingStatus.OPEN
    assert db.get(f"response:{ping.id}:pharmacy-a").available is False

    # repeating the same answer is harmless
    again = await respond_to_ping(db, ping.id, "pharmacy-a", False, **deps)
    assert again.accepted is True


@pytest.mark.asyncio
async def test_late_loser_is_not_recorded(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)

    late = await respond_to_ping(db, ping.id, "pharmacy-b", True, 5, **deps)
    assert late.accepted is False
    assert db.get(f"response:{ping.id}:pharmacy-b") is None


@pytest.mark.asyncio
async def test_commit_retries_transient_store_failure(deps) -> None:
    db = FlakyDatabase(fail_writes=2)
    ping = await _open(db, deps)

    result = await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)

    assert result.accepted is True
    assert db.write_attempts == 3


@pytest.mark.asyncio
async def test_store_outage_surfaces_after_bounded_retries(deps) -> None:
    db = FlakyDatabase(fail_writes=10)
    ping = await _open(db, deps)
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    deps = {**deps, "sleep_fn": record_sleep, "retry": RetryPolicy(attempts=4)}
    with pytest.raises(StoreUnavailable):
        await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)

    assert db.write_attempts == 4
    assert len(sleeps) == 3
    assert sleeps[0] < sleeps[-1]
    assert (await fetch_ping(db, ping.id)).status == PingStatus.OPEN


@pytest.mark.asyncio
async def test_repeat_acceptance_by_winner_is_accepted(db, deps) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    again = await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    assert again.accepted is True
    assert len(_alerts(db, "user-1")) == 1


@pytest.mark.asyncio
async def test_cancel_rules(db, deps) -> None:
    ping = await _open(db, deps)
    cancelled = await cancel_ping(db, ping.id, "user-1", **deps)
    assert cancelled.status == PingStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    # repeat is a no-op
    again = await cancel_ping(db, ping.id, "user-1", **deps)
    assert again == cancelled

    committed = await _open(db, deps)
    await respond_to_ping(db, committed.id, "pharmacy-a", True, 10, **deps)
    with pytest.raises(StaleState):
        await cancel_ping(db, committed.id, "user-1", **deps)


@pytest.mark.asyncio
async def test_expand_radius(db, deps) -> None:
    ping = await _open(db, deps)
    wider = await expand_radius(db, ping.id, 10, **deps)
    assert wider.radius_km == 10
    assert wider.status == PingStatus.OPEN

    for bad in (0, float("nan"), float("inf")):
        with pytest.raises(InvalidRequest):
            await expand_radius(db, ping.id, bad, **deps)

    # radius only grows; repeating the current radius is fine
    with pytest.raises(InvalidRequest):
        await expand_radius(db, ping.id, 5, **deps)
    assert (await expand_radius(db, ping.id, 10, **deps)).radius_km == 10

    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    with pytest.raises(StaleState):
        await expand_radius(db, ping.id, 20, **deps)


@pytest.mark.asyncio
async def test_remaining_time_counts_down_and_clamps(db, deps, clock: Clock) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)

    readings = []
    for _ in range(8):
        readings.append(await remaining_time(db, ping.id, **deps))
        clock.advance(minutes=2)

    assert readings[0] == timedelta(minutes=10)
    assert all(a >= b for a, b in zip(readings, readings[1:]))
    assert readings[-1] == timedelta(0)
    assert min(readings) >= timedelta(0)


@pytest.mark.asyncio
async def test_remaining_time_needs_a_reservation(db, deps) -> None:
    ping = await _open(db, deps)
    with pytest.raises(StaleState):
        await remaining_time(db, ping.id, **deps)


@pytest.mark.asyncio
async def test_complete_twice_is_one_transition(db, deps, clock: Clock) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 10, **deps)
    clock.advance(minutes=5)

    first = await complete_pickup(db, ping.id, "pharmacy-a", **deps)
    alerts_after_first = len(_alerts(db))
    clock.advance(minutes=1)
    second = await complete_pickup(db, ping.id, "pharmacy-a", **deps)

    assert first.status == PingStatus.COMPLETED
    assert second == first
    assert len(_alerts(db)) == alerts_after_first
    assert [a.kind for a in _alerts(db, "user-1")] == [
        AlertKind.RESPONSE,
        AlertKind.COMPLETION,
    ]
    assert await remaining_time(db, ping.id, **deps) == timedelta(0)


@pytest.mark.asyncio
async def test_complete_requires_commitment(db, deps) -> None:
    ping = await _open(db, deps)
    with pytest.raises(StaleState):
        await complete_pickup(db, ping.id, "pharmacy-a", **deps)


@pytest.mark.asyncio
async def test_reservation_view(db, deps, clock: Clock) -> None:
    ping = await _open(db, deps)
    await respond_to_ping(db, ping.id, "pharmacy-a", True, 15, **deps)
    clock.advance(minutes=5)

    view = await get_reservation(db, ping.id, **deps)
    assert view.provider_id == "pharmacy-a"
    assert view.requester_id == "user-1"
    assert view.remaining_seconds == 600
    assert view.status == PingStatus.COMMITTED
