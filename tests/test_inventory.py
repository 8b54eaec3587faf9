import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from boxoffice.config import DEFAULT_HOLD_TTL_MINUTES, MAX_HOLD_TTL_MINUTES
from boxoffice.db import Hold, HoldReason, as_utc, utcnow
from boxoffice.errors import (
    EventNotFoundError,
    ForbiddenError,
    HoldNotFoundError,
    InsufficientInventoryError,
    InvalidInputError,
    SeatAlreadyHeldError,
    SeatNotFoundError,
    TicketTypeNotFoundError,
)
from boxoffice.inventory import HoldSpec, InventoryLocks, resolve_expiry


async def hold_for(session_factory, inventory, event_id, holder_id, spec, now=None):
    async with session_factory() as session:
        return await inventory.create_hold(session, event_id, holder_id, spec, now=now)


async def summary_for(session_factory, inventory, event_id, now=None):
    async with session_factory() as session:
        return await inventory.get_inventory_summary(session, event_id, now=now)


@pytest.mark.asyncio
async def test_create_hold_reserves_quantity(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=5)

    hold = await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=ticket_type.id, quantity=3))

    assert hold.quantity == 3
    assert hold.holder_id == buyer_id
    assert hold.reason == HoldReason.CHECKOUT.value

    summary = await summary_for(session_factory, inventory, event.id)
    [row] = summary["ticket_types"]
    assert (row["capacity"], row["sold"], row["holds"], row["available"]) == (5, 0, 3, 2)
    assert summary["totals"]["holds"] == 3


@pytest.mark.asyncio
async def test_hold_larger_than_available_is_rejected(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=4)
    await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=ticket_type.id, quantity=3))

    with pytest.raises(InsufficientInventoryError) as exc_info:
        await hold_for(session_factory, inventory, event.id, "someone-else", HoldSpec(ticket_type_id=ticket_type.id, quantity=2))

    assert exc_info.value.available == 1
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_concurrent_holds_for_last_unit_have_one_winner(session_factory, inventory, make_event, make_ticket_type):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=1)

    attempts = 10
    results = await asyncio.gather(
        *[
            hold_for(session_factory, inventory, event.id, f"buyer-{i}", HoldSpec(ticket_type_id=ticket_type.id))
            for i in range(attempts)
        ],
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Hold)]
    losers = [r for r in results if isinstance(r, InsufficientInventoryError)]
    assert len(winners) == 1
    assert len(losers) == attempts - 1

    async with session_factory() as session:
        count = await session.execute(select(func.count(Hold.id)).where(Hold.ticket_type_id == ticket_type.id))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_concurrent_seat_holds_have_one_winner(session_factory, inventory, catalog, make_event):
    event = await make_event()
    async with session_factory() as session:
        [seat] = await catalog.add_seats(session, event.id, ["A1"])

    results = await asyncio.gather(
        *[hold_for(session_factory, inventory, event.id, f"buyer-{i}", HoldSpec(seat_id=seat.id)) for i in range(6)],
        return_exceptions=True,
    )

    assert sum(isinstance(r, Hold) for r in results) == 1
    assert sum(isinstance(r, SeatAlreadyHeldError) for r in results) == 5


@pytest.mark.asyncio
async def test_expired_hold_does_not_count_against_availability(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=1)
    long_ago = utcnow() - timedelta(hours=1)

    # created an hour ago with the default TTL, so already expired
    stale = await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=ticket_type.id), now=long_ago)
    assert as_utc(stale.expires_at) < utcnow()

    summary = await summary_for(session_factory, inventory, event.id)
    assert summary["ticket_types"][0]["available"] == 1
    assert summary["ticket_types"][0]["holds"] == 0

    # the row still exists but the unit can be held again
    fresh = await hold_for(session_factory, inventory, event.id, "another-buyer", HoldSpec(ticket_type_id=ticket_type.id))
    assert fresh.id != stale.id


@pytest.mark.asyncio
async def test_hold_stops_counting_at_expiry(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=2)
    now = utcnow()
    hold = await hold_for(
        session_factory, inventory, event.id, buyer_id,
        HoldSpec(ticket_type_id=ticket_type.id, quantity=2, expires_at=now + timedelta(minutes=5)),
        now=now,
    )
    expires_at = as_utc(hold.expires_at)

    before = await summary_for(session_factory, inventory, event.id, now=expires_at - timedelta(seconds=1))
    at = await summary_for(session_factory, inventory, event.id, now=expires_at)

    assert before["ticket_types"][0]["available"] == 0
    assert at["ticket_types"][0]["available"] == 2


@pytest.mark.asyncio
async def test_seat_hold_blocks_second_holder(session_factory, inventory, catalog, make_event, buyer_id):
    event = await make_event()
    async with session_factory() as session:
        seats = await catalog.add_seats(session, event.id, ["A1", "A2"])

    hold = await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(seat_id=seats[0].id, quantity=4))
    assert hold.quantity == 1

    with pytest.raises(SeatAlreadyHeldError):
        await hold_for(session_factory, inventory, event.id, "other", HoldSpec(seat_id=seats[0].id))

    other_seat = await hold_for(session_factory, inventory, event.id, "other", HoldSpec(seat_id=seats[1].id))
    assert other_seat.seat_id == seats[1].id


@pytest.mark.asyncio
async def test_unlimited_ticket_type_never_sells_out(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=None)

    await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=ticket_type.id, quantity=500))

    summary = await summary_for(session_factory, inventory, event.id)
    assert summary["ticket_types"][0]["available"] is None
    assert summary["ticket_types"][0]["holds"] == 500


@pytest.mark.asyncio
async def test_bad_references_are_rejected(session_factory, inventory, catalog, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    other_event = await make_event("Other")
    foreign_ticket_type = await make_ticket_type(other_event.id, capacity=10)
    async with session_factory() as session:
        [foreign_seat] = await catalog.add_seats(session, other_event.id, ["Z9"])

    with pytest.raises(EventNotFoundError):
        await hold_for(session_factory, inventory, uuid.uuid4(), buyer_id, HoldSpec(ticket_type_id=foreign_ticket_type.id))
    with pytest.raises(TicketTypeNotFoundError):
        await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=foreign_ticket_type.id))
    with pytest.raises(SeatNotFoundError):
        await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(seat_id=foreign_seat.id))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "spec",
    [
        HoldSpec(),
        HoldSpec(ticket_type_id=uuid.uuid4(), quantity=0),
        HoldSpec(ticket_type_id=uuid.uuid4(), quantity=-2),
        HoldSpec(ticket_type_id=uuid.uuid4(), reason="vip"),
        HoldSpec(ticket_type_id=uuid.uuid4(), expires_at=utcnow() - timedelta(minutes=1)),
    ],
)
async def test_invalid_hold_requests_fail_before_store_access(inventory, spec):
    # no database fixture: validation must not touch the store
    with pytest.raises(InvalidInputError):
        await inventory.create_hold(None, uuid.uuid4(), "buyer", spec)


def test_resolve_expiry_defaults_and_clamps():
    now = utcnow()
    assert resolve_expiry(None, now) == now + timedelta(minutes=DEFAULT_HOLD_TTL_MINUTES)
    assert resolve_expiry(now + timedelta(days=1), now) == now + timedelta(minutes=MAX_HOLD_TTL_MINUTES)
    assert resolve_expiry(now + timedelta(minutes=2), now) == now + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_list_active_holds_ordered_by_expiry(session_factory, inventory, make_event, make_ticket_type):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=10)
    now = utcnow()
    for minutes in (30, 5, 15):
        await hold_for(
            session_factory, inventory, event.id, f"buyer-{minutes}",
            HoldSpec(ticket_type_id=ticket_type.id, expires_at=now + timedelta(minutes=minutes)),
            now=now,
        )
    await hold_for(session_factory, inventory, event.id, "stale", HoldSpec(ticket_type_id=ticket_type.id), now=now - timedelta(hours=2))

    async with session_factory() as session:
        holds = await inventory.list_active_holds(session, event.id)

    assert [h.holder_id for h in holds] == ["buyer-5", "buyer-15", "buyer-30"]


@pytest.mark.asyncio
async def test_release_hold_returns_inventory(session_factory, inventory, make_event, make_ticket_type, buyer_id):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=1)
    hold = await hold_for(session_factory, inventory, event.id, buyer_id, HoldSpec(ticket_type_id=ticket_type.id))

    async with session_factory() as session:
        with pytest.raises(ForbiddenError):
            await inventory.release_hold(session, hold.id, "intruder")

    async with session_factory() as session:
        await inventory.release_hold(session, hold.id, buyer_id)

    summary = await summary_for(session_factory, inventory, event.id)
    assert summary["ticket_types"][0]["available"] == 1

    async with session_factory() as session:
        with pytest.raises(HoldNotFoundError):
            await inventory.release_hold(session, hold.id, buyer_id)


@pytest.mark.asyncio
async def test_sweep_deletes_only_expired_holds(session_factory, inventory, make_event, make_ticket_type):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=10)
    await hold_for(session_factory, inventory, event.id, "stale-1", HoldSpec(ticket_type_id=ticket_type.id), now=utcnow() - timedelta(hours=1))
    await hold_for(session_factory, inventory, event.id, "stale-2", HoldSpec(ticket_type_id=ticket_type.id), now=utcnow() - timedelta(hours=2))
    live = await hold_for(session_factory, inventory, event.id, "live", HoldSpec(ticket_type_id=ticket_type.id))

    async with session_factory() as session:
        removed = await inventory.sweep_expired_holds(session)
    assert removed == 2

    async with session_factory() as session:
        remaining = (await session.execute(select(Hold.id))).scalars().all()
    assert remaining == [live.id]

    async with session_factory() as session:
        assert await inventory.sweep_expired_holds(session) == 0


@pytest.mark.asyncio
async def test_summary_for_unknown_event(session_factory, inventory, tables):
    with pytest.raises(EventNotFoundError):
        await summary_for(session_factory, inventory, uuid.uuid4())


@pytest.mark.asyncio
async def test_metrics_count_active_and_expired(session_factory, inventory, make_event, make_ticket_type):
    event = await make_event()
    ticket_type = await make_ticket_type(event.id, capacity=10)
    await hold_for(session_factory, inventory, event.id, "a", HoldSpec(ticket_type_id=ticket_type.id, quantity=2))
    await hold_for(
        session_factory, inventory, event.id, "b",
        HoldSpec(ticket_type_id=ticket_type.id, expires_at=utcnow() + timedelta(minutes=2)),
    )
    await hold_for(session_factory, inventory, event.id, "c", HoldSpec(ticket_type_id=ticket_type.id), now=utcnow() - timedelta(hours=1))

    async with session_factory() as session:
        metrics = await inventory.collect_metrics(session)

    assert metrics["total_events"] == 1
    assert metrics["total_holds"] == 3
    assert metrics["active_holds"] == 2
    assert metrics["expired_holds"] == 1
    assert metrics["quantity_held"] == 3
    assert metrics["holds_expiring_soon"] == 1


@pytest.mark.asyncio
async def test_locks_serialize_same_key_only():
    locks = InventoryLocks()
    order = []

    async def worker(name, key, delay):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(delay)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a", "k1", 0.05), worker("b", "k1", 0), worker("c", "k2", 0))

    assert order.index("a-out") < order.index("b-in")
    assert order.index("c-in") < order.index("a-out")
