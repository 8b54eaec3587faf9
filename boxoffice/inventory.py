"""Time-bounded inventory holds.

A hold is ``active`` while ``expires_at > now`` and its row exists. Order
finalization deletes it (consumed); otherwise it simply stops counting once
it expires and the periodic sweep deletes the row later.

Every check-and-reserve runs inside one transaction that row-locks the
ticket type / seat (``SELECT ... FOR UPDATE``) and also holds an in-process
lock for the same inventory key, so stores without row locks still admit a
single writer per key.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete, func, select

from .config import DEFAULT_HOLD_TTL_MINUTES, MAX_HOLD_TTL_MINUTES
from .db import Event, Hold, HoldReason, Order, Seat, Ticket, TicketStatus, TicketType, as_utc, utcnow
from .errors import (
    EventNotFoundError,
    ForbiddenError,
    HoldNotFoundError,
    InsufficientInventoryError,
    InvalidInputError,
    SeatAlreadyHeldError,
    SeatNotFoundError,
    TicketTypeNotFoundError,
)
from .logging_config import generate_request_id, get_logger

logger = get_logger(__name__)


class InventoryLocks:
    """Per-key asyncio locks. Entries disappear once no task references them."""

    def __init__(self) -> None:
        self._locks = weakref.WeakValueDictionary()

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *keys: str):
        # fixed acquisition order avoids deadlock between multi-key holders
        locks = [self._get(key) for key in sorted(set(keys))]
        for lock in locks:
            await lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


def inventory_keys(ticket_type_id=None, seat_id=None) -> list:
    keys = []
    if ticket_type_id is not None:
        keys.append(f"ticket_type:{ticket_type_id}")
    if seat_id is not None:
        keys.append(f"seat:{seat_id}")
    return keys


def active_hold_filter(now: datetime):
    return Hold.expires_at > now


def sold_ticket_filter():
    return Ticket.status != TicketStatus.VOID.value


@dataclass
class HoldSpec:
    ticket_type_id: Optional[object] = None
    seat_id: Optional[object] = None
    quantity: int = 1
    expires_at: Optional[datetime] = None
    reason: str = HoldReason.CHECKOUT.value


def resolve_expiry(expires_at: Optional[datetime], now: datetime) -> datetime:
    """Default a missing expiry and clamp one that runs past the max TTL."""
    if expires_at is None:
        return now + timedelta(minutes=DEFAULT_HOLD_TTL_MINUTES)

    expires_at = as_utc(expires_at)
    if expires_at <= now:
        raise InvalidInputError("expires_at must be in the future")
    return min(expires_at, now + timedelta(minutes=MAX_HOLD_TTL_MINUTES))


class InventoryService:
    def __init__(self, locks: Optional[InventoryLocks] = None) -> None:
        self.locks = locks or InventoryLocks()

    async def _held_quantity(self, db, now, ticket_type_id=None, seat_id=None) -> int:
        condition = Hold.ticket_type_id == ticket_type_id if ticket_type_id is not None else Hold.seat_id == seat_id
        result = await db.execute(
            select(func.coalesce(func.sum(Hold.quantity), 0)).where(and_(condition, active_hold_filter(now)))
        )
        return int(result.scalar() or 0)

    async def _sold_count(self, db, ticket_type_id=None, seat_id=None) -> int:
        condition = Ticket.ticket_type_id == ticket_type_id if ticket_type_id is not None else Ticket.seat_id == seat_id
        result = await db.execute(select(func.count(Ticket.id)).where(and_(condition, sold_ticket_filter())))
        return int(result.scalar() or 0)

    async def create_hold(self, db, event_id, holder_id: str, request: HoldSpec, now: Optional[datetime] = None) -> Hold:
        """Reserve inventory for ``holder_id`` until ``expires_at``.

        Raises InsufficientInventoryError when a ticket type cannot cover the
        quantity, SeatAlreadyHeldError when the seat is taken, and the
        NotFound family for references outside this event.
        """
        request_id = generate_request_id()
        now = as_utc(now) or utcnow()

        if request.ticket_type_id is None and request.seat_id is None:
            raise InvalidInputError("Either ticket_type_id or seat_id is required")
        if request.seat_id is not None:
            # a seat is a single unit
            quantity = 1
        else:
            quantity = request.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidInputError("quantity must be a positive integer")
        try:
            reason = HoldReason(request.reason).value
        except ValueError:
            raise InvalidInputError(f"Unknown hold reason: {request.reason}")
        expires_at = resolve_expiry(request.expires_at, now)

        logger.info(
            "Creating hold",
            event_type="hold_create_start",
            request_id=request_id,
            event_id=str(event_id),
            ticket_type_id=str(request.ticket_type_id) if request.ticket_type_id else None,
            seat_id=str(request.seat_id) if request.seat_id else None,
            requested_qty=quantity,
        )

        async with self.locks.hold(*inventory_keys(request.ticket_type_id, request.seat_id)):
            async with db.begin():  # Use transaction for concurrency control
                event_result = await db.execute(
                    select(Event.id).where(and_(Event.id == event_id, Event.deleted_at.is_(None)))
                )
                if event_result.scalar_one_or_none() is None:
                    raise EventNotFoundError(event_id)

                if request.ticket_type_id is not None:
                    ticket_type_result = await db.execute(
                        select(TicketType)
                        .where(and_(TicketType.id == request.ticket_type_id, TicketType.event_id == event_id))
                        .with_for_update()
                    )
                    ticket_type = ticket_type_result.scalar_one_or_none()
                    if ticket_type is None:
                        raise TicketTypeNotFoundError(request.ticket_type_id)

                    if ticket_type.capacity is not None:
                        held = await self._held_quantity(db, now, ticket_type_id=ticket_type.id)
                        sold = await self._sold_count(db, ticket_type_id=ticket_type.id)
                        available = ticket_type.capacity - sold - held
                        if available < quantity:
                            logger.info(
                                "Insufficient inventory",
                                event_type="hold_create_rejected",
                                request_id=request_id,
                                ticket_type_id=str(ticket_type.id),
                                requested_qty=quantity,
                                available_qty=max(available, 0),
                            )
                            raise InsufficientInventoryError(quantity, max(available, 0))

                if request.seat_id is not None:
                    seat_result = await db.execute(
                        select(Seat)
                        .where(and_(Seat.id == request.seat_id, Seat.event_id == event_id))
                        .with_for_update()
                    )
                    seat = seat_result.scalar_one_or_none()
                    if seat is None:
                        raise SeatNotFoundError(request.seat_id)

                    if await self._held_quantity(db, now, seat_id=seat.id) or await self._sold_count(db, seat_id=seat.id):
                        logger.info(
                            "Seat unavailable",
                            event_type="hold_create_rejected",
                            request_id=request_id,
                            seat_id=str(seat.id),
                        )
                        raise SeatAlreadyHeldError(seat.id)

                hold = Hold(
                    event_id=event_id,
                    ticket_type_id=request.ticket_type_id,
                    seat_id=request.seat_id,
                    quantity=quantity,
                    holder_id=holder_id,
                    reason=reason,
                    expires_at=expires_at,
                    created_at=now,
                )
                db.add(hold)
                await db.flush()

        logger.info(
            "Hold created successfully",
            event_type="hold_create_success",
            request_id=request_id,
            hold_id=str(hold.id),
            event_id=str(event_id),
            quantity_held=quantity,
            expires_at=expires_at.isoformat(),
        )
        return hold

    async def get_inventory_summary(self, db, event_id, viewer_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """Per ticket type capacity / sold / held / available, plus event totals.

        ``available`` is None for ticket types without a capacity.
        """
        now = as_utc(now) or utcnow()

        event_result = await db.execute(select(Event).where(and_(Event.id == event_id, Event.deleted_at.is_(None))))
        event = event_result.unique().scalar_one_or_none()
        if event is None:
            raise EventNotFoundError(event_id)

        ticket_types_result = await db.execute(
            select(TicketType).where(TicketType.event_id == event_id).order_by(TicketType.created_at, TicketType.id)
        )

        summaries = []
        for ticket_type in ticket_types_result.scalars().all():
            sold = await self._sold_count(db, ticket_type_id=ticket_type.id)
            held = await self._held_quantity(db, now, ticket_type_id=ticket_type.id)
            checked_in_result = await db.execute(
                select(func.count(Ticket.id)).where(
                    and_(Ticket.ticket_type_id == ticket_type.id, Ticket.status == TicketStatus.CHECKED_IN.value)
                )
            )
            capacity = ticket_type.capacity
            summaries.append({
                "id": ticket_type.id,
                "name": ticket_type.name,
                "kind": ticket_type.kind,
                "capacity": capacity,
                "sold": sold,
                "checked_in": int(checked_in_result.scalar() or 0),
                "holds": held,
                "available": max(capacity - sold - held, 0) if capacity is not None else None,
            })

        logger.debug(
            "Inventory summary computed",
            event_type="inventory_summary",
            event_id=str(event_id),
            viewer_id=viewer_id,
            ticket_types=len(summaries),
        )

        return {
            "event": {"id": event.id, "title": event.title, "status": event.status, "start_at": as_utc(event.start_at)},
            "totals": {
                "sold": sum(s["sold"] for s in summaries),
                "checked_in": sum(s["checked_in"] for s in summaries),
                "holds": sum(s["holds"] for s in summaries),
            },
            "ticket_types": summaries,
        }

    async def list_active_holds(self, db, event_id, now: Optional[datetime] = None) -> list:
        now = as_utc(now) or utcnow()
        result = await db.execute(
            select(Hold)
            .where(and_(Hold.event_id == event_id, active_hold_filter(now)))
            .order_by(Hold.expires_at.asc())
        )
        return list(result.scalars().all())

    async def release_hold(self, db, hold_id, holder_id: str) -> None:
        """Let the holder give a hold back before it expires."""
        async with db.begin():
            result = await db.execute(select(Hold).where(Hold.id == hold_id).with_for_update())
            hold = result.scalar_one_or_none()
            if hold is None:
                raise HoldNotFoundError(hold_id)
            if hold.holder_id != holder_id:
                raise ForbiddenError(hold_id)
            await db.delete(hold)

        logger.info("Hold released", event_type="hold_released", hold_id=str(hold_id), holder_id=holder_id)

    async def sweep_expired_holds(self, db, now: Optional[datetime] = None) -> int:
        """Delete holds whose expiry has passed. Returns the number removed."""
        now = as_utc(now) or utcnow()
        async with db.begin():
            result = await db.execute(delete(Hold).where(Hold.expires_at < now))
        removed = result.rowcount or 0

        if removed:
            logger.info(
                "Expired holds cleanup",
                event_type="holds_expired",
                expired_count=removed,
                cleanup_time=now.isoformat(),
            )
        return removed

    async def collect_metrics(self, db, now: Optional[datetime] = None) -> dict:
        """System-wide counters for the metrics endpoint."""
        now = as_utc(now) or utcnow()
        five_minutes_from_now = now + timedelta(minutes=5)

        async def scalar(stmt) -> int:
            return int((await db.execute(stmt)).scalar() or 0)

        return {
            "total_events": await scalar(select(func.count(Event.id))),
            "total_holds": await scalar(select(func.count(Hold.id))),
            "active_holds": await scalar(select(func.count(Hold.id)).where(active_hold_filter(now))),
            "expired_holds": await scalar(select(func.count(Hold.id)).where(Hold.expires_at <= now)),
            "total_orders": await scalar(select(func.count(Order.id))),
            "tickets_issued": await scalar(select(func.count(Ticket.id)).where(sold_ticket_filter())),
            "quantity_held": await scalar(
                select(func.coalesce(func.sum(Hold.quantity), 0)).where(active_hold_filter(now))
            ),
            "holds_expiring_soon": await scalar(
                select(func.count(Hold.id)).where(
                    and_(active_hold_filter(now), Hold.expires_at <= five_minutes_from_now)
                )
            ),
        }
