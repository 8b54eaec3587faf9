from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, select

from .db import Hold, Order, OrderStatus, Ticket, TicketStatus, TicketType, as_utc, utcnow
from .errors import ForbiddenError, HoldExpiredError, HoldNotFoundError
from .inventory import InventoryService, inventory_keys
from .logging_config import generate_request_id, get_logger

logger = get_logger(__name__)


class OrderService:
    """Turns a hold into a paid order. Payment capture happens upstream."""

    def __init__(self, inventory: InventoryService) -> None:
        self.inventory = inventory

    async def finalize_order(self, db, hold_id, holder_id: str, now: Optional[datetime] = None) -> Order:
        """Consume ``hold_id``: issue its tickets and delete it in one transaction.

        On any failure the transaction rolls back and the hold is left as it
        was, so the caller can retry until it expires.
        """
        request_id = generate_request_id()
        now = as_utc(now) or utcnow()

        logger.info(
            "Creating order",
            event_type="order_create_start",
            request_id=request_id,
            hold_id=str(hold_id),
        )

        # Peek at the hold to learn which inventory lock to take
        peek = await db.execute(select(Hold.ticket_type_id, Hold.seat_id).where(Hold.id == hold_id))
        target = peek.one_or_none()
        await db.rollback()
        if target is None:
            logger.error(
                "Hold not found",
                event_type="order_create_error",
                request_id=request_id,
                hold_id=str(hold_id),
                error="hold_not_found",
            )
            raise HoldNotFoundError(hold_id)

        async with self.inventory.locks.hold(*inventory_keys(target.ticket_type_id, target.seat_id)):
            async with db.begin():  # Use transaction for concurrency control
                hold_result = await db.execute(select(Hold).where(Hold.id == hold_id).with_for_update())
                hold = hold_result.scalar_one_or_none()

                if hold is None:
                    # consumed or swept while we waited for the lock
                    raise HoldNotFoundError(hold_id)

                if hold.holder_id != holder_id:
                    logger.error(
                        "Hold owned by another user",
                        event_type="order_create_error",
                        request_id=request_id,
                        hold_id=str(hold_id),
                        error="hold_forbidden",
                    )
                    raise ForbiddenError(hold_id)

                if as_utc(hold.expires_at) <= now:
                    logger.error(
                        "Hold has expired",
                        event_type="order_create_error",
                        request_id=request_id,
                        hold_id=str(hold_id),
                        error="hold_expired",
                        expires_at=as_utc(hold.expires_at).isoformat(),
                    )
                    raise HoldExpiredError(hold_id)

                unit_price = 0
                if hold.ticket_type_id is not None:
                    price_result = await db.execute(
                        select(TicketType.price_cents).where(
                            and_(TicketType.id == hold.ticket_type_id, TicketType.event_id == hold.event_id)
                        )
                    )
                    unit_price = price_result.scalar_one_or_none() or 0

                order = Order(
                    buyer_id=holder_id,
                    event_id=hold.event_id,
                    status=OrderStatus.PAID.value,
                    quantity=hold.quantity,
                    total_cents=unit_price * hold.quantity,
                    created_at=now,
                )
                order.tickets = [
                    Ticket(
                        event_id=hold.event_id,
                        ticket_type_id=hold.ticket_type_id,
                        seat_id=hold.seat_id,
                        status=TicketStatus.ISSUED.value,
                        created_at=now,
                    )
                    for _ in range(hold.quantity)
                ]
                db.add(order)
                await db.flush()

                deleted = await db.execute(delete(Hold).where(Hold.id == hold_id))
                if deleted.rowcount != 1:
                    raise HoldNotFoundError(hold_id)

        logger.info(
            "Order created successfully",
            event_type="order_create_success",
            request_id=request_id,
            hold_id=str(hold_id),
            order_id=str(order.id),
            event_id=str(order.event_id),
            quantity=order.quantity,
        )

        return order
