import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy import Column, String, Integer, DateTime, Float, ForeignKey, CheckConstraint, Index, Text, Uuid

from .config import DATABASE_URL, SQL_ECHO

# Create async engine
engine = create_async_engine(DATABASE_URL, echo=SQL_ECHO)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to an aware UTC datetime. SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventStatus(str, Enum):
    DRAFT = "draft"
    LIVE = "live"
    ENDED = "ended"
    CANCELLED = "cancelled"


class Visibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class TicketKind(str, Enum):
    GA = "GA"
    SEATED = "SEATED"


class HoldReason(str, Enum):
    CHECKOUT = "checkout"
    RESERVATION = "reservation"
    ORGANIZER_HOLD = "organizer_hold"


class TicketStatus(str, Enum):
    ISSUED = "issued"
    CHECKED_IN = "checked_in"
    VOID = "void"


class OrderStatus(str, Enum):
    PAID = "paid"


class Base(DeclarativeBase):
    pass


class Venue(Base):
    __tablename__ = "venues"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    city = Column(String(120))
    country = Column(String(2))
    latitude = Column(Float)
    longitude = Column(Float)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint('latitude IS NULL OR (latitude >= -90 AND latitude <= 90)', name='check_venue_latitude'),
        CheckConstraint('longitude IS NULL OR (longitude >= -180 AND longitude <= 180)', name='check_venue_longitude'),
    )


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid(as_uuid=True))
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default=EventStatus.DRAFT.value)
    visibility = Column(String(20), nullable=False, default=Visibility.PUBLIC.value)
    category_id = Column(Uuid(as_uuid=True))
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    deleted_at = Column(DateTime(timezone=True))
    latitude = Column(Float)
    longitude = Column(Float)
    venue_id = Column(Uuid(as_uuid=True), ForeignKey("venues.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    venue = relationship(Venue, lazy="joined")

    __table_args__ = (
        CheckConstraint('end_at >= start_at', name='check_event_dates'),
        Index('ix_events_discovery', 'status', 'visibility', 'end_at'),
    )


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    kind = Column(String(10), nullable=False, default=TicketKind.GA.value)
    # NULL capacity means unlimited
    capacity = Column(Integer)
    price_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint('capacity IS NULL OR capacity >= 0', name='check_capacity_non_negative'),
        CheckConstraint('price_cents >= 0', name='check_price_non_negative'),
    )


class Seat(Base):
    __tablename__ = "seats"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(50), nullable=False)

    __table_args__ = (
        Index('ux_seats_event_label', 'event_id', 'label', unique=True),
    )


class Hold(Base):
    __tablename__ = "holds"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    ticket_type_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_types.id", ondelete="CASCADE"))
    seat_id = Column(Uuid(as_uuid=True), ForeignKey("seats.id", ondelete="CASCADE"))
    quantity = Column(Integer, nullable=False)
    holder_id = Column(String(255), nullable=False)
    reason = Column(String(20), nullable=False, default=HoldReason.CHECKOUT.value)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_quantity_positive'),
        CheckConstraint('ticket_type_id IS NOT NULL OR seat_id IS NOT NULL', name='check_hold_target'),
        Index('ix_holds_ticket_type_expiry', 'ticket_type_id', 'expires_at'),
        Index('ix_holds_seat_expiry', 'seat_id', 'expires_at'),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    buyer_id = Column(String(255), nullable=False)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PAID.value)
    quantity = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    tickets = relationship("Ticket", back_populates="order", lazy="selectin")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    ticket_type_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_types.id", ondelete="CASCADE"))
    seat_id = Column(Uuid(as_uuid=True), ForeignKey("seats.id", ondelete="SET NULL"))
    status = Column(String(20), nullable=False, default=TicketStatus.ISSUED.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship(Order, back_populates="tickets")

    __table_args__ = (
        Index('ix_tickets_ticket_type_status', 'ticket_type_id', 'status'),
        Index('ix_tickets_seat_status', 'seat_id', 'status'),
    )


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
