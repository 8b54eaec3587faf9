from uuid import UUID
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .db import EventStatus, HoldReason, TicketKind, Visibility

# Request schemas
class VenueCreate(BaseModel):
    name: str
    city: Optional[str] = None
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

class EventCreate(BaseModel):
    title: str
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    status: EventStatus = EventStatus.DRAFT
    visibility: Visibility = Visibility.PUBLIC
    org_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    venue_id: Optional[UUID] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

class TicketTypeCreate(BaseModel):
    name: str
    kind: TicketKind = TicketKind.GA
    capacity: Optional[int] = Field(default=None, ge=0, description="Omit for unlimited inventory")
    price_cents: int = Field(default=0, ge=0)

class SeatsCreate(BaseModel):
    labels: List[str] = Field(min_length=1)

class HoldRequest(BaseModel):
    ticket_type_id: Optional[UUID] = None
    seat_id: Optional[UUID] = None
    quantity: int = Field(default=1, ge=1)
    expires_at: Optional[datetime] = Field(default=None, description="Defaults to now + hold TTL; clamped to the max TTL")
    reason: HoldReason = HoldReason.CHECKOUT

class OrderRequest(BaseModel):
    hold_id: UUID

# Response schemas
class VenueResponse(BaseModel):
    id: UUID
    name: str
    city: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    class Config:
        from_attributes = True

class EventResponse(BaseModel):
    id: UUID
    title: str
    status: str
    visibility: str
    start_at: datetime
    end_at: datetime
    venue_id: Optional[UUID] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime

    class Config:
        from_attributes = True

class TicketTypeResponse(BaseModel):
    id: UUID
    event_id: UUID
    name: str
    kind: str
    capacity: Optional[int] = None
    price_cents: int

    class Config:
        from_attributes = True

class SeatResponse(BaseModel):
    id: UUID
    label: str

    class Config:
        from_attributes = True

class HoldResponse(BaseModel):
    id: UUID
    event_id: UUID
    ticket_type_id: Optional[UUID] = None
    seat_id: Optional[UUID] = None
    quantity: int
    holder_id: str
    reason: str
    expires_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True

class TicketResponse(BaseModel):
    id: UUID
    ticket_type_id: Optional[UUID] = None
    seat_id: Optional[UUID] = None
    status: str

    class Config:
        from_attributes = True

class OrderResponse(BaseModel):
    id: UUID
    event_id: UUID
    buyer_id: str
    status: str
    quantity: int
    total_cents: int
    tickets: List[TicketResponse] = []

    class Config:
        from_attributes = True

class TicketTypeInventory(BaseModel):
    id: UUID
    name: str
    kind: str
    capacity: Optional[int] = None
    sold: int
    checked_in: int
    holds: int
    available: Optional[int] = Field(default=None, description="None when capacity is unlimited")

class InventoryEvent(BaseModel):
    id: UUID
    title: str
    status: str
    start_at: datetime

class InventoryTotals(BaseModel):
    sold: int
    checked_in: int
    holds: int

class InventorySummaryResponse(BaseModel):
    event: InventoryEvent
    totals: InventoryTotals
    ticket_types: List[TicketTypeInventory]

class EventWithDistance(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    status: str
    visibility: str
    category_id: Optional[UUID] = None
    org_id: Optional[UUID] = None
    venue_id: Optional[UUID] = None
    latitude: float
    longitude: float
    distance: float = Field(description="Kilometers from the search point, 2 decimals")

class PaginationMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int

class SearchLocation(BaseModel):
    latitude: float
    longitude: float

class NearbyEventsResponse(BaseModel):
    data: List[EventWithDistance]
    meta: PaginationMeta
    search_location: SearchLocation

class MetricsResponse(BaseModel):
    """System-wide metrics"""
    total_events: int
    total_holds: int
    active_holds: int
    expired_holds: int = Field(description="Expired holds not yet removed by the sweep")
    total_orders: int
    tickets_issued: int
    quantity_held: int
    holds_expiring_soon: int = Field(description="Holds expiring within next 5 minutes")
