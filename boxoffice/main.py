import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from .catalog import CatalogService
from .config import DEFAULT_PAGE_SIZE, DEFAULT_SEARCH_RADIUS_KM, HOLD_SWEEP_INTERVAL_SECONDS
from .db import EventStatus, async_session_maker, create_tables, get_db, utcnow
from .errors import BoxOfficeError
from .geo import GeoPoint
from .geo_search import GeoSearchService, SearchFilters
from .inventory import HoldSpec, InventoryService
from .logging_config import generate_request_id, logger
from .orders import OrderService
from .schemas import (
    VenueCreate, VenueResponse, EventCreate, EventResponse, TicketTypeCreate, TicketTypeResponse,
    SeatsCreate, SeatResponse, HoldRequest, HoldResponse, OrderRequest, OrderResponse,
    InventorySummaryResponse, NearbyEventsResponse, MetricsResponse
)

geo_search = GeoSearchService()
inventory = InventoryService()
orders = OrderService(inventory)
catalog = CatalogService(geo_search)


# Background task to remove expired holds
async def sweep_expired_holds():
    """Runs every HOLD_SWEEP_INTERVAL_SECONDS and deletes holds past their expiry"""
    while True:
        try:
            async with async_session_maker() as db:
                await inventory.sweep_expired_holds(db)
        except Exception as e:
            logger.error(
                "Error in cleanup task",
                event_type="cleanup_error",
                error=str(e)
            )
        await asyncio.sleep(HOLD_SWEEP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    async with async_session_maker() as db:
        await geo_search.ensure_spatial_schema(db)

    # Startup: Start the cleanup task
    sweep_task = None
    if HOLD_SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = asyncio.create_task(sweep_expired_holds())
    yield
    # Shutdown: Cancel the cleanup task
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Box Office",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BoxOfficeError)
async def box_office_error_handler(request: Request, exc: BoxOfficeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Correlate every log line of one HTTP request under a single request_id"""
    structlog.contextvars.clear_contextvars()
    request_id = request.headers.get("X-Request-Id") or generate_request_id()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


def current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Holder identity is established upstream; we only read it."""
    return x_user_id


@app.post("/venues", response_model=VenueResponse, status_code=201)
async def create_venue(venue_data: VenueCreate, db: AsyncSession = Depends(get_db)):
    return await catalog.create_venue(db, **venue_data.model_dump())


@app.post("/events", response_model=EventResponse, status_code=201)
async def create_event(event_data: EventCreate, db: AsyncSession = Depends(get_db)):
    """Create an event, optionally located at a venue"""
    fields = event_data.model_dump(exclude={"title", "start_at", "end_at"})
    fields["status"] = event_data.status.value
    fields["visibility"] = event_data.visibility.value
    return await catalog.create_event(db, event_data.title, event_data.start_at, event_data.end_at, **fields)


@app.post("/events/{event_id}/ticket-types", response_model=TicketTypeResponse, status_code=201)
async def create_ticket_type(event_id: uuid.UUID, ticket_type_data: TicketTypeCreate, db: AsyncSession = Depends(get_db)):
    return await catalog.add_ticket_type(
        db,
        event_id,
        name=ticket_type_data.name,
        kind=ticket_type_data.kind.value,
        capacity=ticket_type_data.capacity,
        price_cents=ticket_type_data.price_cents,
    )


@app.post("/events/{event_id}/seats", response_model=List[SeatResponse], status_code=201)
async def create_seats(event_id: uuid.UUID, seats_data: SeatsCreate, db: AsyncSession = Depends(get_db)):
    return await catalog.add_seats(db, event_id, seats_data.labels)


@app.get("/events/nearby", response_model=NearbyEventsResponse)
async def find_nearby_events(
    latitude: float,
    longitude: float,
    radius: float = Query(default=DEFAULT_SEARCH_RADIUS_KM, description="Radius in kilometers"),
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    category_id: Optional[uuid.UUID] = None,
    status: EventStatus = EventStatus.LIVE,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db)
):
    """Public live events within ``radius`` km, nearest first. No matches is an empty page."""
    filters = SearchFilters(
        category_id=category_id,
        status=status.value,
        start_date=start_date,
        end_date=end_date,
    )
    return await geo_search.find_events_within_radius(
        db, GeoPoint(latitude, longitude), radius, page=page, limit=limit, filters=filters
    )


@app.post("/events/{event_id}/holds", response_model=HoldResponse, status_code=201)
async def create_hold(
    event_id: uuid.UUID,
    hold_request: HoldRequest,
    holder_id: str = Depends(current_user),
    db: AsyncSession = Depends(get_db)
):
    """Reserve ticket-type or seat inventory until the hold expires"""
    spec = HoldSpec(
        ticket_type_id=hold_request.ticket_type_id,
        seat_id=hold_request.seat_id,
        quantity=hold_request.quantity,
        expires_at=hold_request.expires_at,
        reason=hold_request.reason.value,
    )
    return await inventory.create_hold(db, event_id, holder_id, spec)


@app.get("/events/{event_id}/holds", response_model=List[HoldResponse])
async def list_holds(event_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await inventory.list_active_holds(db, event_id)


@app.delete("/holds/{hold_id}", status_code=204)
async def release_hold(hold_id: uuid.UUID, holder_id: str = Depends(current_user), db: AsyncSession = Depends(get_db)):
    await inventory.release_hold(db, hold_id, holder_id)
    return Response(status_code=204)


@app.get("/events/{event_id}/inventory", response_model=InventorySummaryResponse)
async def get_inventory(
    event_id: uuid.UUID,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: AsyncSession = Depends(get_db)
):
    """Per ticket type capacity, sold, held and available counts"""
    return await inventory.get_inventory_summary(db, event_id, viewer_id=x_user_id)


@app.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(order_request: OrderRequest, holder_id: str = Depends(current_user), db: AsyncSession = Depends(get_db)):
    """Finalize a paid order against a hold; the hold is consumed"""
    return await orders.finalize_order(db, order_request.hold_id, holder_id)


@app.get("/metrics", response_model=MetricsResponse)
async def get_metrics(db: AsyncSession = Depends(get_db)):
    """Get system-wide metrics including totals, active holds, orders, and expiries"""
    return await inventory.collect_metrics(db)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": utcnow()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
