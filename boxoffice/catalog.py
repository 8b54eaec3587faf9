"""Minimal write surface for venues, events, ticket types and seats."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import Event, Seat, TicketType, Venue, as_utc
from .errors import EventNotFoundError, InvalidInputError, VenueNotFoundError
from .geo import GeoPoint
from .geo_search import GeoSearchService
from .logging_config import generate_request_id, get_logger

logger = get_logger(__name__)


def _check_coordinates(latitude, longitude):
    if latitude is None and longitude is None:
        return
    if latitude is None or longitude is None:
        raise InvalidInputError("latitude and longitude must be given together")
    GeoPoint(latitude, longitude)


class CatalogService:
    def __init__(self, geo_search: GeoSearchService) -> None:
        self.geo_search = geo_search

    async def _commit(self, db, request_id, what):
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.error(
                f"Failed to create {what}",
                event_type=f"{what}_create_error",
                request_id=request_id,
                error=str(e),
            )
            raise InvalidInputError(f"Failed to create {what}") from e

    async def create_venue(self, db, name, city=None, country=None, latitude=None, longitude=None) -> Venue:
        request_id = generate_request_id()
        _check_coordinates(latitude, longitude)
        # resolve the spatial strategy before any write opens a transaction
        await self.geo_search.get_strategy(db)

        venue = Venue(name=name, city=city, country=country, latitude=latitude, longitude=longitude)
        db.add(venue)
        await db.flush()
        await self.geo_search.sync_venue_geometry(db, venue.id)
        await self._commit(db, request_id, "venue")

        logger.info("Venue created successfully", event_type="venue_create_success", request_id=request_id, venue_id=str(venue.id))
        return venue

    async def create_event(self, db, title, start_at, end_at, **fields) -> Event:
        request_id = generate_request_id()
        start_at, end_at = as_utc(start_at), as_utc(end_at)
        if end_at < start_at:
            raise InvalidInputError("end_at must not be before start_at")
        _check_coordinates(fields.get("latitude"), fields.get("longitude"))
        await self.geo_search.get_strategy(db)

        venue_id = fields.get("venue_id")
        if venue_id is not None:
            venue_result = await db.execute(select(Venue.id).where(Venue.id == venue_id))
            if venue_result.scalar_one_or_none() is None:
                raise VenueNotFoundError(venue_id)

        event = Event(title=title, start_at=start_at, end_at=end_at, **fields)
        db.add(event)
        await db.flush()
        await self.geo_search.sync_event_geometry(db, event.id)
        await self._commit(db, request_id, "event")

        logger.info(
            "Event created successfully",
            event_type="event_create_success",
            request_id=request_id,
            event_id=str(event.id),
            event_title=title,
        )
        return event

    async def _require_event(self, db, event_id):
        result = await db.execute(select(Event.id).where(Event.id == event_id, Event.deleted_at.is_(None)))
        if result.scalar_one_or_none() is None:
            raise EventNotFoundError(event_id)

    async def add_ticket_type(self, db, event_id, name, kind, capacity=None, price_cents=0) -> TicketType:
        request_id = generate_request_id()
        await self._require_event(db, event_id)

        ticket_type = TicketType(event_id=event_id, name=name, kind=kind, capacity=capacity, price_cents=price_cents)
        db.add(ticket_type)
        await self._commit(db, request_id, "ticket_type")

        logger.info(
            "Ticket type created successfully",
            event_type="ticket_type_create_success",
            request_id=request_id,
            event_id=str(event_id),
            ticket_type_id=str(ticket_type.id),
            capacity=capacity,
        )
        return ticket_type

    async def add_seats(self, db, event_id, labels) -> list:
        request_id = generate_request_id()
        if len(set(labels)) != len(labels):
            raise InvalidInputError("Seat labels must be unique")
        await self._require_event(db, event_id)

        seats = [Seat(event_id=event_id, label=label) for label in labels]
        db.add_all(seats)
        await self._commit(db, request_id, "seat")

        logger.info("Seats created successfully", event_type="seat_create_success", request_id=request_id, count=len(seats))
        return seats
