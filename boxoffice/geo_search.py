"""Nearby event discovery.

Two strategies answer "public live events within R km of a point":

* ``PostGISStrategy`` issues one indexed ``ST_DWithin`` query against the
  geography columns, ordered by distance, paginated with LIMIT/OFFSET.
* ``HaversineStrategy`` loads every candidate event and filters in process.
  It reads the whole candidate set on each call, which is only acceptable for
  small catalogues; deployments with many events should install PostGIS.

Both decide membership on the exact spherical distance; the ``distance``
reported per event is rounded to 2 decimals.

Which one runs is decided once per process by ``GeoSearchService``.
"""

import asyncio
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from .config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MAX_SEARCH_RADIUS_KM, SPATIAL_BACKEND
from .db import Event, EventStatus, Venue, Visibility, as_utc, utcnow
from .errors import InvalidInputError, UpstreamFailureError
from .geo import GeoPoint, get_bounding_box, great_circle_km, resolve_coordinates
from .logging_config import get_logger

logger = get_logger(__name__)

# Pre-filter box is padded so it never drops a point inside the radius.
BOX_PADDING_FACTOR = 1.1
BOX_PADDING_KM = 0.01
# Past this half-width the cos(latitude) correction is too loose to trust.
MAX_BOX_LON_DELTA = 30.0


@dataclass(frozen=True)
class SearchFilters:
    category_id: Optional[uuid.UUID] = None
    status: str = EventStatus.LIVE.value
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class SearchPage:
    events: list = field(default_factory=list)
    total: int = 0


def _event_projection(event: Event, latitude: float, longitude: float, distance: float) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "start_at": as_utc(event.start_at),
        "end_at": as_utc(event.end_at),
        "status": event.status,
        "visibility": event.visibility,
        "category_id": event.category_id,
        "org_id": event.org_id,
        "venue_id": event.venue_id,
        "latitude": latitude,
        "longitude": longitude,
        "distance": distance,
    }


class SpatialStrategy(ABC):
    """Interface for radius search backends."""

    name = "abstract"

    @abstractmethod
    async def find_within_radius(
        self,
        db: AsyncSession,
        point: GeoPoint,
        radius_km: float,
        page: int,
        limit: int,
        filters: SearchFilters,
        now: datetime,
    ) -> SearchPage:
        """Return one page of matching events sorted by ascending distance, plus the total."""
        ...


class HaversineStrategy(SpatialStrategy):
    name = "haversine"

    def _candidate_query(self, filters: SearchFilters, now: datetime):
        conditions = [
            Event.visibility == Visibility.PUBLIC.value,
            Event.deleted_at.is_(None),
            Event.end_at >= now,
            Event.status == filters.status,
            or_(
                and_(Event.latitude.isnot(None), Event.longitude.isnot(None)),
                and_(Venue.latitude.isnot(None), Venue.longitude.isnot(None)),
            ),
        ]
        if filters.category_id:
            conditions.append(Event.category_id == filters.category_id)
        if filters.start_date:
            conditions.append(Event.start_at >= as_utc(filters.start_date))
        if filters.end_date:
            conditions.append(Event.end_at <= as_utc(filters.end_date))

        return (
            select(Event)
            .outerjoin(Venue, Event.venue_id == Venue.id)
            .options(contains_eager(Event.venue))
            .where(and_(*conditions))
            .order_by(Event.created_at, Event.id)
        )

    async def find_within_radius(self, db, point, radius_km, page, limit, filters, now):
        result = await db.execute(self._candidate_query(filters, now))
        candidates = result.scalars().all()

        box = get_bounding_box(point, radius_km * BOX_PADDING_FACTOR + BOX_PADDING_KM)
        use_box = not box.wraps and (box.max_lon - box.min_lon) / 2 <= MAX_BOX_LON_DELTA

        matches = []
        for event in candidates:
            venue = event.venue
            coords = resolve_coordinates(
                event.latitude,
                event.longitude,
                venue.latitude if venue else None,
                venue.longitude if venue else None,
            )
            if coords is None:
                continue
            if use_box and not box.contains(*coords):
                continue

            # filter on the exact distance, as ST_DWithin does; only the reported value is rounded
            exact = great_circle_km(point.latitude, point.longitude, coords[0], coords[1])
            if exact <= radius_km:
                matches.append((exact, _event_projection(event, coords[0], coords[1], round(exact, 2))))

        # sort is stable, so equal distances keep enumeration order
        matches.sort(key=lambda match: match[0])

        offset = (page - 1) * limit
        return SearchPage(events=[e for _, e in matches[offset:offset + limit]], total=len(matches))


class PostGISStrategy(SpatialStrategy):
    name = "postgis"

    # geography column of the event if it has one, else the venue's
    LOCATION = "COALESCE(e.location, v.location)"
    ORIGIN = "ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography"

    def _where(self, filters: SearchFilters, now: datetime):
        clauses = [
            "e.visibility = :visibility",
            "e.deleted_at IS NULL",
            "e.end_at >= :now",
            "e.status = :status",
            f"{self.LOCATION} IS NOT NULL",
            f"ST_DWithin({self.LOCATION}, {self.ORIGIN}, :radius_m, false)",
        ]
        params = {"visibility": Visibility.PUBLIC.value, "now": now, "status": filters.status}

        if filters.category_id:
            clauses.append("e.category_id = :category_id")
            params["category_id"] = filters.category_id
        if filters.start_date:
            clauses.append("e.start_at >= :start_date")
            params["start_date"] = as_utc(filters.start_date)
        if filters.end_date:
            clauses.append("e.end_at <= :end_date")
            params["end_date"] = as_utc(filters.end_date)

        return " AND ".join(clauses), params

    async def find_within_radius(self, db, point, radius_km, page, limit, filters, now):
        where, params = self._where(filters, now)
        params.update(
            lat=point.latitude,
            lon=point.longitude,
            # ST_DWithin on geography takes meters
            radius_m=radius_km * 1000,
        )

        count_result = await db.execute(
            text(f"SELECT COUNT(*) FROM events e LEFT JOIN venues v ON e.venue_id = v.id WHERE {where}"),
            params,
        )
        total = int(count_result.scalar() or 0)

        rows = await db.execute(
            text(
                f"""
                SELECT
                    e.id, e.title, e.description, e.start_at, e.end_at, e.status, e.visibility,
                    e.category_id, e.org_id, e.venue_id,
                    CASE WHEN e.location IS NOT NULL THEN e.latitude ELSE v.latitude END AS latitude,
                    CASE WHEN e.location IS NOT NULL THEN e.longitude ELSE v.longitude END AS longitude,
                    ROUND((ST_Distance({self.LOCATION}, {self.ORIGIN}, false) / 1000)::numeric, 2) AS distance
                FROM events e
                LEFT JOIN venues v ON e.venue_id = v.id
                WHERE {where}
                ORDER BY distance ASC, e.id ASC
                LIMIT :limit OFFSET :offset
                """
            ),
            {**params, "limit": limit, "offset": (page - 1) * limit},
        )

        events = []
        for row in rows.mappings():
            event = dict(row)
            event["distance"] = float(event["distance"])
            event["start_at"] = as_utc(event["start_at"])
            event["end_at"] = as_utc(event["end_at"])
            events.append(event)

        return SearchPage(events=events, total=total)


class SpatialCapability:
    """Whether the store has PostGIS. Probed once, then cached for the process."""

    def __init__(self) -> None:
        self._available: Optional[bool] = None
        self._lock = asyncio.Lock()

    async def is_available(self, db: AsyncSession) -> bool:
        if self._available is not None:
            return self._available

        async with self._lock:
            if self._available is None:
                self._available = await self._probe(db)
        return self._available

    async def _probe(self, db: AsyncSession) -> bool:
        try:
            result = await db.execute(
                text("SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'postgis')")
            )
            available = bool(result.scalar())
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(
                "Failed to check PostGIS status",
                event_type="spatial_capability_error",
                error=str(e),
            )
            available = False

        logger.info("Spatial capability probed", event_type="spatial_capability", postgis_enabled=available)
        return available


class GeoSearchService:
    """Distance-ranked, paginated search over public live events."""

    def __init__(self, backend: str = SPATIAL_BACKEND, capability: Optional[SpatialCapability] = None) -> None:
        if backend not in ("auto", "postgis", "haversine"):
            raise ValueError(f"Unknown spatial backend: {backend}")
        self.backend = backend
        self.capability = capability or SpatialCapability()
        self._strategy: Optional[SpatialStrategy] = None

    async def get_strategy(self, db: AsyncSession) -> SpatialStrategy:
        if self._strategy is not None:
            return self._strategy

        if self.backend == "postgis":
            strategy = PostGISStrategy()
        elif self.backend == "haversine":
            strategy = HaversineStrategy()
        elif await self.capability.is_available(db):
            strategy = PostGISStrategy()
        else:
            strategy = HaversineStrategy()

        logger.info("Spatial strategy selected", event_type="spatial_strategy", strategy=strategy.name)
        self._strategy = strategy
        return strategy

    async def is_spatial_index_available(self, db: AsyncSession) -> bool:
        return isinstance(await self.get_strategy(db), PostGISStrategy)

    async def find_events_within_radius(
        self,
        db: AsyncSession,
        point: GeoPoint,
        radius_km: float,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        filters: Optional[SearchFilters] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Return ``{"data", "meta", "search_location"}`` for events within ``radius_km`` of ``point``.

        An empty ``data`` list is a normal outcome. Store failures surface as
        ``UpstreamFailureError``; the query is read-only, so callers may retry.
        """
        if not isinstance(point, GeoPoint):
            raise InvalidInputError("A search point is required")
        if isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)) or math.isnan(radius_km):
            raise InvalidInputError("radius must be a number")
        if radius_km <= 0 or radius_km > MAX_SEARCH_RADIUS_KM:
            raise InvalidInputError(f"radius must be greater than 0 and at most {MAX_SEARCH_RADIUS_KM:g} km")
        if not isinstance(page, int) or page < 1:
            raise InvalidInputError("page must be at least 1")
        if not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        filters = filters or SearchFilters()
        now = as_utc(now) or utcnow()
        strategy = await self.get_strategy(db)

        try:
            result = await strategy.find_within_radius(db, point, float(radius_km), page, limit, filters, now)
        except SQLAlchemyError as e:
            logger.error(
                "Nearby events query failed",
                event_type="geo_search_error",
                strategy=strategy.name,
                error=str(e),
            )
            raise UpstreamFailureError() from e

        logger.info(
            "Nearby events fetched",
            event_type="geo_search_success",
            strategy=strategy.name,
            radius_km=radius_km,
            page=page,
            total=result.total,
        )

        return {
            "data": result.events,
            "meta": {
                "total": result.total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(result.total / limit),
            },
            "search_location": point.to_dict(),
        }

    async def ensure_spatial_schema(self, db: AsyncSession) -> None:
        """Add geography columns and GiST indexes, then backfill them from lat/lon."""
        if not await self.is_spatial_index_available(db):
            return

        for table in ("events", "venues"):
            await db.execute(text(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS location geography(Point, 4326)"))
            await db.execute(text(f"CREATE INDEX IF NOT EXISTS ix_{table}_location ON {table} USING GIST (location)"))
            await db.execute(text(self._sync_sql(table, "location IS NULL")))
        await db.commit()
        logger.info("Spatial schema ready", event_type="spatial_schema_ready")

    @staticmethod
    def _sync_sql(table: str, where: str) -> str:
        return f"""
            UPDATE {table}
            SET location = CASE
                WHEN latitude IS NOT NULL AND longitude IS NOT NULL
                THEN ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography
                ELSE NULL
            END
            WHERE {where}
        """

    async def sync_event_geometry(self, db: AsyncSession, event_id) -> None:
        """Refresh the event's geography column from its lat/lon. Caller commits."""
        if not await self.is_spatial_index_available(db):
            return
        await db.execute(text(self._sync_sql("events", "id = :id")), {"id": event_id})

    async def sync_venue_geometry(self, db: AsyncSession, venue_id) -> None:
        if not await self.is_spatial_index_available(db):
            return
        await db.execute(text(self._sync_sql("venues", "id = :id")), {"id": venue_id})
