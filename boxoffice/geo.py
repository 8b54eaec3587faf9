"""Great-circle math and coordinate value types used by nearby search."""

import math
from dataclasses import dataclass

from .errors import InvalidInputError

EARTH_RADIUS_KM = 6371.0
# 1 degree of latitude ~= 111.32 km
KM_PER_DEGREE_LATITUDE = 111.32


@dataclass(frozen=True)
class GeoPoint:
    """Validated latitude/longitude pair."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        for name, value, bound in (("latitude", self.latitude, 90), ("longitude", self.longitude, 180)):
            if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInputError(f"{name} must be a number")
            if math.isnan(value) or not -bound <= value <= bound:
                raise InvalidInputError(f"{name} must be between -{bound} and {bound}")

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.min_lat <= latitude <= self.max_lat and self.min_lon <= longitude <= self.max_lon

    @property
    def wraps(self) -> bool:
        """True when the box runs over a pole or the antimeridian."""
        return self.min_lat < -90 or self.max_lat > 90 or self.min_lon < -180 or self.max_lon > 180


def great_circle_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Unrounded great-circle distance in kilometers on a sphere of EARTH_RADIUS_KM."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers, rounded to 2 decimals for display."""
    return round(great_circle_km(lat1, lon1, lat2, lon2), 2)


def get_bounding_box(center: GeoPoint, radius_km: float) -> BoundingBox:
    """Cheap rectangular pre-filter around ``center``.

    Approximate: the longitude delta is corrected by cos(latitude) only, so
    callers must not treat it as the final radius filter.
    """
    lat_delta = radius_km / KM_PER_DEGREE_LATITUDE
    cos_lat = math.cos(math.radians(center.latitude))
    if cos_lat <= 1e-12:
        lon_delta = 360.0
    else:
        lon_delta = radius_km / (KM_PER_DEGREE_LATITUDE * cos_lat)

    return BoundingBox(
        min_lat=center.latitude - lat_delta,
        max_lat=center.latitude + lat_delta,
        min_lon=center.longitude - lon_delta,
        max_lon=center.longitude + lon_delta,
    )


def resolve_coordinates(event_lat, event_lon, venue_lat=None, venue_lon=None):
    """Pick the coordinate used for distance: the event's own when both parts
    are set, else the venue's. Returns None when neither is complete."""
    if event_lat is not None and event_lon is not None:
        return float(event_lat), float(event_lon)
    if venue_lat is not None and venue_lon is not None:
        return float(venue_lat), float(venue_lon)
    return None
