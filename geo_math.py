"""
Geospatial helpers used by duplicate detection.

Firestore cannot run radius queries, so we scope candidates with a cheap
lat/lng bounding box and then refine with true Haversine distances. The box is
derived from the same sphere as the distance so it always covers the circle.
"""

from dataclasses import dataclass
from math import asin, atan2, cos, degrees, isfinite, isinf, pi, radians, sin, sqrt
from typing import Callable, Iterable, List, Optional, TypeVar

EARTH_RADIUS_METERS = 6_371_000
METERS_PER_DEGREE_LAT = EARTH_RADIUS_METERS * pi / 180  # ~111_195
# pads the box so points exactly on the circle survive float rounding
BOX_SLACK = 1 + 1e-9
BOX_PAD_DEGREES = 1e-12

T = TypeVar("T")


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float

    def is_valid(self) -> bool:
        return (
            isfinite(self.lat) and isfinite(self.lng)
            and -90 <= self.lat <= 90
            and -180 <= self.lng <= 180
        )


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters between two points (Haversine)."""
    if not all(isfinite(v) for v in (a.lat, a.lng, b.lat, b.lng)):
        return float("nan")

    d_lat = radians(b.lat - a.lat)
    d_lng = radians(b.lng - a.lng)
    lat1 = radians(a.lat)
    lat2 = radians(b.lat)

    h = sin(d_lat / 2) ** 2 + sin(d_lng / 2) ** 2 * cos(lat1) * cos(lat2)
    # rounding can push h a hair past 1 for antipodal points
    h = min(h, 1.0)
    c = 2 * atan2(sqrt(h), sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def bounding_box(center: GeoPoint, radius_meters: float) -> BoundingBox:
    """
    Lat/lng box enclosing every point within ``radius_meters`` of ``center``.

    Latitude delta is ``radius / meters-per-degree``. Longitude delta is the
    widest longitude the circle reaches, which is ``radius / (m/deg * cos(lat))``
    to first order. It grows without bound as |lat| approaches 90, and once the
    circle reaches a pole the box spans every longitude (infinite delta).
    """
    if isinf(radius_meters):
        return BoundingBox(
            center.lat - radius_meters, center.lat + radius_meters,
            center.lng - radius_meters, center.lng + radius_meters,
        )

    lat_delta = radius_meters / METERS_PER_DEGREE_LAT * BOX_SLACK + BOX_PAD_DEGREES
    angular = radius_meters / EARTH_RADIUS_METERS
    cos_lat = cos(radians(center.lat))

    ratio = sin(angular) / cos_lat if cos_lat > 0 else float("inf")
    if ratio >= 1 or abs(center.lat) + lat_delta >= 90:
        lng_delta = float("inf")
    else:
        lng_delta = degrees(asin(ratio)) * BOX_SLACK + BOX_PAD_DEGREES

    return BoundingBox(
        min_lat=center.lat - lat_delta,
        max_lat=center.lat + lat_delta,
        min_lng=center.lng - lng_delta,
        max_lng=center.lng + lng_delta,
    )


def is_within_bounding_box(point: GeoPoint, box: BoundingBox) -> bool:
    return (
        box.min_lat <= point.lat <= box.max_lat
        and box.min_lng <= point.lng <= box.max_lng
    )


def filter_by_geo_radius(
    items: Iterable[T],
    center: GeoPoint,
    radius_meters: float,
    pick_coords: Callable[[T], Optional[GeoPoint]],
) -> List[T]:
    """Keep the items whose coordinates fall within ``radius_meters`` of ``center``."""
    box = bounding_box(center, radius_meters)
    kept = []
    for item in items:
        coords = pick_coords(item)
        if coords is None or not is_within_bounding_box(coords, box):
            continue
        if distance_meters(center, coords) <= radius_meters:
            kept.append(item)
    return kept
