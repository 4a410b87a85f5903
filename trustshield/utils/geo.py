"""
Geographic helpers: great-circle distance and coarse geocells.
"""

import math
from typing import Optional, Set, Tuple

EARTH_RADIUS_METERS = 6_371_000.0

# Geocell edge in degrees (~55 km of latitude). Must be at least the largest
# radius queried through the index, so neighbor cells cover the search area.
GEOCELL_DEGREES = 0.5


def is_valid_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    if latitude is None or longitude is None:
        return False
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_meters(lat1, lon1, lat2, lon2) / 1000.0


def lon_cell_count(cell_degrees: float = GEOCELL_DEGREES) -> int:
    return int(math.ceil(360.0 / cell_degrees))


def geocell(latitude: float, longitude: float, cell_degrees: float = GEOCELL_DEGREES) -> Tuple[int, int]:
    """(lat cell, lon cell). Longitude cells wrap, so +180 and -180 share a cell."""
    return (
        int(math.floor((latitude + 90.0) / cell_degrees)),
        int(math.floor((longitude + 180.0) / cell_degrees)) % lon_cell_count(cell_degrees),
    )


def wrapped_lon_cells(lon_cell: int, lon_span: int, cell_degrees: float = GEOCELL_DEGREES) -> Set[int]:
    """Longitude cells within lon_span of lon_cell, wrapping across the antimeridian."""
    total = lon_cell_count(cell_degrees)
    return {(lon_cell + d) % total for d in range(-lon_span, lon_span + 1)}


def neighbor_span(latitude: float, radius_km: float, cell_degrees: float = GEOCELL_DEGREES) -> Tuple[int, int]:
    """
    How many cells either side must be scanned to cover radius_km.

    Longitude cells shrink toward the poles, so the longitude span grows with
    1 / cos(latitude).
    """
    km_per_degree = math.pi * EARTH_RADIUS_METERS / 180_000.0
    lat_span = max(1, math.ceil(radius_km / (km_per_degree * cell_degrees)))
    cos_lat = max(math.cos(math.radians(latitude)), 1e-6)
    lon_cells_total = lon_cell_count(cell_degrees)
    lon_span = min(lon_cells_total, max(1, math.ceil(radius_km / (km_per_degree * cell_degrees * cos_lat))))
    return lat_span, lon_span
