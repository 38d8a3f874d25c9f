"""Great-circle helpers shared by clustering, merging and place lookup."""

import math

EARTH_RADIUS_M = 6_371_000  # Earth radius in metres
METERS_PER_DEGREE_LAT = 111_320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def path_length_m(coords: list[tuple[float, float]]) -> float:
    """Sum of consecutive great-circle distances along (lat, lon) pairs."""
    return sum(
        haversine_m(a[0], a[1], b[0], b[1])
        for a, b in zip(coords, coords[1:])
    )


def bounding_box(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing a circle, for index-friendly prefilters.

    Longitude is left unbounded close to the poles where a degree of
    longitude shrinks towards zero.
    """
    dlat = radius_m / METERS_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6 or radius_m / (METERS_PER_DEGREE_LAT * cos_lat) >= 180:
        return lat - dlat, lat + dlat, -180.0, 180.0
    dlon = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)
    return lat - dlat, lat + dlat, lon - dlon, lon + dlon


def interpolate(lat1: float, lon1: float, lat2: float, lon2: float, fraction: float) -> tuple[float, float]:
    """Linear interpolation between two nearby coordinates."""
    return lat1 + (lat2 - lat1) * fraction, lon1 + (lon2 - lon1) * fraction
