"""
Geo utilities: great-circle distance, bearing and H3 area prefilters.

Road distances come from a routing provider (``src.infrastructure.routing``);
everything here is the local great-circle fallback and the geometry the
geofence, path capture and pricing code share.

Complexity: O(1) per call, except ``path_length_km`` which is O(n).
"""

from __future__ import annotations

import math
from typing import Iterable

import h3

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    # rounding can push ``a`` a hair outside [0, 1]
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, max(0.0, a))))


def haversine_m(a, b) -> float:
    """Distance in metres between two objects exposing ``lat`` / ``lng``."""
    return haversine_km(a.lat, a.lng, b.lat, b.lng) * 1000.0


def bearing_deg(a, b) -> float:
    """Initial bearing from *a* to *b* in degrees, normalised to [0, 360)."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dlng = math.radians(b.lng - a.lng)

    y = math.sin(dlng) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(
        phi2
    ) * math.cos(dlng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def path_length_km(points: Iterable) -> float:
    """Sum of great-circle segments over an ordered sequence of points."""
    total = 0.0
    prev = None
    for point in points:
        if prev is not None:
            total += haversine_km(prev.lat, prev.lng, point.lat, point.lng)
        prev = point
    return total


# ── H3 prefilter ─────────────────────────────────────────────────────


def point_h3_cell(lat: float, lng: float, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


def cells_within_radius(
    lat: float, lng: float, radius_km: float, resolution: int = 7
) -> set[str]:
    """
    H3 cells that together cover a disc of *radius_km* around a point.

    Over-covers; callers still apply the exact haversine check.  Each ring
    is counted as one edge length outward, which still covers the disc on
    distorted cells far from an icosahedron face centre.
    Complexity: O(k²) cells where k = radius / edge length.
    """
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    k = math.ceil(radius_km / edge_km) + 1
    return set(h3.grid_disk(point_h3_cell(lat, lng, resolution), k))
