import math
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import List, Sequence, Union

import gpxpy
from gpxpy.gpx import GPX, GPXException

from . import config
from .errors import ValidationError
from .models import ForecastSettings, RawPoint, Route, RoutePoint

EARTH_RADIUS_KM = 6371.0088
# Final point is not duplicated when the route length lands on an interval mark.
DISTANCE_EPS_KM = 1e-9


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute haversine distance between two lat/lon points in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def route_from_gpx(source: Union[str, Path], name: str = '') -> Route:
    """Parse a GPX file path or GPX text into a Route (tracks first, then routes)."""
    try:
        if isinstance(source, Path) or (isinstance(source, str) and not source.lstrip().startswith('<')):
            with open(source, 'r', encoding='utf-8') as f:
                gpx: GPX = gpxpy.parse(f)
        else:
            gpx = gpxpy.parse(source)
    except GPXException as e:
        raise ValidationError(f"Invalid GPX: {e}") from e

    coords = []
    for track in gpx.tracks:
        for seg in track.segments:
            for p in seg.points:
                coords.append((p.latitude, p.longitude, p.elevation))

    for route in gpx.routes:
        for p in route.points:
            coords.append((p.latitude, p.longitude, p.elevation))

    if len(coords) < 2:
        raise ValidationError("GPX must contain at least two points")
    track_name = name or gpx.name or next((t.name for t in gpx.tracks if t.name), None) or ''
    return Route.from_coords(track_name, coords)


def _validate_interval(interval_km: float) -> float:
    try:
        step = float(interval_km)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid interval: {interval_km!r}") from e
    if not (config.MIN_INTERVAL_KM <= step <= config.MAX_INTERVAL_KM):
        raise ValidationError(
            f"interval_km must be within [{config.MIN_INTERVAL_KM}, {config.MAX_INTERVAL_KM}], got {step}")
    return step


def _with_distances(points: Sequence[RawPoint]) -> List[RawPoint]:
    if all(p.distance_km is not None for p in points):
        return list(points)
    return list(Route.from_coords('', [(p.lat, p.lon, p.elevation) for p in points]).points)


def _lerp(a, b, t):
    if a is None or b is None:
        return a if t < 0.5 else b
    return a + (b - a) * t


def sample_route(route: Union[Route, Sequence[RawPoint]], interval_km: float) -> List[RoutePoint]:
    """
    Sample points every `interval_km` along cumulative distance.
    - always includes distance 0 and the final point
    - lat/lon/elevation interpolated linearly between the bracketing original points
    """
    step = _validate_interval(interval_km)
    raw = route.points if isinstance(route, Route) else route
    if len(raw) < 2:
        raise ValidationError("Route must contain at least two points")
    coords = _with_distances(raw)
    total = float(coords[-1].distance_km)

    sampled: List[RoutePoint] = []
    j = 0
    k = 0
    while True:
        mark = k * step
        if mark >= total - DISTANCE_EPS_KM and k > 0:
            break
        # advance to the segment containing mark
        while j < len(coords) - 2 and coords[j + 1].distance_km < mark:
            j += 1
        p1, p2 = coords[j], coords[j + 1]
        seg_km = p2.distance_km - p1.distance_km
        t = 0.0 if seg_km <= 0 else max(0.0, min(1.0, (mark - p1.distance_km) / seg_km))
        sampled.append(RoutePoint(
            lat=p1.lat + (p2.lat - p1.lat) * t,
            lon=p1.lon + (p2.lon - p1.lon) * t,
            distance_km=mark,
            elevation=_lerp(p1.elevation, p2.elevation, t),
        ))
        k += 1
        if total <= DISTANCE_EPS_KM:
            break

    last = coords[-1]
    if total > DISTANCE_EPS_KM:
        sampled.append(RoutePoint(lat=last.lat, lon=last.lon, distance_km=total, elevation=last.elevation))
    return sampled


def attach_estimated_times(points: Sequence[RoutePoint], settings: ForecastSettings) -> List[RoutePoint]:
    speed = float(settings.average_speed_kmh)
    zone = settings.zone()
    return [
        replace(p, estimated_time=(settings.start_time + timedelta(hours=p.distance_km / speed)).astimezone(zone))
        for p in points
    ]


def estimate_sample_count(route: Route, interval_km: float) -> int:
    step = _validate_interval(interval_km)
    total = float(route.total_distance_km)
    return int(math.ceil(total / step - DISTANCE_EPS_KM)) + 1
