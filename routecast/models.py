"""Data model for the forecast pipeline.

Value objects are frozen dataclasses. Anything stored in the forecast cache has
`to_dict()` / `from_dict()` so it survives a JSON round-trip through any backend.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import config
from .errors import ValidationError


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def parse_datetime(raw: Any) -> Optional[datetime]:
    """Accept datetime or ISO-8601 text (trailing 'Z' allowed); naive values are UTC."""
    if raw is None or raw == '':
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        s = str(raw).strip()
        if s.endswith('Z'):
            s = s[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValidationError(f"Invalid datetime: {raw!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _opt_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    return float(v)


def _finite_or_none(v: Optional[float]) -> Optional[float]:
    """JSON has no NaN; unknown readings are written as null."""
    return None if v is None or math.isnan(v) else v


def _float_or_nan(v: Any) -> float:
    return math.nan if v is None else float(v)


# -------------------- Route --------------------
@dataclass(frozen=True)
class RawPoint:
    lat: float
    lon: float
    elevation: Optional[float] = None
    distance_km: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'lat': self.lat, 'lon': self.lon, 'elevation': self.elevation, 'distance_km': self.distance_km}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'RawPoint':
        dist = d.get('distance_km', d.get('distance'))
        return cls(
            lat=float(d['lat']),
            lon=float(d['lon']),
            elevation=_opt_float(d.get('elevation', d.get('ele'))),
            distance_km=_opt_float(dist),
        )


@dataclass(frozen=True)
class Route:
    name: str
    points: Tuple[RawPoint, ...]
    total_distance_km: float

    @classmethod
    def from_coords(cls, name: str, coords: Iterable[Sequence[float]]) -> 'Route':
        """Build a route from (lat, lon[, elevation]) tuples, computing cumulative distance."""
        from .route_sampling import haversine_km

        pts: List[RawPoint] = []
        acc = 0.0
        prev = None
        for c in coords:
            lat, lon = float(c[0]), float(c[1])
            ele = float(c[2]) if len(c) > 2 and c[2] is not None else None
            if prev is not None:
                acc += haversine_km(prev[0], prev[1], lat, lon)
            pts.append(RawPoint(lat=lat, lon=lon, elevation=ele, distance_km=acc))
            prev = (lat, lon)
        return cls(name=name, points=tuple(pts), total_distance_km=acc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'points': [p.to_dict() for p in self.points],
            'total_distance_km': self.total_distance_km,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'Route':
        try:
            raw_points = list(d.get('points') or [])
            pts = [RawPoint.from_dict(p) for p in raw_points]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid route points: {e}") from e
        if any(p.distance_km is None for p in pts):
            return cls.from_coords(str(d.get('name') or ''), [(p.lat, p.lon, p.elevation) for p in pts])
        total = d.get('total_distance_km', d.get('totalDistance'))
        total_km = float(total) if total is not None else (pts[-1].distance_km if pts else 0.0)
        return cls(name=str(d.get('name') or ''), points=tuple(pts), total_distance_km=float(total_km))


@dataclass(frozen=True)
class RoutePoint:
    lat: float
    lon: float
    distance_km: float
    elevation: Optional[float] = None
    estimated_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lon': self.lon,
            'distance_km': self.distance_km,
            'elevation': self.elevation,
            'estimated_time': _iso(self.estimated_time),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'RoutePoint':
        return cls(
            lat=float(d['lat']),
            lon=float(d['lon']),
            distance_km=float(d['distance_km']),
            elevation=_opt_float(d.get('elevation')),
            estimated_time=parse_datetime(d.get('estimated_time')),
        )


# -------------------- Settings --------------------
def _default_start_time() -> datetime:
    return datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class ForecastSettings:
    start_time: datetime
    average_speed_kmh: float = 15.0
    interval_km: float = 5.0
    units: str = 'metric'
    timezone: str = 'UTC'

    def __post_init__(self):
        if not (config.MIN_SPEED_KMH <= self.average_speed_kmh <= config.MAX_SPEED_KMH):
            raise ValidationError(
                f"average_speed_kmh must be within [{config.MIN_SPEED_KMH}, {config.MAX_SPEED_KMH}]")
        if not (config.MIN_INTERVAL_KM <= self.interval_km <= config.MAX_INTERVAL_KM):
            raise ValidationError(
                f"interval_km must be within [{config.MIN_INTERVAL_KM}, {config.MAX_INTERVAL_KM}]")
        if self.units not in config.UNITS:
            raise ValidationError(f"units must be one of {config.UNITS}")
        self.zone()

    def zone(self) -> tzinfo:
        """IANA zone that estimated arrival times are expressed in."""
        if self.timezone.upper() in ('UTC', 'Z'):
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError(f"Unknown timezone: {self.timezone!r}") from e

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]] = None) -> 'ForecastSettings':
        """Explicit field-by-field construction against `config.SETTINGS_DEFAULTS`.

        Accepts snake_case keys and the camelCase names used by the web client.
        """
        raw = raw or {}
        d = config.SETTINGS_DEFAULTS

        def pick(*names: str) -> Any:
            for n in names:
                if n in raw and raw[n] is not None:
                    return raw[n]
            return d[names[0]]

        try:
            start = parse_datetime(pick('start_time', 'startTime')) or _default_start_time()
            speed = float(pick('average_speed_kmh', 'averageSpeed'))
            interval = float(pick('interval_km', 'forecastInterval', 'intervalKm'))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid settings: {e}") from e
        return cls(
            start_time=start,
            average_speed_kmh=speed,
            interval_km=interval,
            units=str(pick('units')),
            timezone=str(pick('timezone')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': _iso(self.start_time),
            'average_speed_kmh': self.average_speed_kmh,
            'interval_km': self.interval_km,
            'units': self.units,
            'timezone': self.timezone,
        }


@dataclass(frozen=True)
class SourcePreferences:
    """Which providers to ask. `single` uses only `primary`; `consensus` asks all `enabled`."""
    mode: str = 'single'
    primary: str = 'open-meteo'
    enabled: Tuple[str, ...] = ('open-meteo',)

    def __post_init__(self):
        if self.mode not in ('single', 'consensus'):
            raise ValidationError("mode must be 'single' or 'consensus'")

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]] = None) -> 'SourcePreferences':
        raw = raw or {}
        mode = str(raw.get('mode') or raw.get('comparisonMode') or 'single')
        if mode == 'comparison':
            mode = 'consensus'
        primary = str(raw.get('primary') or raw.get('primarySource') or 'open-meteo')
        enabled = raw.get('enabled') or raw.get('enabledSources') or [primary]
        if isinstance(enabled, str):
            enabled = [s.strip() for s in enabled.split(',') if s.strip()]
        return cls(mode=mode, primary=primary, enabled=tuple(dict.fromkeys(str(s) for s in enabled)))

    def provider_ids(self) -> Tuple[str, ...]:
        if self.mode == 'single':
            return (self.primary,)
        ids = dict.fromkeys(self.enabled)
        if self.primary not in ids:
            return (self.primary,) + tuple(ids)
        return tuple(ids)

    def to_dict(self) -> Dict[str, Any]:
        return {'mode': self.mode, 'primary': self.primary, 'enabled': list(self.enabled)}


# -------------------- Weather --------------------
@dataclass(frozen=True)
class WeatherSample:
    provider_id: str
    temp: float
    feels_like: float
    humidity: float
    pressure: float
    wind_speed: float
    wind_deg: float  # NaN when the provider reports no direction
    cloud_cover: float
    precipitation_1h: float
    condition: str
    condition_code: Optional[int]
    fetched_at: datetime
    dew_point: Optional[float] = None
    wind_gust: Optional[float] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider_id': self.provider_id,
            'temp': self.temp,
            'feels_like': self.feels_like,
            'humidity': self.humidity,
            'pressure': self.pressure,
            'wind_speed': self.wind_speed,
            'wind_deg': _finite_or_none(self.wind_deg),
            'cloud_cover': self.cloud_cover,
            'precipitation_1h': self.precipitation_1h,
            'condition': self.condition,
            'condition_code': self.condition_code,
            'fetched_at': _iso(self.fetched_at),
            'dew_point': self.dew_point,
            'wind_gust': self.wind_gust,
            'confidence': self.confidence,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'WeatherSample':
        code = d.get('condition_code')
        return cls(
            provider_id=str(d['provider_id']),
            temp=float(d['temp']),
            feels_like=float(d['feels_like']),
            humidity=float(d['humidity']),
            pressure=float(d['pressure']),
            wind_speed=float(d['wind_speed']),
            wind_deg=_float_or_nan(d.get('wind_deg')),
            cloud_cover=float(d['cloud_cover']),
            precipitation_1h=float(d['precipitation_1h']),
            condition=str(d['condition']),
            condition_code=int(code) if code is not None else None,
            fetched_at=parse_datetime(d['fetched_at']),
            dew_point=_opt_float(d.get('dew_point')),
            wind_gust=_opt_float(d.get('wind_gust')),
            confidence=_opt_float(d.get('confidence')),
        )


@dataclass(frozen=True)
class ConsensusField:
    value: float
    variance: float
    contributing_sources: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {'value': _finite_or_none(self.value), 'variance': self.variance,
                'contributing_sources': list(self.contributing_sources)}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'ConsensusField':
        return cls(value=_float_or_nan(d.get('value')), variance=float(d['variance']),
                   contributing_sources=tuple(d.get('contributing_sources') or ()))


@dataclass(frozen=True)
class ConsensusWeather:
    fields: Dict[str, ConsensusField]
    condition: str
    agreement_score: float
    field_scores: Dict[str, float] = field(default_factory=dict)
    outlier_sources: Tuple[str, ...] = ()

    def value(self, name: str) -> Optional[float]:
        f = self.fields.get(name)
        return f.value if f is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fields': {k: v.to_dict() for k, v in self.fields.items()},
            'condition': self.condition,
            'agreement_score': self.agreement_score,
            'field_scores': dict(self.field_scores),
            'outlier_sources': list(self.outlier_sources),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'ConsensusWeather':
        return cls(
            fields={k: ConsensusField.from_dict(v) for k, v in (d.get('fields') or {}).items()},
            condition=str(d['condition']),
            agreement_score=float(d['agreement_score']),
            field_scores={k: float(v) for k, v in (d.get('field_scores') or {}).items()},
            outlier_sources=tuple(d.get('outlier_sources') or ()),
        )


@dataclass(frozen=True)
class Alert:
    type: str
    severity: str
    title: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'severity': self.severity, 'title': self.title,
                'description': self.description}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'Alert':
        return cls(type=str(d['type']), severity=str(d['severity']), title=str(d['title']),
                   description=str(d['description']))


@dataclass(frozen=True)
class WeatherForecast:
    route_point: RoutePoint
    primary_sample: Optional[WeatherSample]
    all_samples: Tuple[WeatherSample, ...] = ()
    consensus: Optional[ConsensusWeather] = None
    alerts: Tuple[Alert, ...] = ()
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.primary_sample is None:
            return 'failed'
        if self.errors:
            return 'partial'
        return 'ok'

    @property
    def failed(self) -> bool:
        return self.primary_sample is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'route_point': self.route_point.to_dict(),
            'primary_sample': self.primary_sample.to_dict() if self.primary_sample else None,
            'all_samples': [s.to_dict() for s in self.all_samples],
            'consensus': self.consensus.to_dict() if self.consensus else None,
            'alerts': [a.to_dict() for a in self.alerts],
            'errors': dict(self.errors),
            'status': self.status,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'WeatherForecast':
        primary = d.get('primary_sample')
        consensus = d.get('consensus')
        return cls(
            route_point=RoutePoint.from_dict(d['route_point']),
            primary_sample=WeatherSample.from_dict(primary) if primary else None,
            all_samples=tuple(WeatherSample.from_dict(s) for s in d.get('all_samples') or ()),
            consensus=ConsensusWeather.from_dict(consensus) if consensus else None,
            alerts=tuple(Alert.from_dict(a) for a in d.get('alerts') or ()),
            errors={str(k): str(v) for k, v in (d.get('errors') or {}).items()},
        )


# -------------------- Cache / results --------------------
@dataclass
class CacheEntry:
    key: str
    forecasts: List[WeatherForecast]
    created_at: float
    expires_at: Optional[float]
    last_accessed: float
    access_count: int = 0

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'forecasts': [f.to_dict() for f in self.forecasts],
            'created_at': self.created_at,
            'expires_at': self.expires_at,
            'last_accessed': self.last_accessed,
            'access_count': self.access_count,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> 'CacheEntry':
        exp = d.get('expires_at')
        return cls(
            key=str(d['key']),
            forecasts=[WeatherForecast.from_dict(f) for f in d.get('forecasts') or ()],
            created_at=float(d['created_at']),
            expires_at=float(exp) if exp is not None else None,
            last_accessed=float(d.get('last_accessed', d['created_at'])),
            access_count=int(d.get('access_count', 0)),
        )


@dataclass(frozen=True)
class Progress:
    current: int
    total: int
    percentage: float

    @classmethod
    def of(cls, current: int, total: int) -> 'Progress':
        pct = 100.0 if total <= 0 else round(100.0 * current / total, 1)
        return cls(current=current, total=total, percentage=pct)

    def to_dict(self) -> Dict[str, Any]:
        return {'current': self.current, 'total': self.total, 'percentage': self.percentage}


@dataclass
class ForecastResult:
    forecasts: List[WeatherForecast]
    cache_hit: bool
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return not self.cancelled and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'forecasts': [f.to_dict() for f in self.forecasts],
            'cacheHit': self.cache_hit,
        }
        if self.cancelled:
            out['cancelled'] = True
        if self.error:
            out['error'] = self.error
        return out

