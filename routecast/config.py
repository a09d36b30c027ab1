"""Configuration: module constants with environment overrides.

`ServiceConfig.from_env()` is read once by whoever builds the service and is
passed down explicitly; nothing else in the package reads the environment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .rate_limiter import RateLimit


# Route/settings bounds
MIN_SPEED_KMH = 1.0
MAX_SPEED_KMH = 100.0
MIN_INTERVAL_KM = 1.0
MAX_INTERVAL_KM = 50.0
UNITS = ('metric', 'imperial')

# Defaults table for ForecastSettings. `start_time=None` resolves to "now" (UTC,
# truncated to the hour so repeated requests within the hour share a cache key).
SETTINGS_DEFAULTS: Dict[str, object] = {
    'start_time': None,
    'average_speed_kmh': 15.0,
    'interval_km': 5.0,
    'units': 'metric',
    'timezone': 'UTC',
}

FORECAST_TTL_S = 30 * 60
ROUTE_TTL_S = 0  # unbounded
CACHE_SWEEP_EVERY = 100  # forecast writes between expiry sweeps; 0 disables
CHUNK_SIZE = 50
PROGRESSIVE_THRESHOLD = 100
INTER_CHUNK_DELAY_S = 0.2
PROVIDER_TIMEOUT_S = 10.0
PROVIDER_MAX_RETRIES = 2
RETRY_BACKOFF_S = 0.5
CLIENT_REQUESTS_PER_MINUTE = 30
CLIENT_REQUESTS_PER_DAY = 5000

PROVIDER_RATE_LIMITS: Dict[str, RateLimit] = {
    'open-meteo': RateLimit(per_minute=600, per_day=10000),
    'weatherapi': RateLimit(per_minute=60, per_day=1000000),
    'visual-crossing': RateLimit(per_minute=100, per_day=1000),
    'openweathermap': RateLimit(per_minute=60, per_day=1000),
}
DEFAULT_PROVIDER_RATE_LIMIT = RateLimit(per_minute=60, per_day=1000)

# Provider priority: lower index wins consensus condition ties and is the
# default primary source.
PROVIDER_PRIORITY = ('open-meteo', 'weatherapi', 'visual-crossing', 'openweathermap')


@dataclass(frozen=True)
class AlertThresholds:
    wind_high_ms: float = 10.0
    wind_extreme_ms: float = 17.0
    temp_extreme_cold_c: float = -10.0
    temp_freezing_c: float = 0.0
    temp_hot_c: float = 30.0
    temp_extreme_hot_c: float = 40.0
    precip_light_mm: float = 0.1
    precip_heavy_mm: float = 10.0
    precip_extreme_mm: float = 50.0


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return int(default)
    return int(raw)


def _env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass(frozen=True)
class ServiceConfig:
    api_keys: Dict[str, Optional[str]] = field(default_factory=dict)
    redis_url: Optional[str] = None
    cache_dir: Optional[Path] = None
    forecast_ttl_s: int = FORECAST_TTL_S
    route_ttl_s: int = ROUTE_TTL_S
    cache_sweep_every: int = CACHE_SWEEP_EVERY
    chunk_size: int = CHUNK_SIZE
    progressive_threshold: int = PROGRESSIVE_THRESHOLD
    inter_chunk_delay_s: float = INTER_CHUNK_DELAY_S
    provider_timeout_s: float = PROVIDER_TIMEOUT_S
    provider_max_retries: int = PROVIDER_MAX_RETRIES
    retry_backoff_s: float = RETRY_BACKOFF_S
    client_requests_per_minute: int = CLIENT_REQUESTS_PER_MINUTE
    client_requests_per_day: int = CLIENT_REQUESTS_PER_DAY
    provider_rate_limits: Dict[str, RateLimit] = field(default_factory=lambda: dict(PROVIDER_RATE_LIMITS))
    provider_priority: tuple = PROVIDER_PRIORITY
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    def api_key(self, provider_id: str) -> Optional[str]:
        return self.api_keys.get(provider_id)

    @staticmethod
    def from_env() -> 'ServiceConfig':
        cache_dir = _env_str('ROUTECAST_CACHE_DIR')
        return ServiceConfig(
            api_keys={
                'weatherapi': _env_str('WEATHERAPI_KEY'),
                'visual-crossing': _env_str('VISUAL_CROSSING_API_KEY'),
                'openweathermap': _env_str('OPENWEATHER_API_KEY'),
            },
            redis_url=_env_str('ROUTECAST_REDIS_URL'),
            cache_dir=Path(cache_dir) if cache_dir else None,
            forecast_ttl_s=_env_int('ROUTECAST_FORECAST_TTL_S', FORECAST_TTL_S),
            route_ttl_s=_env_int('ROUTECAST_ROUTE_TTL_S', ROUTE_TTL_S),
            cache_sweep_every=_env_int('ROUTECAST_CACHE_SWEEP_EVERY', CACHE_SWEEP_EVERY),
            chunk_size=_env_int('ROUTECAST_CHUNK_SIZE', CHUNK_SIZE),
            progressive_threshold=_env_int('ROUTECAST_PROGRESSIVE_THRESHOLD', PROGRESSIVE_THRESHOLD),
            inter_chunk_delay_s=_env_float('ROUTECAST_INTER_CHUNK_DELAY_S', INTER_CHUNK_DELAY_S),
            provider_timeout_s=_env_float('ROUTECAST_PROVIDER_TIMEOUT_S', PROVIDER_TIMEOUT_S),
            provider_max_retries=_env_int('ROUTECAST_PROVIDER_MAX_RETRIES', PROVIDER_MAX_RETRIES),
            retry_backoff_s=_env_float('ROUTECAST_RETRY_BACKOFF_S', RETRY_BACKOFF_S),
            client_requests_per_minute=_env_int('ROUTECAST_CLIENT_RPM', CLIENT_REQUESTS_PER_MINUTE),
            client_requests_per_day=_env_int('ROUTECAST_CLIENT_RPD', CLIENT_REQUESTS_PER_DAY),
        )
