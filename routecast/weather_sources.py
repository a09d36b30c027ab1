"""Provider registry: provider id -> adapter class, and construction from config."""
from typing import Dict, List, Optional, Type

import requests

from .config import DEFAULT_PROVIDER_RATE_LIMIT, ServiceConfig
from .rate_limiter import RateLimiter
from .weather_openmeteo import OpenMeteoProvider
from .weather_openweathermap import OpenWeatherMapProvider
from .weather_providers import WeatherProvider
from .weather_visualcrossing import VisualCrossingProvider
from .weather_weatherapi import WeatherAPIProvider

PROVIDER_CLASSES: Dict[str, Type[WeatherProvider]] = {
    OpenMeteoProvider.provider_id: OpenMeteoProvider,
    WeatherAPIProvider.provider_id: WeatherAPIProvider,
    VisualCrossingProvider.provider_id: VisualCrossingProvider,
    OpenWeatherMapProvider.provider_id: OpenWeatherMapProvider,
}


def provider_rate_limiter(cfg: ServiceConfig) -> RateLimiter:
    return RateLimiter(DEFAULT_PROVIDER_RATE_LIMIT, limits=cfg.provider_rate_limits)


def build_providers(cfg: ServiceConfig, rate_limiter: Optional[RateLimiter] = None,
                    session: Optional[requests.Session] = None) -> Dict[str, WeatherProvider]:
    """One adapter per known provider, in priority order. Unconfigured ones are kept
    so that asking for them fails per point with AuthError instead of disappearing."""
    limiter = rate_limiter or provider_rate_limiter(cfg)
    shared = session or requests.Session()
    order = list(cfg.provider_priority) + [p for p in PROVIDER_CLASSES if p not in cfg.provider_priority]
    out: Dict[str, WeatherProvider] = {}
    for pid in order:
        cls = PROVIDER_CLASSES.get(pid)
        if cls is None:
            continue
        out[pid] = cls(limiter, api_key=cfg.api_key(pid), session=shared)
    return out


def available_provider_ids(providers: Dict[str, WeatherProvider]) -> List[str]:
    return [pid for pid, p in providers.items() if p.is_configured()]
