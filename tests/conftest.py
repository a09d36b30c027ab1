import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import requests

from routecast.config import ServiceConfig
from routecast.consensus import ConsensusAggregator
from routecast.forecast_cache import ForecastCache, MemoryBackend, RouteCache
from routecast.models import RawPoint, Route, WeatherSample
from routecast.rate_limiter import RateLimit, RateLimiter
from routecast.retry import RetryPolicy, RetryTimeoutExecutor
from routecast.weather_providers import WeatherProvider
from routecast.weather_service import WeatherForecastService


class StubResponse:
    def __init__(self, status_code: int = 200, payload: Any = None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubSession:
    """Stands in for requests.Session; `handler(url, params)` returns a StubResponse or raises."""

    def __init__(self, handler: Callable[[str, Dict[str, Any]], StubResponse]):
        self.handler = handler
        self.calls: List[Tuple[str, Dict[str, Any], Optional[float]]] = []
        self._lock = threading.Lock()

    def get(self, url, params=None, timeout=None):
        with self._lock:
            self.calls.append((url, dict(params or {}), timeout))
        return self.handler(url, dict(params or {}))


class FakeProvider(WeatherProvider):
    """Provider whose endpoint is `https://<id>.test/current?lat=..&lon=..`.

    The stub session returns the flat payload `{'temp': .., 'wind_speed': .., ...}`.
    """
    confidence = 75.0

    def __init__(self, provider_id: str, rate_limiter: RateLimiter, session, api_key: Optional[str] = None,
                 requires_api_key: bool = False):
        super().__init__(rate_limiter, api_key=api_key, session=session)
        self.provider_id = provider_id
        self.name = provider_id.title()
        self.base_url = f"https://{provider_id}.test/current"
        self.requires_api_key = requires_api_key

    def build_request(self, lat: float, lon: float):
        return self.base_url, {'lat': lat, 'lon': lon}

    def parse(self, data, lat: float, lon: float) -> WeatherSample:
        return WeatherSample(
            provider_id=self.provider_id,
            temp=float(data['temp']),
            feels_like=float(data.get('feels_like', data['temp'])),
            humidity=float(data.get('humidity', 60.0)),
            pressure=float(data.get('pressure', 1013.0)),
            wind_speed=float(data.get('wind_speed', 3.0)),
            wind_deg=float(data.get('wind_deg', 180.0)),
            cloud_cover=float(data.get('cloud_cover', 20.0)),
            precipitation_1h=float(data.get('precipitation_1h', 0.0)),
            condition=str(data.get('condition', 'Clear')),
            condition_code=None,
            fetched_at=self._now(),
            confidence=self.confidence,
        )


def provider_of(url: str) -> str:
    return url.split('//', 1)[1].split('.test', 1)[0]


def weather_payload(**overrides) -> Dict[str, Any]:
    out = {'temp': 18.0, 'humidity': 60.0, 'wind_speed': 3.0, 'wind_deg': 180.0, 'condition': 'Clear'}
    out.update(overrides)
    return out


def straight_route(total_km: float = 20.0, name: str = 'test route') -> Route:
    """Two-point route along the equator with explicit cumulative distances."""
    return Route(
        name=name,
        points=(
            RawPoint(lat=0.0, lon=0.0, distance_km=0.0),
            RawPoint(lat=0.0, lon=total_km / 111.195, distance_km=total_km),
        ),
        total_distance_km=total_km,
    )


def service_config(**overrides) -> ServiceConfig:
    values = dict(
        inter_chunk_delay_s=0.0,
        retry_backoff_s=0.0,
        provider_timeout_s=5.0,
        provider_max_retries=2,
        provider_priority=('alpha', 'beta', 'gamma'),
    )
    values.update(overrides)
    return ServiceConfig(**values)



def make_service(handler: Callable[[str, Dict[str, Any]], StubResponse],
                 provider_ids: Sequence[str] = ('alpha', 'beta', 'gamma'),
                 cfg: Optional[ServiceConfig] = None,
                 limit: RateLimit = RateLimit(per_minute=10000, per_day=100000)):
    cfg = cfg or service_config()
    session = StubSession(handler)
    limiter = RateLimiter(limit)
    providers = {pid: FakeProvider(pid, limiter, session) for pid in provider_ids}
    backend = MemoryBackend()
    service = WeatherForecastService(
        providers=providers,
        cache=ForecastCache(backend, ttl_s=cfg.forecast_ttl_s),
        executor=RetryTimeoutExecutor(
            RetryPolicy(max_retries=cfg.provider_max_retries, timeout_s=cfg.provider_timeout_s,
                        backoff_s=cfg.retry_backoff_s),
            name='provider',
        ),
        config=cfg,
        aggregator=ConsensusAggregator(cfg.provider_priority),
        route_cache=RouteCache(backend),
    )
    return service, session


@pytest.fixture
def ok_handler():
    def handler(url, params):
        return StubResponse(200, weather_payload())
    return handler


@pytest.fixture(autouse=True)
def _no_real_http(monkeypatch):
    def _refuse(*args, **kwargs):
        raise AssertionError('tests must not reach the network')
    monkeypatch.setattr(requests.Session, 'request', _refuse)
