"""Base class for current-weather provider adapters.

Every adapter follows the same contract:
- refuse (AuthError) when an API key is required but missing
- refuse (local RateLimitError) without touching the network when the shared
  RateLimiter says the provider's quota is spent
- GET the provider's current-weather endpoint, bounded by the attempt deadline
- map HTTP failures onto the error taxonomy, normalize the payload into a
  WeatherSample and record the request against the quota
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import requests

from .errors import (AuthError, ParseError, RateLimitError, RetryExhaustedError, RoutecastError, TimeoutError,
                     UpstreamError)
from .models import WeatherSample
from .rate_limiter import RateLimiter
from .retry import Attempt, RetryTimeoutExecutor

log = logging.getLogger('routecast.providers')

DEFAULT_HTTP_TIMEOUT_S = 30.0
HEALTH_CHECK_POINT = (51.5074, -0.1278)  # London


@dataclass(frozen=True)
class ProviderStatus:
    provider_id: str
    status: str  # available | degraded | unavailable
    checked_at: datetime
    response_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider_id': self.provider_id,
            'status': self.status,
            'checked_at': self.checked_at.isoformat(),
            'response_time_ms': round(self.response_time_ms, 1),
            'error': self.error,
        }


def section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Nested object from a provider payload; missing/null is empty, any other shape is a TypeError."""
    v = data.get(key)
    if v is None:
        return {}
    if not isinstance(v, Mapping):
        raise TypeError(f"{key!r} is {type(v).__name__}, expected an object")
    return v


def num(data: Mapping[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    """Float field from a provider payload; missing/null falls back to `default`."""
    if not isinstance(data, Mapping):
        raise TypeError(f"expected an object, got {type(data).__name__}")
    v = data.get(key)
    if v is None:
        return default
    return float(v)


def direction(data: Mapping[str, Any], key: str) -> float:
    """Wind direction in degrees; NaN when the provider omits it (calm or unreported)."""
    return num(data, key, math.nan)


class WeatherProvider:
    provider_id: str = ''
    name: str = ''
    base_url: str = ''
    requires_api_key: bool = False
    confidence: Optional[float] = None

    def __init__(self, rate_limiter: RateLimiter, api_key: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.rate_limiter = rate_limiter
        self.api_key = api_key
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return (not self.requires_api_key) or bool(self.api_key)

    # Subclasses implement these two.
    def build_request(self, lat: float, lon: float) -> Tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    def parse(self, data: Mapping[str, Any], lat: float, lon: float) -> WeatherSample:
        raise NotImplementedError

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _raise_for_status(self, resp: requests.Response) -> None:
        code = int(resp.status_code)
        if code < 400:
            return
        if code in (401, 403):
            raise AuthError(f"{self.name}: invalid or unauthorized API key (HTTP {code})",
                            provider_id=self.provider_id, http_status=code)
        if code == 429:
            raise RateLimitError(f"{self.name}: upstream rate limit (HTTP 429)", key=self.provider_id)
        if code >= 500:
            raise UpstreamError(f"{self.name}: server error (HTTP {code})",
                                provider_id=self.provider_id, http_status=code)
        raise UpstreamError(f"{self.name}: request rejected (HTTP {code})",
                            provider_id=self.provider_id, http_status=code, retryable=False)

    def fetch(self, lat: float, lon: float, attempt: Optional[Attempt] = None) -> WeatherSample:
        if not self.is_configured():
            raise AuthError(f"{self.name}: API key not configured", provider_id=self.provider_id)
        if not self.rate_limiter.can_make_request(self.provider_id):
            quota = self.rate_limiter.remaining(self.provider_id)
            raise RateLimitError(f"Rate limit exceeded for {self.name}", key=self.provider_id,
                                 reset_at=quota.reset_at, local=True)
        timeout = attempt.remaining_s() if attempt is not None else None
        if timeout is None:
            timeout = DEFAULT_HTTP_TIMEOUT_S
        url, params = self.build_request(lat, lon)
        log.info('[API] start provider=%s lat=%.5f lon=%.5f', self.provider_id, lat, lon)
        try:
            resp = self.session.get(url, params=params, timeout=timeout)
        except requests.Timeout as e:
            raise TimeoutError(f"{self.name}: request timed out") from e
        except requests.RequestException as e:
            raise UpstreamError(f"{self.name}: network error: {e}", provider_id=self.provider_id) from e
        self._raise_for_status(resp)
        if attempt is not None and attempt.cancelled.is_set():
            raise TimeoutError(f"{self.name}: attempt cancelled after deadline")
        try:
            data = resp.json()
        except ValueError as e:
            raise ParseError(f"{self.name}: response is not JSON", provider_id=self.provider_id) from e
        if not isinstance(data, dict):
            raise ParseError(f"{self.name}: expected JSON object, got {type(data).__name__}",
                             provider_id=self.provider_id)
        try:
            sample = self.parse(data, lat, lon)
        except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
            raise ParseError(f"{self.name}: unexpected payload: {e!r}", provider_id=self.provider_id) from e
        self.rate_limiter.record_request(self.provider_id)
        return sample


def check_health(provider: WeatherProvider, executor: Optional[RetryTimeoutExecutor] = None) -> ProviderStatus:
    """Fetch a well-known location once and classify the provider."""
    t0 = time.monotonic()
    checked = datetime.now(timezone.utc)
    if not provider.is_configured():
        return ProviderStatus(provider.provider_id, 'unavailable', checked, 0.0, 'not configured')
    try:
        if executor is not None:
            executor.execute(lambda attempt: provider.fetch(*HEALTH_CHECK_POINT, attempt))
        else:
            provider.fetch(*HEALTH_CHECK_POINT)
    except RoutecastError as e:
        elapsed_ms = (time.monotonic() - t0) * 1000.0
        cause = e.last_error if isinstance(e, RetryExhaustedError) else e
        if isinstance(cause, RateLimitError):
            return ProviderStatus(provider.provider_id, 'degraded', checked, elapsed_ms, str(e))
        log.warning('[API] health check failed provider=%s: %s', provider.provider_id, e)
        return ProviderStatus(provider.provider_id, 'unavailable', checked, elapsed_ms, str(e))
    return ProviderStatus(provider.provider_id, 'available', checked, (time.monotonic() - t0) * 1000.0)
