"""Error taxonomy shared by the forecast pipeline.

Every error carries two flags the rest of the package relies on:
- `retryable`: consulted by the default retry predicate in `retry.py`.
- `status_code`: used by the Flask adapter to map errors onto HTTP responses.
"""
from __future__ import annotations

import builtins
from typing import Optional


class RoutecastError(Exception):
    retryable: bool = False
    status_code: int = 500

    def __init__(self, message: str = '', *, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = bool(retryable)

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(RoutecastError):
    status_code = 400


class RateLimitError(RoutecastError):
    """Quota exhausted.

    `local=True` means our own limiter refused before any network call; those
    are not retried because the window will not have rolled over by the next
    attempt. A 429 from the provider is retryable.
    """
    status_code = 429

    def __init__(self, message: str = '', *, key: str = '', reset_at: Optional[float] = None,
                 local: bool = False, retryable: Optional[bool] = None):
        if retryable is None:
            retryable = not local
        super().__init__(message, retryable=retryable)
        self.key = key
        self.reset_at = reset_at
        self.local = local


class UpstreamError(RoutecastError):
    retryable = True
    status_code = 502

    def __init__(self, message: str = '', *, provider_id: str = '', http_status: Optional[int] = None,
                 retryable: Optional[bool] = None):
        super().__init__(message, retryable=retryable)
        self.provider_id = provider_id
        self.http_status = http_status


class AuthError(UpstreamError):
    retryable = False


class ParseError(UpstreamError):
    retryable = False


class TimeoutError(RoutecastError, builtins.TimeoutError):
    retryable = True
    status_code = 504


class ConsensusError(RoutecastError):
    status_code = 502


class CacheError(RoutecastError):
    pass


class ForecastUnavailableError(RoutecastError):
    """No sampled point produced any weather data."""
    status_code = 502


class RetryExhaustedError(RoutecastError):
    status_code = 502

    def __init__(self, last_error: BaseException, attempts: int, elapsed_s: float):
        super().__init__(
            f"{type(last_error).__name__}: {last_error} (after {attempts} attempts, {elapsed_s:.2f}s)"
        )
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed_s = elapsed_s
        code = getattr(last_error, 'status_code', None)
        if isinstance(code, int):
            self.status_code = code


def is_retryable(err: BaseException) -> bool:
    return bool(getattr(err, 'retryable', False))
