"""Per-key request quotas (provider ids for outbound calls, client ids for inbound).

Fixed windows: a minute bucket and a day bucket per key. A bucket opens on the
first request seen after the previous bucket has elapsed, so `reset_at` is always
`window_start + window length`. Counters for a key are guarded by that key's
lock only; distinct keys never contend. Keys whose windows have both elapsed
hold no information, so they are pruned at most once per `prune_interval_s`.
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from .errors import RateLimitError

log = logging.getLogger('routecast.rate_limiter')

MINUTE_S = 60.0
DAY_S = 86400.0
PRUNE_INTERVAL_S = 3600.0


@dataclass(frozen=True)
class RateLimit:
    per_minute: int
    per_day: int


@dataclass(frozen=True)
class Quota:
    count: int
    reset_at: float


@dataclass
class ProviderRateLimitState:
    provider_id: str
    window_start: float
    requests_this_window: int = 0
    requests_today: int = 0
    day_window_start: float = 0.0


class RateLimiter:
    def __init__(self, default: RateLimit, limits: Optional[Dict[str, RateLimit]] = None,
                 clock: Callable[[], float] = time.time, prune_interval_s: float = PRUNE_INTERVAL_S):
        self.default = default
        self.limits: Dict[str, RateLimit] = dict(limits or {})
        self._clock = clock
        self._states: Dict[str, ProviderRateLimitState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # guards membership of _locks only; counters stay under their key's lock
        self._registry = threading.Lock()
        self.prune_interval_s = prune_interval_s
        self._last_prune = clock()

    def limit_for(self, key: str) -> RateLimit:
        return self.limits.get(key, self.default)

    def _lock(self, key: str) -> threading.Lock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _guard(self, key: str):
        """Hold `key`'s lock; retries if `prune()` retired the lock while we waited on it."""
        self._maybe_prune()
        while True:
            lock = self._lock(key)
            with lock:
                if self._locks.get(key) is lock:
                    yield
                    return

    def _idle(self, st: ProviderRateLimitState, now: float) -> bool:
        return now - st.window_start >= MINUTE_S and now - st.day_window_start >= DAY_S

    def prune(self) -> int:
        """Forget keys whose minute and day windows have both elapsed. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        with self._registry:
            self._last_prune = now
            for key, lock in list(self._locks.items()):
                if not lock.acquire(blocking=False):
                    continue
                try:
                    st = self._states.get(key)
                    if st is None or self._idle(st, now):
                        self._states.pop(key, None)
                        del self._locks[key]
                        dropped += 1
                finally:
                    lock.release()
        if dropped:
            log.info('[RATE] pruned idle keys=%d tracked=%d', dropped, len(self._locks))
        return dropped

    def _maybe_prune(self) -> None:
        if self.prune_interval_s <= 0 or self._clock() - self._last_prune < self.prune_interval_s:
            return
        self.prune()

    def _roll(self, key: str, now: float) -> ProviderRateLimitState:
        st = self._states.get(key)
        if st is None:
            st = ProviderRateLimitState(provider_id=key, window_start=now, day_window_start=now)
            self._states[key] = st
            return st
        if now - st.window_start >= MINUTE_S:
            st.window_start = now
            st.requests_this_window = 0
        if now - st.day_window_start >= DAY_S:
            st.day_window_start = now
            st.requests_today = 0
        return st

    def _allowed(self, key: str, st: ProviderRateLimitState) -> bool:
        lim = self.limit_for(key)
        return st.requests_this_window < lim.per_minute and st.requests_today < lim.per_day

    def can_make_request(self, key: str) -> bool:
        with self._guard(key):
            st = self._roll(key, self._clock())
            return self._allowed(key, st)

    def record_request(self, key: str) -> None:
        with self._guard(key):
            st = self._roll(key, self._clock())
            st.requests_this_window += 1
            st.requests_today += 1

    def acquire(self, key: str) -> Quota:
        """Check and record in one step; raises RateLimitError when exhausted."""
        with self._guard(key):
            now = self._clock()
            st = self._roll(key, now)
            if not self._allowed(key, st):
                quota = self._quota(key, st)
                log.warning('[RATE] limit reached key=%s reset_at=%.0f', key, quota.reset_at)
                raise RateLimitError(f"Rate limit exceeded for {key}", key=key,
                                     reset_at=quota.reset_at, local=True)
            st.requests_this_window += 1
            st.requests_today += 1
            return self._quota(key, st)

    def _quota(self, key: str, st: ProviderRateLimitState) -> Quota:
        lim = self.limit_for(key)
        minute_left = lim.per_minute - st.requests_this_window
        day_left = lim.per_day - st.requests_today
        if day_left <= 0:
            return Quota(count=0, reset_at=st.day_window_start + DAY_S)
        if minute_left <= 0:
            return Quota(count=0, reset_at=st.window_start + MINUTE_S)
        return Quota(count=min(minute_left, day_left), reset_at=st.window_start + MINUTE_S)

    def remaining(self, key: str) -> Quota:
        with self._guard(key):
            st = self._roll(key, self._clock())
            return self._quota(key, st)

    def state(self, key: str) -> ProviderRateLimitState:
        with self._guard(key):
            return replace(self._roll(key, self._clock()))

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            for k in list(self._states):
                self.reset(k)
            return
        with self._guard(key):
            self._states.pop(key, None)
        log.info('[RATE] reset key=%s', key)
