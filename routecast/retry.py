"""Bounded retry with a per-attempt deadline.

Every network call path in the package goes through `RetryTimeoutExecutor.execute`.
Each attempt runs on its own daemon thread so the caller can stop waiting at the
deadline; the attempt's `cancelled` event is then set so the operation can stop
(provider adapters pass the deadline to `requests` and skip quota accounting once
cancelled). A timed-out attempt counts as a failed attempt.

Backoff between attempts is exponential: `backoff_s * backoff_factor ** (n - 1)`
before attempt n + 1.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, TypeVar

from .errors import RetryExhaustedError, TimeoutError, is_retryable

log = logging.getLogger('routecast.retry')

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    timeout_s: Optional[float] = 10.0
    retry_predicate: Callable[[BaseException], bool] = is_retryable
    backoff_s: float = 0.5
    backoff_factor: float = 2.0

    def delay_before(self, attempt: int) -> float:
        """Delay before attempt `attempt + 1` (attempts are 1-based)."""
        if self.backoff_s <= 0:
            return 0.0
        return self.backoff_s * (self.backoff_factor ** (attempt - 1))


@dataclass
class Attempt:
    number: int
    timeout_s: Optional[float]
    cancelled: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.monotonic)

    def remaining_s(self) -> Optional[float]:
        if self.timeout_s is None:
            return None
        return max(0.0, self.timeout_s - (time.monotonic() - self.started_at))


@dataclass
class _Pending:
    event: threading.Event
    result: Any = None
    error: Optional[BaseException] = None


class RetryTimeoutExecutor:
    def __init__(self, policy: Optional[RetryPolicy] = None, name: str = 'retry'):
        self.policy = policy or RetryPolicy()
        self.name = name

    def with_policy(self, **changes) -> 'RetryTimeoutExecutor':
        return RetryTimeoutExecutor(replace(self.policy, **changes), name=self.name)

    def _run_attempt(self, op: Callable[[Attempt], T], attempt: Attempt) -> T:
        if attempt.timeout_s is None:
            return op(attempt)
        pending = _Pending(event=threading.Event())

        def _target() -> None:
            try:
                pending.result = op(attempt)
            except BaseException as e:  # re-raised on the caller's thread
                pending.error = e
            finally:
                pending.event.set()

        worker = threading.Thread(target=_target, name=f'{self.name}-attempt-{attempt.number}', daemon=True)
        worker.start()
        if not pending.event.wait(attempt.timeout_s):
            attempt.cancelled.set()
            raise TimeoutError(f"Operation timed out after {attempt.timeout_s:.2f}s")
        if pending.error is not None:
            raise pending.error
        return pending.result

    def execute(self, op: Callable[[Attempt], T], policy: Optional[RetryPolicy] = None) -> T:
        policy = policy or self.policy
        t0 = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            attempt = Attempt(number=attempts, timeout_s=policy.timeout_s)
            try:
                return self._run_attempt(op, attempt)
            except Exception as e:
                if not policy.retry_predicate(e):
                    raise
                elapsed = time.monotonic() - t0
                if attempts > policy.max_retries:
                    log.warning('[RETRY] %s exhausted after %d attempts (%.2fs): %s', self.name, attempts, elapsed, e)
                    raise RetryExhaustedError(e, attempts, elapsed) from e
                delay = policy.delay_before(attempts)
                log.info('[RETRY] %s attempt %d failed: %s; retrying in %.2fs', self.name, attempts, e, delay)
                if delay > 0:
                    time.sleep(delay)
