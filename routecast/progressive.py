"""Chunked delivery for large routes.

Chunks run strictly one after another so the per-provider quotas shared by the
whole request are never hit in parallel. Each chunk goes through the retry
executor without a chunk-level deadline (per-call timeouts apply inside).
Cancellation is checked between chunks; a chunk already running is finished.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .config import CHUNK_SIZE, INTER_CHUNK_DELAY_S, PROGRESSIVE_THRESHOLD
from .errors import RoutecastError
from .models import Progress, RoutePoint, WeatherForecast
from .retry import RetryTimeoutExecutor

log = logging.getLogger('routecast.progressive')


def should_use_progressive(estimated_count: int, threshold: int = PROGRESSIVE_THRESHOLD) -> bool:
    return estimated_count > threshold


def split_chunks(points: Sequence[RoutePoint], chunk_size: int) -> List[List[RoutePoint]]:
    size = max(1, int(chunk_size))
    return [list(points[i:i + size]) for i in range(0, len(points), size)]


@dataclass(frozen=True)
class ChunkBatch:
    index: int
    forecasts: List[WeatherForecast]
    progress: Progress

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'forecasts': [f.to_dict() for f in self.forecasts],
            'progress': self.progress.to_dict(),
        }


@dataclass
class ProgressiveResult:
    forecasts: List[WeatherForecast] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None
    completed_chunks: int = 0
    total_chunks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'forecasts': [f.to_dict() for f in self.forecasts],
            'cancelled': self.cancelled,
            'error': self.error,
            'completed_chunks': self.completed_chunks,
            'total_chunks': self.total_chunks,
        }


class ProgressiveChunkCoordinator:
    def __init__(self, process_chunk: Callable[[List[RoutePoint]], List[WeatherForecast]],
                 executor: RetryTimeoutExecutor, chunk_size: int = CHUNK_SIZE,
                 inter_chunk_delay_s: float = INTER_CHUNK_DELAY_S):
        self.process_chunk = process_chunk
        self.executor = executor
        self.chunk_size = chunk_size
        self.inter_chunk_delay_s = inter_chunk_delay_s
        self._policy = replace(executor.policy, timeout_s=None)

    def stream(self, points: Sequence[RoutePoint],
               cancel: Optional[threading.Event] = None) -> Iterator[ChunkBatch]:
        """Yield one batch per chunk, in route order.

        Stops early (without raising) when `cancel` is set. A chunk that exhausts
        its retries raises out of the generator; earlier batches were already yielded.
        """
        chunks = split_chunks(points, self.chunk_size)
        total = len(chunks)
        log.info('[CHUNK] start points=%d chunks=%d size=%d', len(points), total, self.chunk_size)
        for index, chunk in enumerate(chunks):
            if cancel is not None and cancel.is_set():
                log.info('[CHUNK] cancelled before chunk %d/%d', index + 1, total)
                return
            if index > 0 and self.inter_chunk_delay_s > 0:
                if cancel is not None:
                    if cancel.wait(self.inter_chunk_delay_s):
                        log.info('[CHUNK] cancelled before chunk %d/%d', index + 1, total)
                        return
                else:
                    time.sleep(self.inter_chunk_delay_s)
            forecasts = self.executor.execute(lambda attempt, c=chunk: self.process_chunk(c), policy=self._policy)
            progress = Progress.of(index + 1, total)
            log.info('[CHUNK] %d/%d done (%.1f%%)', progress.current, progress.total, progress.percentage)
            yield ChunkBatch(index=index, forecasts=list(forecasts), progress=progress)

    def run(self, points: Sequence[RoutePoint],
            on_progress: Optional[Callable[[ChunkBatch], None]] = None,
            cancel: Optional[threading.Event] = None) -> ProgressiveResult:
        result = ProgressiveResult(total_chunks=len(split_chunks(points, self.chunk_size)))
        try:
            for batch in self.stream(points, cancel):
                result.forecasts.extend(batch.forecasts)
                result.completed_chunks += 1
                if on_progress is not None:
                    on_progress(batch)
        except RoutecastError as e:
            result.error = str(e)
            log.error('[CHUNK] aborted after %d/%d chunks: %s', result.completed_chunks, result.total_chunks, e)
            return result
        result.cancelled = result.completed_chunks < result.total_chunks
        return result
