"""WeatherForecastService: cache-first forecast retrieval for a whole route.

- Content-addressed forecast cache checked before any provider call
- Per point: primary provider only, or every enabled provider in parallel
- Every provider call goes through the retry executor and the shared rate limiter
- Provider failures are isolated per point; a point with no data is marked failed
- Routes with many sample points are delivered in sequential chunks
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from queue import Queue
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests

from .config import ServiceConfig
from .consensus import ConsensusAggregator
from .errors import ForecastUnavailableError, RoutecastError, UpstreamError, ValidationError
from .forecast_cache import (ForecastCache, RouteCache, build_backend, forecast_cache_key,
                             route_cache_key)
from .models import (ForecastResult, ForecastSettings, Progress, Route, RoutePoint, SourcePreferences,
                     WeatherForecast, WeatherSample)
from .progressive import ChunkBatch, ProgressiveChunkCoordinator, should_use_progressive
from .rate_limiter import RateLimiter
from .retry import RetryPolicy, RetryTimeoutExecutor
from .route_sampling import attach_estimated_times, estimate_sample_count, route_from_gpx, sample_route
from .weather import alerts_for, convert_forecast
from .weather_providers import ProviderStatus, WeatherProvider, check_health
from .weather_sources import available_provider_ids, build_providers, provider_rate_limiter

log = logging.getLogger('routecast.weather.service')

MAX_FETCH_WORKERS = 8
_DONE = object()


class WeatherForecastService:
    def __init__(self, providers: Dict[str, WeatherProvider], cache: Optional[ForecastCache],
                 executor: RetryTimeoutExecutor, config: ServiceConfig,
                 aggregator: Optional[ConsensusAggregator] = None,
                 route_cache: Optional[RouteCache] = None,
                 max_workers: int = MAX_FETCH_WORKERS):
        self.providers = providers
        self.cache = cache
        self.route_cache = route_cache
        self.executor = executor
        self.config = config
        self.aggregator = aggregator or ConsensusAggregator(config.provider_priority)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='routecast-fetch')

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # -------------------- inputs --------------------
    def preferences(self, raw: Optional[SourcePreferences] = None) -> SourcePreferences:
        prefs = raw
        if prefs is None:
            configured = available_provider_ids(self.providers)
            primary = configured[0] if configured else next(iter(self.providers), self.config.provider_priority[0])
            prefs = SourcePreferences(primary=primary, enabled=(primary,))
        unknown = [pid for pid in prefs.provider_ids() if pid not in self.providers]
        if unknown:
            raise ValidationError(f"Unknown weather provider(s): {', '.join(unknown)}")
        return prefs

    def load_route(self, gpx_text: str, name: str = '') -> Route:
        """Parse GPX text into a Route, reusing a previously parsed copy when cached."""
        key = route_cache_key(gpx_text)
        if self.route_cache is not None:
            cached = self.route_cache.get_route(key)
            if cached is not None:
                return cached
        route = route_from_gpx(gpx_text, name=name)
        if self.route_cache is not None:
            self.route_cache.set_route(key, route)
        return route

    # -------------------- per point --------------------
    def _fetch(self, provider: WeatherProvider, point: RoutePoint) -> WeatherSample:
        return self.executor.execute(lambda attempt: provider.fetch(point.lat, point.lon, attempt))

    def _collect(self, point: RoutePoint, provider_ids: Tuple[str, ...]) -> Tuple[List[WeatherSample], Dict[str, str]]:
        samples: List[WeatherSample] = []
        errors: Dict[str, str] = {}

        def settle(pid: str, result: Callable[[], WeatherSample]) -> None:
            try:
                samples.append(result())
            except RoutecastError as e:
                errors[pid] = str(e)
            except Exception as e:
                # failures stay scoped to their provider
                log.exception('[API] provider=%s raised unexpectedly', pid)
                errors[pid] = f"{type(e).__name__}: {e}"

        if len(provider_ids) == 1:
            pid = provider_ids[0]
            settle(pid, lambda: self._fetch(self.providers[pid], point))
            return samples, errors
        # fan out, then wait for every dispatched fetch before consensus
        futures = [(pid, self._pool.submit(self._fetch, self.providers[pid], point)) for pid in provider_ids]
        for pid, fut in futures:
            settle(pid, fut.result)
        return samples, errors

    def forecast_point(self, point: RoutePoint, prefs: SourcePreferences, units: str = 'metric') -> WeatherForecast:
        samples, errors = self._collect(point, prefs.provider_ids())
        for pid, msg in errors.items():
            log.warning('[API] provider=%s failed at %.2f km: %s', pid, point.distance_km, msg)
        if not samples:
            return WeatherForecast(route_point=point, primary_sample=None, errors=errors)
        primary = next((s for s in samples if s.provider_id == prefs.primary), samples[0])
        consensus = self.aggregator.aggregate(samples) if prefs.mode == 'consensus' else None
        forecast = WeatherForecast(
            route_point=point,
            primary_sample=primary,
            all_samples=tuple(samples),
            consensus=consensus,
            alerts=tuple(alerts_for(primary, consensus, self.config.alert_thresholds)),
            errors=errors,
        )
        return convert_forecast(forecast, units)

    def _forecast_points(self, points: List[RoutePoint], prefs: SourcePreferences, units: str) -> List[WeatherForecast]:
        return [self.forecast_point(p, prefs, units) for p in points]

    def _forecast_chunk(self, points: List[RoutePoint], prefs: SourcePreferences, units: str) -> List[WeatherForecast]:
        forecasts = self._forecast_points(points, prefs, units)
        if forecasts and all(f.failed for f in forecasts):
            raise UpstreamError(f"No provider returned data for any of {len(points)} points in chunk")
        return forecasts

    # -------------------- route --------------------
    def get_forecast(self, route: Route, settings: ForecastSettings,
                     preferences: Optional[SourcePreferences] = None,
                     on_progress: Optional[Callable[[ChunkBatch], None]] = None,
                     cancel: Optional[threading.Event] = None) -> ForecastResult:
        if len(route.points) < 2:
            raise ValidationError('Route must contain at least 2 points')
        prefs = self.preferences(preferences)

        key = forecast_cache_key(route, settings, prefs)
        if self.cache is not None:
            entry = self.cache.get(key)
            if entry is not None:
                if on_progress is not None:
                    on_progress(ChunkBatch(index=0, forecasts=list(entry.forecasts), progress=Progress.of(1, 1)))
                return ForecastResult(forecasts=list(entry.forecasts), cache_hit=True)

        points = attach_estimated_times(sample_route(route, settings.interval_km), settings)
        log.info('[QUEUE] route=%r points=%d mode=%s providers=%s',
                 route.name, len(points), prefs.mode, ','.join(prefs.provider_ids()))

        cancelled = False
        error: Optional[str] = None
        if should_use_progressive(estimate_sample_count(route, settings.interval_km),
                                  self.config.progressive_threshold):
            coordinator = ProgressiveChunkCoordinator(
                lambda chunk: self._forecast_chunk(chunk, prefs, settings.units),
                self.executor,
                chunk_size=self.config.chunk_size,
                inter_chunk_delay_s=self.config.inter_chunk_delay_s,
            )
            progressive = coordinator.run(points, on_progress=on_progress, cancel=cancel)
            forecasts = progressive.forecasts
            cancelled = progressive.cancelled
            error = progressive.error
        else:
            forecasts = self._forecast_points(points, prefs, settings.units)
            if on_progress is not None:
                on_progress(ChunkBatch(index=0, forecasts=list(forecasts), progress=Progress.of(1, 1)))

        if not cancelled and not any(not f.failed for f in forecasts):
            raise ForecastUnavailableError(error or f"No weather data for any of {len(points)} route points")

        result = ForecastResult(forecasts=forecasts, cache_hit=False, cancelled=cancelled, error=error)
        if result.complete and self.cache is not None and not any(f.failed for f in forecasts):
            self.cache.set(key, forecasts)
        return result

    def stream_forecast(self, route: Route, settings: ForecastSettings,
                        preferences: Optional[SourcePreferences] = None,
                        cancel: Optional[threading.Event] = None) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event, payload) pairs: `progress` and `chunk` per batch, then `done` or `error`.

        The forecast runs on a worker thread; closing the generator cancels it at
        the next chunk boundary.
        """
        cancel = cancel or threading.Event()
        events: Queue = Queue()
        outcome: Dict[str, Any] = {}

        def _worker() -> None:
            try:
                outcome['result'] = self.get_forecast(route, settings, preferences,
                                                      on_progress=events.put, cancel=cancel)
            except Exception as e:  # handed to the consuming thread
                outcome['error'] = e
            finally:
                events.put(_DONE)

        threading.Thread(target=_worker, name='routecast-stream', daemon=True).start()
        try:
            while True:
                item = events.get()
                if item is _DONE:
                    break
                yield 'progress', item.progress.to_dict()
                yield 'chunk', item.to_dict()
            err = outcome.get('error')
            if isinstance(err, RoutecastError):
                yield 'error', {'error': str(err), 'type': err.kind}
                return
            if err is not None:
                raise err
            result: ForecastResult = outcome['result']
            done = {'cacheHit': result.cache_hit, 'cancelled': result.cancelled,
                    'total': len(result.forecasts)}
            if result.error:
                done['error'] = result.error
            yield 'done', done
        finally:
            cancel.set()

    def provider_statuses(self) -> List[ProviderStatus]:
        once = self.executor.with_policy(max_retries=0)
        return [check_health(p, once) for p in self.providers.values()]


def build_service(cfg: Optional[ServiceConfig] = None, session: Optional[requests.Session] = None,
                  rate_limiter: Optional[RateLimiter] = None) -> WeatherForecastService:
    cfg = cfg or ServiceConfig.from_env()
    limiter = rate_limiter or provider_rate_limiter(cfg)
    backend = build_backend(cfg)
    executor = RetryTimeoutExecutor(
        RetryPolicy(max_retries=cfg.provider_max_retries, timeout_s=cfg.provider_timeout_s,
                    backoff_s=cfg.retry_backoff_s),
        name='provider',
    )
    return WeatherForecastService(
        providers=build_providers(cfg, limiter, session),
        cache=ForecastCache(backend, ttl_s=cfg.forecast_ttl_s, sweep_every=cfg.cache_sweep_every),
        executor=executor,
        config=cfg,
        aggregator=ConsensusAggregator(cfg.provider_priority),
        route_cache=RouteCache(backend, ttl_s=cfg.route_ttl_s),
    )
