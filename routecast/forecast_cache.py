"""Content-addressed forecast and route caches.

- Keys are `<prefix>:<sha256 of canonical JSON>` so identical inputs share an entry
- Backends are plain string stores: memory, one JSON file per key on disk, or Redis
- Expiry is checked lazily on read; `ForecastCache` also sweeps expired entries
  every `sweep_every` writes
- A backend outage is logged and degrades to a miss (reads) or a skipped write
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import redis

from .config import CACHE_SWEEP_EVERY, FORECAST_TTL_S, ROUTE_TTL_S, ServiceConfig
from .errors import CacheError, ValidationError
from .models import CacheEntry, ForecastSettings, Route, SourcePreferences, WeatherForecast

log = logging.getLogger('routecast.forecast_cache')

FORECAST_PREFIX = 'forecast'
ROUTE_PREFIX = 'route'
LOCK_STRIPES = 16


def make_key(prefix: str, obj: Any) -> str:
    s = json.dumps(obj, sort_keys=True, separators=(",", ":"))
    h = hashlib.sha256(s.encode("utf-8")).hexdigest()
    return f"{prefix}:{h}"


def _r(v: Optional[float], ndigits: int) -> Optional[float]:
    return round(float(v), ndigits) if v is not None else None


def forecast_cache_key(route: Route, settings: ForecastSettings,
                       sources: Optional[SourcePreferences] = None) -> str:
    """Coordinates rounded to 1e-6°, distances to 1e-4 km; route name is not part of the key."""
    pts = [[_r(p.lat, 6), _r(p.lon, 6), _r(p.distance_km, 4)] for p in route.points]
    return make_key(FORECAST_PREFIX, {
        'points': pts,
        'settings': settings.to_dict(),
        'sources': (sources or SourcePreferences()).to_dict(),
    })


def route_cache_key(text: str) -> str:
    return f"{ROUTE_PREFIX}:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"


# -------------------- Backends --------------------
class MemoryBackend:
    """In-process store. Writers for different keys take different stripe locks."""

    def __init__(self, clock: Callable[[], float] = time.time, stripes: int = LOCK_STRIPES):
        self._data: Dict[str, tuple] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]
        self._clock = clock

    def _lock(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def get(self, key: str) -> Optional[str]:
        with self._lock(key):
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and self._clock() >= expires_at:
                self._data.pop(key, None)
                return None
            return value

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s else None
        with self._lock(key):
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock(key):
            self._data.pop(key, None)

    def keys(self, prefix: str = '') -> List[str]:
        return [k for k in list(self._data) if k.startswith(prefix)]


class DiskBackend:
    """One JSON document per key; writes go through a temp file and `os.replace`."""

    def __init__(self, directory: Path, clock: Callable[[], float] = time.time):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, key: str) -> Path:
        return self.directory / (key.replace(':', '_') + '.json')

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            doc = json.load(f)
        expires_at = doc.get('expires_at')
        if expires_at is not None and self._clock() >= float(expires_at):
            self.delete(key)
            return None
        return doc.get('value')

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        path = self._path(key)
        tmp = path.with_suffix(f'.{os.getpid()}.{threading.get_ident()}.tmp')
        doc = {'key': key, 'value': value, 'expires_at': self._clock() + ttl_s if ttl_s else None}
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(doc, f)
        os.replace(tmp, path)
        log.info('[CACHE] disk save %s', path.name)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self, prefix: str = '') -> List[str]:
        stem = prefix.replace(':', '_')
        out = []
        for path in sorted(self.directory.glob(f'{stem}*.json')):
            with open(path, 'r', encoding='utf-8') as f:
                out.append(json.load(f).get('key') or path.stem)
        return out


class RedisBackend:
    def __init__(self, client: 'redis.Redis'):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisBackend':
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        v = self.client.get(key)
        if not v:
            return None
        return v.decode('utf-8') if isinstance(v, bytes) else v

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        ex = max(1, int(ttl_s)) if ttl_s else None
        self.client.set(key, value, ex=ex)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def keys(self, prefix: str = '') -> List[str]:
        return [k.decode('utf-8') if isinstance(k, bytes) else k
                for k in self.client.scan_iter(match=f'{prefix}*')]


def build_backend(cfg: ServiceConfig):
    if cfg.redis_url:
        log.info('[CACHE] backend=redis')
        return RedisBackend.from_url(cfg.redis_url)
    if cfg.cache_dir is not None:
        log.info('[CACHE] backend=disk dir=%s', cfg.cache_dir)
        return DiskBackend(cfg.cache_dir)
    log.info('[CACHE] backend=memory')
    return MemoryBackend()


# -------------------- Caches --------------------
class _BackendCache:
    def __init__(self, backend, ttl_s: Optional[float], clock: Callable[[], float] = time.time):
        self.backend = backend
        self.ttl_s = ttl_s if ttl_s else None
        self._clock = clock
        self._lock = threading.Lock()
        self._counts = {'hits': 0, 'misses': 0, 'errors': 0, 'writes': 0}

    def _count(self, name: str) -> None:
        with self._lock:
            self._counts[name] += 1

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        err = CacheError(f"{op} {key}: {exc}")
        self._count('errors')
        log.warning('[CACHE] backend %s failed, continuing without cache: %s', op, err)

    def _read(self, key: str) -> Optional[str]:
        try:
            return self.backend.get(key)
        except Exception as e:
            self._failed('get', key, e)
            return None

    def _write(self, key: str, value: str, ttl_s: Optional[float]) -> bool:
        try:
            self.backend.set(key, value, ttl_s)
        except Exception as e:
            self._failed('set', key, e)
            return False
        self._count('writes')
        return True

    def delete(self, key: str) -> bool:
        try:
            self.backend.delete(key)
        except Exception as e:
            self._failed('delete', key, e)
            return False
        return True

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = dict(self._counts)
        lookups = out['hits'] + out['misses']
        out['hit_rate'] = round(out['hits'] / lookups, 4) if lookups else 0.0
        return out


class ForecastCache(_BackendCache):
    def __init__(self, backend, ttl_s: Optional[float] = FORECAST_TTL_S, clock: Callable[[], float] = time.time,
                 sweep_every: int = CACHE_SWEEP_EVERY):
        super().__init__(backend, ttl_s, clock)
        self.sweep_every = sweep_every
        self._writes_since_sweep = 0

    def _decode(self, key: str, raw: str) -> Optional[CacheEntry]:
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            self._failed('decode', key, e)
            self.delete(key)
            return None

    def get(self, key: str) -> Optional[CacheEntry]:
        raw = self._read(key)
        entry = self._decode(key, raw) if raw is not None else None
        now = self._clock()
        if entry is not None and entry.expired(now):
            log.info('[CACHE] expired key=%s', key)
            self.delete(key)
            entry = None
        if entry is None:
            self._count('misses')
            log.info('[CACHE] miss key=%s', key)
            return None
        entry.last_accessed = now
        entry.access_count += 1
        self._count('hits')
        log.info('[CACHE] hit key=%s access_count=%d', key, entry.access_count)
        remaining = entry.expires_at - now if entry.expires_at is not None else None
        try:
            self.backend.set(key, json.dumps(entry.to_dict()), remaining)
        except Exception as e:
            self._failed('touch', key, e)
        return entry

    def set(self, key: str, forecasts: Sequence[WeatherForecast], ttl_s: Optional[float] = None) -> Optional[CacheEntry]:
        ttl = ttl_s if ttl_s is not None else self.ttl_s
        now = self._clock()
        entry = CacheEntry(
            key=key,
            forecasts=list(forecasts),
            created_at=now,
            expires_at=now + ttl if ttl else None,
            last_accessed=now,
        )
        if not self._write(key, json.dumps(entry.to_dict()), ttl):
            return None
        log.info('[CACHE] store key=%s points=%d ttl=%s', key, len(entry.forecasts), ttl)
        if self._sweep_due():
            self.sweep()
        return entry

    def _sweep_due(self) -> bool:
        if self.sweep_every <= 0:
            return False
        with self._lock:
            self._writes_since_sweep += 1
            if self._writes_since_sweep < self.sweep_every:
                return False
            self._writes_since_sweep = 0
        return True

    def sweep(self) -> int:
        """Remove expired or unreadable forecast entries. Returns how many were removed."""
        try:
            keys = self.backend.keys(FORECAST_PREFIX + ':')
        except Exception as e:
            self._failed('keys', FORECAST_PREFIX, e)
            return 0
        now = self._clock()
        removed = 0
        for key in keys:
            raw = self._read(key)
            if raw is None:
                continue
            entry = self._decode(key, raw)
            if entry is None:
                removed += 1
            elif entry.expired(now) and self.delete(key):
                removed += 1
        if removed:
            log.info('[CACHE] sweep removed=%d', removed)
        return removed


class RouteCache(_BackendCache):
    """Parsed routes keyed by GPX content hash; unbounded TTL unless configured."""

    def __init__(self, backend, ttl_s: Optional[float] = ROUTE_TTL_S, clock: Callable[[], float] = time.time):
        super().__init__(backend, ttl_s, clock)

    def get_route(self, key: str) -> Optional[Route]:
        raw = self._read(key)
        if raw is None:
            self._count('misses')
            return None
        try:
            route = Route.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            self._failed('decode', key, e)
            self._count('misses')
            return None
        self._count('hits')
        log.info('[CACHE] route hit key=%s', key)
        return route

    def set_route(self, key: str, route: Route) -> bool:
        return self._write(key, json.dumps(route.to_dict()), self.ttl_s)
