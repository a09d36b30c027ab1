from flask import Flask, jsonify, request, Response
from typing import Any, Dict, Optional, Tuple
import json
import logging
import math
import os
import time

from .config import ServiceConfig
from .errors import RateLimitError, RoutecastError, ValidationError
from .models import ForecastSettings, Route, SourcePreferences
from .rate_limiter import RateLimit, RateLimiter
from .weather_service import WeatherForecastService, build_service

logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
log = logging.getLogger('routecast.app')

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Content-Type': 'text/event-stream',
    'Connection': 'keep-alive',
}


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def client_id() -> str:
    fwd = request.headers.get('X-Forwarded-For', '')
    if fwd.strip():
        return fwd.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def _error_response(err: RoutecastError):
    resp = jsonify({'error': str(err), 'type': err.kind})
    resp.status_code = err.status_code
    if isinstance(err, RateLimitError) and err.reset_at is not None:
        resp.headers['Retry-After'] = str(max(1, math.ceil(err.reset_at - time.time())))
    return resp


def parse_forecast_request(body: Any, service: WeatherForecastService) -> Tuple[Route, ForecastSettings, SourcePreferences]:
    """Request body: {route | gpx, settings?, sources?}."""
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    if body.get('gpx'):
        route = service.load_route(str(body['gpx']))
    elif isinstance(body.get('route'), dict):
        route = Route.from_dict(body['route'])
    else:
        raise ValidationError("Provide 'route' or 'gpx'")
    settings = ForecastSettings.from_mapping(body.get('settings'))
    prefs = service.preferences(SourcePreferences.from_mapping(body.get('sources')) if body.get('sources') else None)
    return route, settings, prefs


def create_app(service: Optional[WeatherForecastService] = None,
               client_limiter: Optional[RateLimiter] = None) -> Flask:
    cfg = service.config if service is not None else ServiceConfig.from_env()
    service = service or build_service(cfg)
    client_limiter = client_limiter or RateLimiter(
        RateLimit(per_minute=cfg.client_requests_per_minute, per_day=cfg.client_requests_per_day))

    app = Flask(__name__)
    app.config['FORECAST_SERVICE'] = service
    app.config['CLIENT_LIMITER'] = client_limiter

    def _limit() -> Dict[str, str]:
        cid = client_id()
        quota = client_limiter.acquire(cid)
        lim = client_limiter.limit_for(cid)
        return {
            'X-RateLimit-Limit': str(lim.per_minute),
            'X-RateLimit-Remaining': str(quota.count),
            'X-RateLimit-Reset': str(int(quota.reset_at)),
        }

    @app.errorhandler(RoutecastError)
    def _handle_routecast_error(err: RoutecastError):
        if err.status_code >= 500:
            log.error('[API] %s: %s', err.kind, err)
        else:
            log.info('[API] %s: %s', err.kind, err)
        return _error_response(err)

    @app.route('/api/forecast', methods=['POST'])
    def api_forecast():
        headers = _limit()
        route, settings, prefs = parse_forecast_request(request.get_json(silent=True), service)
        t0 = time.time()
        result = service.get_forecast(route, settings, prefs)
        log.info('[API] forecast route=%r points=%d cache_hit=%s in %.2fs',
                 route.name, len(result.forecasts), result.cache_hit, time.time() - t0)
        resp = jsonify(result.to_dict())
        resp.headers.update(headers)
        return resp

    @app.route('/api/forecast/stream', methods=['POST'])
    def api_forecast_stream():
        headers = _limit()
        route, settings, prefs = parse_forecast_request(request.get_json(silent=True), service)

        def event_stream():
            log.info('[SSE] forecast stream start route=%r', route.name)
            for event, payload in service.stream_forecast(route, settings, prefs):
                yield _sse(event, payload)
            log.info('[SSE] forecast stream end route=%r', route.name)

        return Response(event_stream(), headers={**SSE_HEADERS, **headers})

    @app.route('/api/providers')
    def api_providers():
        out = []
        for pid, p in service.providers.items():
            quota = p.rate_limiter.remaining(pid)
            out.append({
                'id': pid,
                'name': p.name,
                'configured': p.is_configured(),
                'requires_api_key': p.requires_api_key,
                'remaining': quota.count,
                'reset_at': quota.reset_at,
            })
        body: Dict[str, Any] = {'providers': out}
        if str(request.args.get('check', '')).lower() in ('1', 'true', 'yes'):
            body['status'] = [s.to_dict() for s in service.provider_statuses()]
        return jsonify(body)

    @app.route('/api/health')
    def api_health():
        stats = service.cache.stats() if service.cache is not None else None
        return jsonify({'status': 'ok', 'cache': stats})

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', '5000'))
    create_app().run(host='0.0.0.0', port=port, debug=False, threaded=True)
