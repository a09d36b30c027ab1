import json
import re

import pytest

from routecast.app import create_app
from routecast.rate_limiter import RateLimit, RateLimiter

from conftest import StubResponse, make_service, weather_payload
from test_route_sampling import GPX_TEXT

ROUTE = {
    'name': 'Ride',
    'points': [{'lat': 0.0, 'lon': 0.0}, {'lat': 0.0, 'lon': 0.18}],
}
SETTINGS = {'startTime': '2026-08-14T07:00:00Z', 'averageSpeed': 18, 'forecastInterval': 5}


@pytest.fixture
def client():
    service, _ = make_service(lambda url, params: StubResponse(200, weather_payload()))
    app = create_app(service, RateLimiter(RateLimit(per_minute=3, per_day=100)))
    return app.test_client()


def test_forecast_endpoint_shape(client):
    resp = client.post('/api/forecast', json={'route': ROUTE, 'settings': SETTINGS})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['cacheHit'] is False
    assert len(data['forecasts']) == 6
    first = data['forecasts'][0]
    assert first['status'] == 'ok'
    assert first['route_point']['estimated_time'].startswith('2026-08-14T07:00:00')
    assert resp.headers['X-RateLimit-Limit'] == '3'
    assert resp.headers['X-RateLimit-Remaining'] == '2'
    again = client.post('/api/forecast', json={'route': ROUTE, 'settings': SETTINGS})
    assert again.get_json()['cacheHit'] is True


def test_forecast_from_gpx_text(client):
    resp = client.post('/api/forecast', json={'gpx': GPX_TEXT, 'settings': {'intervalKm': 2}})
    assert resp.status_code == 200
    assert resp.get_json()['forecasts'][-1]['route_point']['elevation'] == 35


def test_validation_error_is_400(client):
    resp = client.post('/api/forecast', json={'route': ROUTE, 'settings': {'forecastInterval': 500}})
    assert resp.status_code == 400
    assert resp.get_json()['type'] == 'ValidationError'
    assert client.post('/api/forecast', data='nope', content_type='text/plain').status_code == 400


def test_client_rate_limit_returns_429(client):
    for _ in range(3):
        client.get('/api/health')
        client.post('/api/forecast', json={'route': ROUTE, 'settings': SETTINGS})
    resp = client.post('/api/forecast', json={'route': ROUTE, 'settings': SETTINGS})
    assert resp.status_code == 429
    assert int(resp.headers['Retry-After']) >= 1
    other = client.post('/api/forecast', json={'route': ROUTE, 'settings': SETTINGS},
                        headers={'X-Forwarded-For': '203.0.113.7, 10.0.0.1'})
    assert other.status_code == 200


def test_stream_endpoint_emits_sse(client):
    resp = client.post('/api/forecast/stream', json={'route': ROUTE, 'settings': SETTINGS})
    assert resp.status_code == 200
    assert resp.headers['Content-Type'].startswith('text/event-stream')
    body = resp.get_data(as_text=True)
    assert re.findall(r'^event: (\w+)$', body, flags=re.M) == ['progress', 'chunk', 'done']
    done = re.search(r'event: done\ndata: (\{.*\})', body)
    assert json.loads(done.group(1))['total'] == 6


def test_providers_and_health(client):
    providers = client.get('/api/providers').get_json()['providers']
    assert [p['id'] for p in providers] == ['alpha', 'beta', 'gamma']
    assert all(p['configured'] for p in providers)
    health = client.get('/api/health').get_json()
    assert health['status'] == 'ok'
    assert set(health['cache']) >= {'hits', 'misses', 'errors', 'writes', 'hit_rate'}
