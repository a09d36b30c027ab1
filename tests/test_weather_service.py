import threading
from datetime import datetime, timezone

import pytest

from routecast.errors import ForecastUnavailableError, ValidationError
from routecast.models import ForecastSettings, RawPoint, Route, SourcePreferences

from conftest import (StubResponse, make_service, provider_of, service_config, straight_route,
                      weather_payload)
from test_route_sampling import GPX_TEXT

START = datetime(2026, 8, 14, 7, tzinfo=timezone.utc)
SETTINGS = ForecastSettings(start_time=START, average_speed_kmh=20.0, interval_km=5.0)
ALL_THREE = SourcePreferences(mode='consensus', primary='alpha', enabled=('alpha', 'beta', 'gamma'))
LON_AT_10_KM = 10.0 / 111.195


def _at_10_km(params):
    return abs(float(params['lon']) - LON_AT_10_KM) < 1e-9


def test_second_identical_request_hits_cache_with_zero_provider_calls(ok_handler):
    service, session = make_service(ok_handler)
    first = service.get_forecast(straight_route(20.0), SETTINGS)
    assert not first.cache_hit
    assert [f.route_point.distance_km for f in first.forecasts] == [0, 5, 10, 15, 20]
    assert len(session.calls) == 5
    second = service.get_forecast(straight_route(20.0), SETTINGS)
    assert second.cache_hit
    assert len(session.calls) == 5
    assert [f.to_dict() for f in second.forecasts] == [f.to_dict() for f in first.forecasts]


def test_estimated_times_attached(ok_handler):
    service, _ = make_service(ok_handler)
    result = service.get_forecast(straight_route(20.0), SETTINGS)
    assert result.forecasts[-1].route_point.estimated_time == START.replace(hour=8)


def test_partial_provider_failure_is_isolated_per_point():
    def handler(url, params):
        if provider_of(url) in ('beta', 'gamma') and _at_10_km(params):
            return StubResponse(500, {})
        return StubResponse(200, weather_payload(temp={'alpha': 18.0, 'beta': 19.0, 'gamma': 20.0}[provider_of(url)]))

    service, _ = make_service(handler)
    result = service.get_forecast(straight_route(20.0), SETTINGS, ALL_THREE)
    assert len(result.forecasts) == 5
    statuses = [f.status for f in result.forecasts]
    assert statuses == ['ok', 'ok', 'partial', 'ok', 'ok']
    broken = result.forecasts[2]
    assert set(broken.errors) == {'beta', 'gamma'}
    assert broken.consensus.fields['temp'].contributing_sources == ('alpha',)
    assert broken.consensus.agreement_score == 100
    healthy = result.forecasts[0]
    assert healthy.consensus.value('temp') == pytest.approx(19.0)
    assert healthy.primary_sample.provider_id == 'alpha'
    assert len(healthy.all_samples) == 3


def test_point_with_no_data_is_failed_but_route_continues():
    def handler(url, params):
        if _at_10_km(params):
            return StubResponse(503, {})
        return StubResponse(200, weather_payload())

    service, session = make_service(handler)
    result = service.get_forecast(straight_route(20.0), SETTINGS, ALL_THREE)
    assert [f.status for f in result.forecasts] == ['ok', 'ok', 'failed', 'ok', 'ok']
    assert result.forecasts[2].primary_sample is None
    # failed points are not pinned in the cache
    calls = len(session.calls)
    assert not service.get_forecast(straight_route(20.0), SETTINGS, ALL_THREE).cache_hit
    assert len(session.calls) > calls


def test_every_point_failing_is_request_level_error():
    service, _ = make_service(lambda url, params: StubResponse(500, {}))
    with pytest.raises(ForecastUnavailableError):
        service.get_forecast(straight_route(20.0), SETTINGS)


def test_auth_errors_are_not_retried():
    calls = []

    def handler(url, params):
        calls.append(url)
        return StubResponse(401, {})

    service, _ = make_service(handler)
    with pytest.raises(ForecastUnavailableError):
        service.get_forecast(straight_route(20.0), SETTINGS)
    assert len(calls) == 5


def test_transient_errors_are_retried_per_provider():
    seen = {}

    def handler(url, params):
        key = (provider_of(url), params['lon'])
        seen[key] = seen.get(key, 0) + 1
        if provider_of(url) == 'beta' and seen[key] == 1:
            return StubResponse(502, {})
        return StubResponse(200, weather_payload())

    service, _ = make_service(handler)
    result = service.get_forecast(straight_route(20.0), SETTINGS, ALL_THREE)
    assert all(f.status == 'ok' for f in result.forecasts)
    assert all(n == 2 for (pid, _), n in seen.items() if pid == 'beta')
    assert all(n == 1 for (pid, _), n in seen.items() if pid != 'beta')


def test_validation_errors():
    service, _ = make_service(lambda url, params: StubResponse(200, weather_payload()))
    with pytest.raises(ValidationError):
        service.get_forecast(Route('tiny', (RawPoint(0.0, 0.0, distance_km=0.0),), 0.0), SETTINGS)
    with pytest.raises(ValidationError):
        service.get_forecast(straight_route(20.0), SETTINGS, SourcePreferences(primary='nope', enabled=('nope',)))


def test_alerts_and_imperial_units():
    service, _ = make_service(lambda url, params: StubResponse(200, weather_payload(temp=35.0, wind_speed=12.0)))
    settings = ForecastSettings(start_time=START, interval_km=10.0, units='imperial')
    result = service.get_forecast(straight_route(20.0), settings)
    f = result.forecasts[0]
    assert f.primary_sample.temp == pytest.approx(95.0)
    assert {a.type for a in f.alerts} == {'wind', 'temperature'}


def test_large_route_goes_through_chunks():
    cfg = service_config(progressive_threshold=3, chunk_size=2)
    service, _ = make_service(lambda url, params: StubResponse(200, weather_payload()), cfg=cfg)
    batches = []
    result = service.get_forecast(straight_route(20.0), SETTINGS, on_progress=batches.append)
    assert [b.progress.current for b in batches] == [1, 2, 3]
    assert [len(b.forecasts) for b in batches] == [2, 2, 1]
    assert len(result.forecasts) == 5
    assert result.complete


def test_cancelled_large_route_returns_partial_and_skips_cache():
    cfg = service_config(progressive_threshold=3, chunk_size=1)
    service, session = make_service(lambda url, params: StubResponse(200, weather_payload()), cfg=cfg)
    cancel = threading.Event()

    def on_progress(batch):
        if batch.progress.current == 2:
            cancel.set()

    result = service.get_forecast(straight_route(20.0), SETTINGS, on_progress=on_progress, cancel=cancel)
    assert result.cancelled
    assert len(result.forecasts) == 2
    assert result.to_dict()['cancelled'] is True
    assert not service.get_forecast(straight_route(20.0), SETTINGS).cache_hit


def test_stream_forecast_events(ok_handler):
    service, _ = make_service(ok_handler)
    events = list(service.stream_forecast(straight_route(20.0), SETTINGS))
    names = [e for e, _ in events]
    assert names == ['progress', 'chunk', 'done']
    assert events[-1][1] == {'cacheHit': False, 'cancelled': False, 'total': 5}
    assert len(events[1][1]['forecasts']) == 5


def test_stream_forecast_reports_errors():
    service, _ = make_service(lambda url, params: StubResponse(500, {}))
    events = list(service.stream_forecast(straight_route(20.0), SETTINGS))
    assert events[-1][0] == 'error'
    assert events[-1][1]['type'] == 'ForecastUnavailableError'


def test_load_route_uses_route_cache(ok_handler):
    service, _ = make_service(ok_handler)
    first = service.load_route(GPX_TEXT)
    assert service.route_cache.stats()['misses'] == 1
    assert service.load_route(GPX_TEXT) == first
    assert service.route_cache.stats()['hits'] == 1


def test_provider_statuses(ok_handler):
    service, _ = make_service(ok_handler)
    assert [s.status for s in service.provider_statuses()] == ['available'] * 3


def test_unexpected_adapter_error_stays_with_its_provider(ok_handler, monkeypatch):
    service, _ = make_service(ok_handler)

    def broken(data, lat, lon):
        raise RuntimeError('adapter bug')

    monkeypatch.setattr(service.providers['beta'], 'parse', broken)
    result = service.get_forecast(straight_route(20.0), SETTINGS, ALL_THREE)
    assert len(result.forecasts) == 5
    assert all(f.status == 'partial' for f in result.forecasts)
    assert all('RuntimeError' in f.errors['beta'] for f in result.forecasts)
    assert result.forecasts[0].consensus.fields['temp'].contributing_sources == ('alpha', 'gamma')


def test_duplicate_enabled_providers_fetched_once(ok_handler):
    prefs = SourcePreferences.from_mapping({'mode': 'consensus', 'primary': 'alpha',
                                            'enabled': ['beta', 'alpha', 'beta']})
    assert prefs.enabled == ('beta', 'alpha')
    assert SourcePreferences(mode='consensus', primary='gamma', enabled=('alpha', 'alpha')).provider_ids() == \
        ('gamma', 'alpha')
    service, session = make_service(ok_handler)
    result = service.get_forecast(straight_route(20.0), SETTINGS, prefs)
    assert len(session.calls) == 10
    assert len(result.forecasts[0].all_samples) == 2


def test_estimated_times_in_requested_timezone(ok_handler):
    service, _ = make_service(ok_handler)
    settings = ForecastSettings(start_time=START, average_speed_kmh=20.0, interval_km=5.0, timezone='Europe/Paris')
    last = service.get_forecast(straight_route(20.0), settings).forecasts[-1].route_point.estimated_time
    assert last == START.replace(hour=8)
    assert last.isoformat() == '2026-08-14T10:00:00+02:00'
