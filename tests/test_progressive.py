import threading

from routecast.errors import UpstreamError
from routecast.models import RoutePoint, WeatherForecast
from routecast.progressive import ProgressiveChunkCoordinator, should_use_progressive, split_chunks
from routecast.retry import RetryPolicy, RetryTimeoutExecutor


def _points(n):
    return [RoutePoint(lat=0.0, lon=0.001 * i, distance_km=float(i)) for i in range(n)]


def _forecast_all(chunk):
    return [WeatherForecast(route_point=p, primary_sample=None) for p in chunk]


def _executor(max_retries=1):
    return RetryTimeoutExecutor(RetryPolicy(max_retries=max_retries, timeout_s=1.0, backoff_s=0.0))


def test_threshold():
    assert not should_use_progressive(100)
    assert should_use_progressive(101)
    assert should_use_progressive(11, threshold=10)


def test_split_chunks_keeps_order():
    chunks = split_chunks(_points(7), 3)
    assert [len(c) for c in chunks] == [3, 3, 1]
    assert [p.distance_km for c in chunks for p in c] == list(range(7))


def test_progress_after_every_chunk():
    seen = []
    coord = ProgressiveChunkCoordinator(_forecast_all, _executor(), chunk_size=2, inter_chunk_delay_s=0)
    result = coord.run(_points(5), on_progress=lambda b: seen.append(b.progress.to_dict()))
    assert [s['current'] for s in seen] == [1, 2, 3]
    assert seen[-1] == {'current': 3, 'total': 3, 'percentage': 100.0}
    assert seen[0]['percentage'] == 33.3
    assert len(result.forecasts) == 5
    assert not result.cancelled and result.error is None


def test_chunks_run_sequentially():
    active = []
    overlap = []
    lock = threading.Lock()

    def process(chunk):
        with lock:
            active.append(1)
            if len(active) > 1:
                overlap.append(1)
        try:
            return _forecast_all(chunk)
        finally:
            with lock:
                active.pop()

    coord = ProgressiveChunkCoordinator(process, _executor(), chunk_size=1, inter_chunk_delay_s=0)
    coord.run(_points(6))
    assert overlap == []


def test_cancel_after_second_of_five_chunks():
    cancel = threading.Event()
    points = _points(10)

    def on_progress(batch):
        if batch.progress.current == 2:
            cancel.set()

    coord = ProgressiveChunkCoordinator(_forecast_all, _executor(), chunk_size=2, inter_chunk_delay_s=0)
    result = coord.run(points, on_progress=on_progress, cancel=cancel)
    assert result.cancelled
    assert result.completed_chunks == 2
    assert result.total_chunks == 5
    assert [f.route_point for f in result.forecasts] == points[:4]


def test_failing_chunk_aborts_with_partial_results():
    calls = []

    def process(chunk):
        calls.append(chunk[0].distance_km)
        if chunk[0].distance_km >= 4:
            raise UpstreamError('provider down')
        return _forecast_all(chunk)

    coord = ProgressiveChunkCoordinator(process, _executor(max_retries=1), chunk_size=2, inter_chunk_delay_s=0)
    result = coord.run(_points(10))
    assert result.error and 'provider down' in result.error
    assert not result.cancelled
    assert len(result.forecasts) == 4
    assert calls == [0.0, 2.0, 4.0, 4.0]


def test_transient_chunk_failure_is_retried():
    failures = {'left': 1}

    def process(chunk):
        if failures['left']:
            failures['left'] -= 1
            raise UpstreamError('blip')
        return _forecast_all(chunk)

    result = ProgressiveChunkCoordinator(process, _executor(), chunk_size=5, inter_chunk_delay_s=0).run(_points(5))
    assert result.error is None
    assert len(result.forecasts) == 5


def test_stream_is_lazy():
    calls = []

    def process(chunk):
        calls.append(1)
        return _forecast_all(chunk)

    gen = ProgressiveChunkCoordinator(process, _executor(), chunk_size=2, inter_chunk_delay_s=0).stream(_points(6))
    assert calls == []
    first = next(gen)
    assert first.index == 0 and len(calls) == 1
    assert len(list(gen)) == 2
