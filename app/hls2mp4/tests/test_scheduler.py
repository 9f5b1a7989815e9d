"""
并发下载与重试测试
"""

import threading

import pytest

from hls2mp4.core.config import RunConfig
from hls2mp4.core.download_handler import DownloadHandler
from hls2mp4.core.errors import FetchError, RunCancelled
from hls2mp4.core.models import DecryptedChunk, Segment
from hls2mp4.core.progress import EventChannel, EventPhase
from hls2mp4.core.scheduler import SegmentScheduler
from hls2mp4.core.utils import RetryHandler

from conftest import FakeTransport, random_latency

BASE = "https://cdn.example.com/"


def make_segments(count):
    return [Segment(index=i, uri=f"{BASE}seg{i}.ts") for i in range(count)]


def make_resources(count):
    return {f"{BASE}seg{i}.ts": f"segment-{i};".encode() for i in range(count)}


def run_scheduler(transport, segments, concurrency, retries=0, emitter=None):
    cancel_event = threading.Event()
    config = RunConfig(concurrency=concurrency, retries=retries)
    handler = DownloadHandler(config, transport, cancel_event=cancel_event)
    scheduler = SegmentScheduler(concurrency, handler.process, emitter, cancel_event)
    received = []
    scheduler.run(segments, received.append)
    return scheduler, received


@pytest.mark.parametrize("concurrency", [1, 3, 8])
def test_concurrency_bound(concurrency):
    """任意时刻进行中的请求不超过并发数，每个片段恰好请求一次"""
    count = 24
    transport = FakeTransport(make_resources(count), latency=random_latency(0.01))

    scheduler, received = run_scheduler(transport, make_segments(count), concurrency)

    assert transport.max_in_flight <= concurrency
    assert scheduler.max_in_flight <= concurrency
    assert scheduler.in_flight == 0
    assert sum(transport.attempts.values()) == count
    assert sorted(chunk.index for chunk in received) == list(range(count))


def test_progress_events_per_segment():
    count = 5
    events = EventChannel()
    run_scheduler(FakeTransport(make_resources(count)), make_segments(count), 2, emitter=events)

    downloads = [e for e in events.drain() if e.phase is EventPhase.DOWNLOAD]
    assert len(downloads) == count
    assert [e.fraction for e in downloads] == [(i + 1) / count for i in range(count)]


def test_transient_failures_within_budget():
    """失败 R 次后成功的片段被接受"""
    count = 4
    failing = f"{BASE}seg2.ts"
    transport = FakeTransport(make_resources(count), failures={failing: 3})

    _, received = run_scheduler(transport, make_segments(count), 2, retries=3)

    assert len(received) == count
    assert transport.attempts[failing] == 4


def test_retry_budget_exhausted():
    """失败 R+1 次的片段使整个任务失败，且最多请求 R+1 次"""
    count = 4
    failing = f"{BASE}seg1.ts"
    transport = FakeTransport(make_resources(count), failures={failing: 10})

    with pytest.raises(FetchError) as exc_info:
        run_scheduler(transport, make_segments(count), 2, retries=2)

    assert exc_info.value.index == 1
    assert exc_info.value.attempts == 3
    assert transport.attempts[failing] == 3


def test_zero_retries_single_attempt():
    failing = f"{BASE}seg0.ts"
    transport = FakeTransport(make_resources(1), failures={failing: 1})

    with pytest.raises(FetchError):
        run_scheduler(transport, make_segments(1), 1, retries=0)
    assert transport.attempts[failing] == 1


def test_sink_called_from_collecting_thread():
    count = 10
    transport = FakeTransport(make_resources(count), latency=random_latency(0.005))
    caller = threading.current_thread()
    threads = set()

    def sink(chunk):
        threads.add(threading.current_thread())

    config = RunConfig(concurrency=4, retries=0)
    scheduler = SegmentScheduler(4, DownloadHandler(config, transport).process)
    scheduler.run(make_segments(count), sink)

    assert threads == {caller}


def test_cancel_before_dispatch():
    cancel_event = threading.Event()
    cancel_event.set()

    def worker(segment):
        return DecryptedChunk(segment.index, b"")

    scheduler = SegmentScheduler(2, worker, cancel_event=cancel_event)
    with pytest.raises(RunCancelled):
        scheduler.run(make_segments(3), lambda chunk: None)
    assert scheduler.in_flight == 0


def test_worker_error_releases_gate():
    def worker(segment):
        raise ValueError("boom")

    scheduler = SegmentScheduler(2, worker)
    with pytest.raises(ValueError):
        scheduler.run(make_segments(4), lambda chunk: None)
    assert scheduler.in_flight == 0
    assert scheduler.cancel_event.is_set()


def test_retry_handler_attempt_count():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise FetchError("temporary")
        return "ok"

    retried = []
    handler = RetryHandler(max_retries=5, retry_on=(FetchError,))
    assert handler.execute_with_retry(flaky, on_retry=lambda n, e: retried.append(n)) == "ok"
    assert len(calls) == 3
    assert retried == [1, 2]


def test_retry_handler_does_not_retry_other_errors():
    calls = []

    def broken():
        calls.append(1)
        raise KeyError("not transient")

    with pytest.raises(KeyError):
        RetryHandler(max_retries=3, retry_on=(FetchError,)).execute_with_retry(broken)
    assert len(calls) == 1


def test_retry_delay_backoff():
    handler = RetryHandler(max_retries=3, retry_delay=0.5)
    assert [handler.delay_for(i) for i in range(3)] == [0.5, 1.0, 2.0]
    assert RetryHandler(max_retries=3).delay_for(2) == 0.0
