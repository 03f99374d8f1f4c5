import asyncio
from datetime import timedelta

from game_rewards.config import GameProvider
from game_rewards.database import utcnow
from game_rewards.metrics import (
    MetricEntry,
    MetricsRecorder,
    SqlMetricsSink,
    get_dashboard_stats,
    get_provider_metrics,
)
from game_rewards.models import WebhookMetric


class ListSink:
    def __init__(self, failures: int = 0):
        self.batches = []
        self.failures = failures

    def write_batch(self, entries):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("metrics store unavailable")
        self.batches.append(list(entries))


def _entry(n: int = 0, success: bool = True) -> MetricEntry:
    return MetricEntry(provider="gamezop", success=success, latency_ms=10 + n, points_credited=n)


def test_record_buffers_until_flush():
    sink = ListSink()
    recorder = MetricsRecorder(sink, flush_threshold=3)
    recorder.record(_entry(1))
    recorder.record(_entry(2))
    assert recorder.pending == 2
    assert sink.batches == []

    assert asyncio.run(recorder.flush()) == 2
    assert recorder.pending == 0
    assert [e.points_credited for e in sink.batches[0]] == [1, 2]


def test_failed_flush_requeues_in_order():
    sink = ListSink(failures=1)
    recorder = MetricsRecorder(sink)
    recorder.record(_entry(1))
    recorder.record(_entry(2))

    assert asyncio.run(recorder.flush()) == 0
    assert recorder.pending == 2
    recorder.record(_entry(3))

    assert asyncio.run(recorder.flush()) == 3
    assert [e.points_credited for e in sink.batches[0]] == [1, 2, 3]


def test_buffer_is_bounded():
    recorder = MetricsRecorder(ListSink(), flush_threshold=2, max_buffer=5)
    for n in range(8):
        recorder.record(_entry(n))
    assert recorder.pending == 5


def test_threshold_wakes_worker_and_close_flushes():
    sink = ListSink()

    async def scenario():
        recorder = MetricsRecorder(sink, flush_threshold=3, flush_interval_seconds=60)
        recorder.start()
        for n in range(3):
            recorder.record(_entry(n))
        for _ in range(50):
            if sink.batches:
                break
            await asyncio.sleep(0.01)
        assert len(sink.batches) == 1

        # Below the threshold nothing is written until shutdown
        recorder.record(_entry(9))
        await asyncio.sleep(0.05)
        assert len(sink.batches) == 1
        await recorder.aclose()
        return recorder

    recorder = asyncio.run(scenario())
    assert recorder.pending == 0
    assert [e.points_credited for e in sink.batches[1]] == [9]


def test_sql_sink_and_aggregation(session_factory):
    sink = SqlMetricsSink(session_factory)
    sink.write_batch([
        _entry(10),
        _entry(20),
        MetricEntry(provider="gamezop", success=False, latency_ms=40, rejected=True),
        MetricEntry(provider="adjoe", success=True, latency_ms=5, points_credited=3),
    ])

    start = utcnow() - timedelta(hours=1)
    with session_factory() as db:
        assert db.query(WebhookMetric).count() == 4
        metrics = get_provider_metrics(db, GameProvider.GAMEZOP, start)
        assert metrics.total_webhooks == 3
        assert metrics.successful_webhooks == 2
        assert metrics.failed_webhooks == 1
        assert metrics.rejected_webhooks == 1
        assert metrics.total_points_credited == 30
        assert metrics.avg_processing_time_ms == round((20 + 30 + 40) / 3)
        assert metrics.success_rate == 67

        stats = get_dashboard_stats(db, hours=24)
        assert stats["totalWebhooks"] == 4
        assert stats["totalPointsCredited"] == 33
        assert stats["rejectedCount"] == 1
        assert stats["byProvider"]["qureka"] == {"webhooks": 0, "successRate": 100, "points": 0}


def test_empty_window_defaults(db):
    metrics = get_provider_metrics(db, GameProvider.QUREKA, utcnow() - timedelta(hours=1))
    assert metrics.total_webhooks == 0
    assert metrics.success_rate == 100
    assert metrics.avg_processing_time_ms == 0
    stats = get_dashboard_stats(db)
    assert stats["successRate"] == 100
    assert stats["totalWebhooks"] == 0
