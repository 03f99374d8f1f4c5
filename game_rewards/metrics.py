"""
Callback outcome metrics.

Outcomes are buffered in memory and written in batches so that the response
to a provider never waits on a metrics write. A failed batch goes back to the
front of the buffer and is retried on the next flush; the final flush runs
when the application shuts down.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from game_rewards.config import GameProvider
from game_rewards.database import utcnow
from game_rewards.logging_config import get_logger
from game_rewards.models import WebhookMetric


logger = get_logger(__name__)


@dataclass
class MetricEntry:
    provider: str
    success: bool
    latency_ms: float
    rejected: bool = False
    points_credited: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ProviderMetrics:
    provider: str
    total_webhooks: int
    successful_webhooks: int
    failed_webhooks: int
    rejected_webhooks: int
    avg_processing_time_ms: float
    total_points_credited: int
    success_rate: float
    period_start: datetime
    period_end: datetime


class MetricsSink(Protocol):
    def write_batch(self, entries: list[MetricEntry]) -> None:
        ...


class SqlMetricsSink:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def write_batch(self, entries: list[MetricEntry]) -> None:
        with self.session_factory() as db:
            db.add_all(WebhookMetric(**asdict(entry)) for entry in entries)
            db.commit()


class MetricsRecorder:
    def __init__(
        self,
        sink: MetricsSink,
        flush_threshold: int = 100,
        max_buffer: int = 10000,
        flush_interval_seconds: float = 5.0,
    ):
        self.sink = sink
        self.flush_threshold = flush_threshold
        self.max_buffer = max(max_buffer, flush_threshold)
        self.flush_interval_seconds = flush_interval_seconds
        self._buffer: list[MetricEntry] = []
        self._flush_requested: asyncio.Event | None = None
        self._flush_lock: asyncio.Lock | None = None
        self._worker: asyncio.Task | None = None
        self._stopping = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, entry: MetricEntry) -> None:
        """
        Buffer one outcome. Never blocks on I/O.
        """
        self._buffer.append(entry)
        self._enforce_bound()
        if len(self._buffer) >= self.flush_threshold and self._flush_requested is not None:
            self._flush_requested.set()

    async def flush(self) -> int:
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = self._buffer
            self._buffer = []
            try:
                await asyncio.to_thread(self.sink.write_batch, batch)
            except Exception as exc:  # noqa: BLE001
                self._buffer[:0] = batch
                self._enforce_bound()
                logger.warning("Metrics flush failed, re-queued %s entries: %s", len(batch), exc)
                return 0
            logger.debug("Flushed %s metric entries", len(batch))
            return len(batch)

    def start(self) -> None:
        self._flush_requested = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._stopping = False
        self._worker = asyncio.create_task(self._run())

    async def aclose(self) -> None:
        self._stopping = True
        if self._worker is not None:
            self._flush_requested.set()
            await self._worker
            self._worker = None
        flushed = await self.flush()
        if self._buffer:
            logger.error("Shutdown flush failed, %s metric entries were not persisted", len(self._buffer))
        else:
            logger.info("Shutdown flush wrote %s metric entries", flushed)

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await asyncio.wait_for(self._flush_requested.wait(), timeout=self.flush_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._flush_requested.clear()
            await self.flush()

    def _enforce_bound(self) -> None:
        overflow = len(self._buffer) - self.max_buffer
        if overflow > 0:
            del self._buffer[:overflow]
            logger.error("Metrics buffer full, dropped %s oldest entries", overflow)


def get_provider_metrics(
    db: Session,
    provider: GameProvider,
    start: datetime,
    end: Optional[datetime] = None,
) -> ProviderMetrics:
    """
    Aggregate persisted metrics for one provider over ``[start, end]``.

    An empty window reports 100% success and zero counts.
    """
    end = end or utcnow()
    rows = (
        db.query(WebhookMetric)
        .filter(WebhookMetric.provider == provider.value)
        .filter(WebhookMetric.timestamp >= start)
        .filter(WebhookMetric.timestamp <= end)
        .all()
    )
    total = len(rows)
    successful = sum(1 for r in rows if r.success)
    return ProviderMetrics(
        provider=provider.value,
        total_webhooks=total,
        successful_webhooks=successful,
        failed_webhooks=total - successful,
        rejected_webhooks=sum(1 for r in rows if r.rejected),
        avg_processing_time_ms=round(sum(r.latency_ms for r in rows) / total) if total else 0,
        total_points_credited=sum(r.points_credited or 0 for r in rows),
        success_rate=round(successful / total * 100) if total else 100,
        period_start=start,
        period_end=end,
    )


def get_dashboard_stats(db: Session, hours: int = 24) -> dict:
    end = utcnow()
    start = end - timedelta(hours=hours)
    per_provider = [get_provider_metrics(db, provider, start, end) for provider in GameProvider]
    total = sum(m.total_webhooks for m in per_provider)
    successful = sum(m.successful_webhooks for m in per_provider)
    latency = sum(m.avg_processing_time_ms * m.total_webhooks for m in per_provider)
    return {
        "totalWebhooks": total,
        "successRate": round(successful / total * 100) if total else 100,
        "avgLatencyMs": round(latency / total) if total else 0,
        "totalPointsCredited": sum(m.total_points_credited for m in per_provider),
        "rejectedCount": sum(m.rejected_webhooks for m in per_provider),
        "byProvider": {
            m.provider: {
                "webhooks": m.total_webhooks,
                "successRate": m.success_rate,
                "points": m.total_points_credited,
            }
            for m in per_provider
        },
    }
