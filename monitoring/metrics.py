"""
Monitoring - Pipeline Metrics.

============================================================
PURPOSE
============================================================
In-process metrics for every pipeline stage.

METRICS TRACKED:
- Counters: blocks_processed{network},
  transactions_processed{network,status},
  transactions_filtered{network,reason},
  errors_total{network,error_class},
  alerts_generated{network,level,type},
  messages_published{topic}, messages_dropped{topic},
  stream_events{network,stream}
- Latency: block processing, transaction processing,
  publish duration per topic
- Gauges: current_block{network}, connection_status{network},
  publish_queue_size
- Histogram: risk score (buckets 0.1 .. 1.0)

Rates (tx/s, blocks/h, error rate) come from rolling windows.

============================================================
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)


LabelKey = Tuple[str, ...]

RISK_SCORE_BUCKETS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)


# ============================================================
# METRIC PRIMITIVES
# ============================================================

@dataclass
class LatencyStats:
    """Latency statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        """Average latency in ms."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement."""
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 3),
            "min_ms": round(self.min_ms, 3) if self.count else 0.0,
            "max_ms": round(self.max_ms, 3),
        }


@dataclass
class RollingCounter:
    """Counter with a sliding time window."""

    window_seconds: float = 3600.0
    total: int = 0
    _events: Deque[Tuple[float, int]] = field(default_factory=deque)

    def increment(self, amount: int = 1, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        self.total += amount
        self._events.append((now, amount))
        self._cleanup(now)

    def in_window(self, seconds: Optional[float] = None, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        self._cleanup(now)
        horizon = now - (seconds if seconds is not None else self.window_seconds)
        return sum(c for t, c in self._events if t > horizon)

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._events and self._events[0][0] <= cutoff:
            self._events.popleft()


@dataclass
class Histogram:
    """Cumulative bucket histogram."""

    buckets: Tuple[float, ...] = RISK_SCORE_BUCKETS
    counts: List[int] = field(default_factory=list)
    count: int = 0
    total: float = 0.0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                self.counts[i] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buckets": {str(b): c for b, c in zip(self.buckets, self.counts)},
            "count": self.count,
            "sum": round(self.total, 6),
        }


# ============================================================
# METRICS RECORDER
# ============================================================

class MetricsRecorder:
    """
    Metrics for the ingestion pipeline.

    One instance is shared by every network task; all methods
    are synchronous and cheap so they can be called inline.
    """

    # Rolling window for performance rates
    PERFORMANCE_WINDOW_SECONDS = 300.0

    def __init__(self) -> None:
        self._start_time = datetime.now(timezone.utc)
        self._started = time.monotonic()

        self._counters: Dict[str, Dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, Dict[LabelKey, Any]] = defaultdict(dict)

        self._block_latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._tx_latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._publish_latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._risk_scores: Dict[str, Histogram] = defaultdict(Histogram)

        self._tx_rate = RollingCounter()
        self._block_rate = RollingCounter()
        self._error_rate = RollingCounter()
        self._processing_ms: Deque[Tuple[float, float]] = deque(maxlen=10_000)

    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------

    def _inc(self, name: str, labels: LabelKey, amount: int = 1) -> None:
        self._counters[name][labels] += amount

    def record_block_processed(self, network: str, duration_ms: float) -> None:
        self._inc("blocks_processed", (network,))
        self._block_latency[network].record(duration_ms)
        self._block_rate.increment()

    def record_transaction(self, network: str, status: str, duration_ms: Optional[float] = None) -> None:
        self._inc("transactions_processed", (network, status))
        self._tx_rate.increment()
        if duration_ms is not None:
            self._tx_latency[network].record(duration_ms)
            self._processing_ms.append((time.monotonic(), duration_ms))

    def record_filtered(self, network: str, reason: str) -> None:
        self._inc("transactions_filtered", (network, reason))

    def record_error(self, network: str, error_class: str) -> None:
        self._inc("errors_total", (network, error_class))
        self._error_rate.increment()

    def record_alert(self, network: str, level: str, alert_type: str) -> None:
        self._inc("alerts_generated", (network, level, alert_type))

    def record_stream_event(self, network: str, stream: str) -> None:
        self._inc("stream_events", (network, stream))

    def record_risk_score(self, network: str, score: float) -> None:
        self._risk_scores[network].observe(score)

    def record_publish(self, topic: str, duration_ms: float, count: int = 1) -> None:
        self._inc("messages_published", (topic,), count)
        self._publish_latency[topic].record(duration_ms)

    def record_publish_failure(self, topic: str) -> None:
        self._inc("publish_failures", (topic,))

    def record_drop(self, topic: str) -> None:
        self._inc("messages_dropped", (topic,))
        logger.warning(f"Outbound message dropped for topic {topic}")

    def set_current_block(self, network: str, block_number: int) -> None:
        self._gauges["current_block"][(network,)] = block_number

    def set_connection_status(self, network: str, status: str) -> None:
        self._gauges["connection_status"][(network,)] = status

    def set_queue_size(self, size: int) -> None:
        self._gauges["publish_queue_size"][()] = size

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_counter(self, name: str, *labels: str) -> int:
        """Exact label match, or the sum over all series matching the label prefix."""
        series = self._counters.get(name, {})
        if not labels:
            return sum(series.values())
        return sum(v for k, v in series.items() if k[: len(labels)] == labels)

    def get_gauge(self, name: str, *labels: str) -> Any:
        return self._gauges.get(name, {}).get(tuple(labels))

    def get_risk_histogram(self, network: str) -> Dict[str, Any]:
        return self._risk_scores[network].to_dict()

    def get_performance_metrics(self) -> Dict[str, float]:
        """Rates over the rolling performance window."""
        now = time.monotonic()
        window = self.PERFORMANCE_WINDOW_SECONDS
        elapsed = max(min(now - self._started, window), 1e-9)

        tx_count = self._tx_rate.in_window(window, now)
        error_count = self._error_rate.in_window(window, now)
        blocks_last_hour = self._block_rate.in_window(3600.0, now)
        hour_elapsed = max(min(now - self._started, 3600.0), 1e-9)

        recent = [ms for t, ms in self._processing_ms if t > now - window]
        attempts = tx_count + error_count

        return {
            "processed_tx_per_second": round(tx_count / elapsed, 3),
            "processed_blocks_per_hour": round(blocks_last_hour * 3600.0 / hour_elapsed, 3),
            "error_rate": round(error_count / attempts, 6) if attempts else 0.0,
            "avg_processing_time_ms": round(sum(recent) / len(recent), 3) if recent else 0.0,
        }

    def get_network_metrics(self, network: str) -> Dict[str, Any]:
        return {
            "blocks_processed": self.get_counter("blocks_processed", network),
            "transactions_processed": self.get_counter("transactions_processed", network),
            "transactions_filtered": self.get_counter("transactions_filtered", network),
            "errors": self.get_counter("errors_total", network),
            "alerts": self.get_counter("alerts_generated", network),
            "current_block": self.get_gauge("current_block", network),
            "connection_status": self.get_gauge("connection_status", network),
            "block_latency": self._block_latency[network].to_dict(),
            "tx_latency": self._tx_latency[network].to_dict(),
            "risk_scores": self.get_risk_histogram(network),
        }

    def get_summary(self) -> Dict[str, Any]:
        """Full snapshot of every series."""
        return {
            "start_time": self._start_time.isoformat(),
            "uptime_seconds": round(time.monotonic() - self._started, 3),
            "counters": {
                name: {"|".join(k) or "_": v for k, v in series.items()}
                for name, series in self._counters.items()
            },
            "gauges": {
                name: {"|".join(k) or "_": v for k, v in series.items()}
                for name, series in self._gauges.items()
            },
            "latency": {
                "block": {n: s.to_dict() for n, s in self._block_latency.items()},
                "transaction": {n: s.to_dict() for n, s in self._tx_latency.items()},
                "publish": {t: s.to_dict() for t, s in self._publish_latency.items()},
            },
            "risk_scores": {n: h.to_dict() for n, h in self._risk_scores.items()},
            "performance": self.get_performance_metrics(),
        }
