"""Prometheus-compatible metrics for gateway observability.

Tracks conversation lifecycle (starts, rejections, upstream failures,
durations), audio forwarding volume and teardown errors. Metrics live in
memory and are exposed on the health server's /metrics endpoint in
Prometheus exposition format.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Upper bounds in seconds; covers a quick reconnect up to an hour-long lesson
DURATION_BUCKETS: tuple[float, ...] = (1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 3600.0)
START_LATENCY_BUCKETS: tuple[float, ...] = (0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0)


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    name: str
    help: str
    bounds: tuple[float, ...]
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        # One extra slot for +Inf
        self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        """Record an observation (in seconds)."""
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
        self.counts[-1] += 1


class MetricsCollector:
    """Thread-safe gateway metrics collector.

    Counters and gauges are plain floats keyed by metric name.
    """

    COUNTERS: dict[str, str] = {
        "conversations_started_total": "Conversations that reached streaming",
        "conversations_rejected_total": "Start requests rejected at capacity",
        "upstream_failures_total": "Start attempts failed by a remote service",
        "audio_frames_forwarded_total": "Inbound audio frames handed to the voice service",
        "audio_frames_dropped_total": "Inbound audio frames dropped",
        "audio_responses_total": "Audio response payloads sent to clients",
        "protocol_errors_total": "Malformed or unknown inbound messages",
        "teardown_errors_total": "Teardown steps that failed",
    }

    GAUGES: dict[str, str] = {
        "connections_active": "Open client connections",
        "sessions_active": "Sessions holding a slot in the global session set",
    }

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters: dict[str, float] = dict.fromkeys(self.COUNTERS, 0.0)
        self._gauges: dict[str, float] = dict.fromkeys(self.GAUGES, 0.0)
        self._histograms: dict[str, Histogram] = {
            "session_duration_seconds": Histogram(
                name="session_duration_seconds",
                help="Conversation duration in seconds",
                bounds=DURATION_BUCKETS,
            ),
            "session_start_seconds": Histogram(
                name="session_start_seconds",
                help="Time to allocate room and voice sessions",
                bounds=START_LATENCY_BUCKETS,
            ),
        }

    def inc(self, name: str, amount: float = 1.0) -> None:
        """Increment a counter.

        Raises:
            KeyError: If the counter is unknown
        """
        with self._lock:
            if name not in self._counters:
                raise KeyError(f"Unknown counter: {name}")
            self._counters[name] += amount

    def set_gauge(self, name: str, value: float) -> None:
        """Set a gauge value.

        Raises:
            KeyError: If the gauge is unknown
        """
        with self._lock:
            if name not in self._gauges:
                raise KeyError(f"Unknown gauge: {name}")
            self._gauges[name] = float(value)

    def observe(self, name: str, value: float) -> None:
        """Record a histogram observation."""
        with self._lock:
            self._histograms[name].observe(value)

    def value(self, name: str) -> float:
        """Current value of a counter or gauge."""
        with self._lock:
            if name in self._counters:
                return self._counters[name]
            return self._gauges[name]

    def histogram(self, name: str) -> Histogram:
        """Return a histogram by name."""
        return self._histograms[name]

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format."""
        with self._lock:
            lines: list[str] = []

            for name, value in self._counters.items():
                lines.append(f"# HELP {name} {self.COUNTERS[name]}")
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {value}")

            for name, value in self._gauges.items():
                lines.append(f"# HELP {name} {self.GAUGES[name]}")
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{name} {value}")

            for hist in self._histograms.values():
                lines.append(f"# HELP {hist.name} {hist.help}")
                lines.append(f"# TYPE {hist.name} histogram")
                for bound, count in zip(hist.bounds, hist.counts, strict=False):
                    lines.append(f'{hist.name}_bucket{{le="{bound}"}} {count}')
                lines.append(f'{hist.name}_bucket{{le="+Inf"}} {hist.counts[-1]}')
                lines.append(f"{hist.name}_sum {hist.sum}")
                lines.append(f"{hist.name}_count {hist.count}")

            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float]:
        """Counters and gauges as a flat dict for JSON responses."""
        with self._lock:
            return {**self._counters, **self._gauges}


_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
                logger.info("MetricsCollector initialized")

    return _metrics_collector
