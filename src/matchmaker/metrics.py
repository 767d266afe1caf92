"""Prometheus-compatible metrics for signaling server observability.

Tracks matchmaking activity (searches, matches, cancels, time spent in the
waiting slot) and relay traffic (messages forwarded per kind, drops for
recipients that are gone). Metrics are collected in-memory and exposed via
the /metrics endpoint in Prometheus exposition format.

One collector is created per server process and injected into the
components that record into it.
"""

import bisect
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import ClassVar

logger = logging.getLogger(__name__)

# Upper bounds in seconds: 100ms up to 10min spent waiting for a stranger
WAIT_BUCKETS_S: tuple[float, ...] = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0)


def format_labels(labels: dict[str, str]) -> str:
    """Render a label set, e.g. ``{kind="offer"}``; empty string when unlabelled."""
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in sorted(labels.items())) + "}"


@dataclass
class Counter:
    """Monotonically increasing value."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    kind: ClassVar[str] = "counter"

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        self.value += amount

    def samples(self) -> list[str]:
        return [f"{self.name}{format_labels(self.labels)} {self.value}"]


@dataclass
class Gauge:
    """Point-in-time value."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    kind: ClassVar[str] = "gauge"

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount

    def samples(self) -> list[str]:
        return [f"{self.name}{format_labels(self.labels)} {self.value}"]


@dataclass
class Histogram:
    """Fixed-bucket distribution of durations in seconds.

    ``counts`` holds per-bucket observations; the extra last slot collects
    values above the largest bound (the ``+Inf`` bucket).
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    bounds: tuple[float, ...] = WAIT_BUCKETS_S
    counts: list[int] = field(init=False)
    sum: float = 0.0
    count: int = 0

    kind: ClassVar[str] = "histogram"

    def __post_init__(self) -> None:
        self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        self.counts[bisect.bisect_left(self.bounds, value)] += 1

    def cumulative(self) -> list[tuple[float, int]]:
        """``(upper bound, observations <= bound)`` pairs ending with +Inf."""
        running = 0
        pairs: list[tuple[float, int]] = []
        for le, observed in zip((*self.bounds, math.inf), self.counts, strict=True):
            running += observed
            pairs.append((le, running))
        return pairs

    def quantile(self, q: float) -> float | None:
        """Approximate a quantile (0.95 for p95) by interpolating inside its bucket.

        Returns:
            Estimated value in seconds, or None before the first observation.
            Ranks that land in the +Inf bucket report the largest finite bound.
        """
        if self.count == 0:
            return None

        rank = q * self.count
        lower, below = 0.0, 0
        for le, seen in self.cumulative():
            if seen >= rank:
                if math.isinf(le):
                    return lower
                in_bucket = seen - below
                if in_bucket == 0:
                    return le
                return lower + (rank - below) / in_bucket * (le - lower)
            lower, below = le, seen
        return lower

    def samples(self) -> list[str]:
        lines = []
        for le, seen in self.cumulative():
            bound = "+Inf" if math.isinf(le) else str(le)
            lines.append(f"{self.name}_bucket{format_labels({**self.labels, 'le': bound})} {seen}")
        labels = format_labels(self.labels)
        lines.append(f"{self.name}_sum{labels} {self.sum}")
        lines.append(f"{self.name}_count{labels} {self.count}")
        return lines


Metric = Counter | Gauge | Histogram

RELAY_KINDS = ("offer", "answer", "ice-candidate")


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output."""

    def __init__(self) -> None:
        """Initialize metrics collector."""
        self._lock = threading.RLock()

        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_matchmaking_metrics()
        self._init_relay_metrics()
        self._init_connection_metrics()

        logger.info("MetricsCollector initialized")

    def _init_matchmaking_metrics(self) -> None:
        """Initialize pairing pool metrics."""
        self._counters["searches_total"] = Counter(
            name="searches_total",
            help="Total number of search requests",
        )
        self._counters["matches_total"] = Counter(
            name="matches_total",
            help="Total number of pairings formed",
        )
        self._counters["search_cancels_total"] = Counter(
            name="search_cancels_total",
            help="Total number of cancels that cleared the waiting slot",
        )
        self._gauges["waiting_participants"] = Gauge(
            name="waiting_participants",
            help="Participants currently in the waiting slot (0 or 1)",
        )
        self._histograms["match_wait_seconds"] = Histogram(
            name="match_wait_seconds",
            help="Time the waiting participant spent in the slot before pairing",
        )

    def _init_relay_metrics(self) -> None:
        """Initialize relay traffic metrics (one series per message kind)."""
        for kind in RELAY_KINDS:
            key = kind.replace("-", "_")
            self._counters[f"relayed_{key}"] = Counter(
                name="relayed_messages_total",
                help="Total number of negotiation messages delivered",
                labels={"kind": kind},
            )
            self._counters[f"dropped_{key}"] = Counter(
                name="relay_drops_total",
                help="Total number of negotiation messages dropped (recipient gone)",
                labels={"kind": kind},
            )
        self._counters["leaves_total"] = Counter(
            name="leaves_total",
            help="Total number of departures announced",
        )

    def _init_connection_metrics(self) -> None:
        """Initialize connection lifecycle metrics."""
        self._gauges["connections_active"] = Gauge(
            name="connections_active",
            help="Number of connected clients",
        )
        self._counters["connections_total"] = Counter(
            name="connections_total",
            help="Total number of accepted connections",
        )
        self._counters["protocol_errors_total"] = Counter(
            name="protocol_errors_total",
            help="Total number of malformed client frames",
        )

    # === Matchmaking ===

    def record_search(self, waiting: bool) -> None:
        """Record a search request.

        Args:
            waiting: Whether the waiting slot is occupied afterwards
        """
        with self._lock:
            self._counters["searches_total"].inc()
            self._gauges["waiting_participants"].set(1.0 if waiting else 0.0)

    def record_match(self, waited_seconds: float) -> None:
        """Record a pairing and how long the waiter spent in the slot."""
        with self._lock:
            self._counters["matches_total"].inc()
            self._gauges["waiting_participants"].set(0.0)
            self._histograms["match_wait_seconds"].observe(waited_seconds)

    def record_slot_cleared(self) -> None:
        """Record that a cancel or disconnect emptied the waiting slot."""
        with self._lock:
            self._counters["search_cancels_total"].inc()
            self._gauges["waiting_participants"].set(0.0)

    # === Relay ===

    def record_relay(self, kind: str, delivered: bool) -> None:
        """Record one relayed negotiation message."""
        key = kind.replace("-", "_")
        with self._lock:
            counter = self._counters.get(f"relayed_{key}" if delivered else f"dropped_{key}")
            if counter is not None:
                counter.inc()

    def record_leave(self) -> None:
        """Record a departure broadcast."""
        with self._lock:
            self._counters["leaves_total"].inc()

    # === Connections ===

    def record_connection_open(self) -> None:
        """Record an accepted connection."""
        with self._lock:
            self._counters["connections_total"].inc()
            self._gauges["connections_active"].inc()

    def record_connection_closed(self) -> None:
        """Record a closed connection."""
        with self._lock:
            self._gauges["connections_active"].dec()

    def record_protocol_error(self) -> None:
        """Record a malformed client frame."""
        with self._lock:
            self._counters["protocol_errors_total"].inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Render every series in Prometheus text exposition format.

        Series sharing a name (labelled counters) are grouped under a single
        HELP/TYPE header.
        """
        with self._lock:
            families: dict[str, list[Metric]] = {}
            for metric in (
                *self._counters.values(),
                *self._gauges.values(),
                *self._histograms.values(),
            ):
                families.setdefault(metric.name, []).append(metric)

            lines: list[str] = []
            for name, series in families.items():
                lines.append(f"# HELP {name} {series[0].help}")
                lines.append(f"# TYPE {name} {series[0].kind}")
                for metric in series:
                    lines.extend(metric.samples())
            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for monitoring dashboards."""
        with self._lock:
            wait_hist = self._histograms["match_wait_seconds"]
            summary: dict[str, float | None] = {
                "searches_total": self._counters["searches_total"].value,
                "matches_total": self._counters["matches_total"].value,
                "search_cancels_total": self._counters["search_cancels_total"].value,
                "waiting_participants": self._gauges["waiting_participants"].value,
                "match_wait_p50_s": wait_hist.quantile(0.50),
                "match_wait_p95_s": wait_hist.quantile(0.95),
                "connections_active": self._gauges["connections_active"].value,
                "connections_total": self._counters["connections_total"].value,
                "leaves_total": self._counters["leaves_total"].value,
                "protocol_errors_total": self._counters["protocol_errors_total"].value,
            }
            for kind in RELAY_KINDS:
                key = kind.replace("-", "_")
                summary[f"relayed_{key}"] = self._counters[f"relayed_{key}"].value
                summary[f"dropped_{key}"] = self._counters[f"dropped_{key}"].value
            return summary
