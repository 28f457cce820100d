"""
In-process queue metrics.

Counters:
- jobs_enqueued_total                 rows inserted by producers
- jobs_claimed_total                  rows moved Queued -> Running
- jobs_handled_total{kind,outcome}    handler invocations
- jobs_failed_total{reason}           rows moved to Failed (handler | reported | quarantine)
- claim_errors_total{error}           aborted claim transactions
- domain_conversion_rejected_total    claimed ids outside the DomainJob id range

Histograms:
- claim_duration_seconds              wall time of each claim transaction

Values live in memory per process; ``/api/metrics`` exposes them as
Prometheus text, ``/api/metrics/summary`` as JSON.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from typing import Any

logger = logging.getLogger("rowqueue.metrics")

PROMETHEUS_PREFIX = "rowqueue_"

# Samples kept per histogram series for quantiles.
HISTOGRAM_WINDOW = 1024

_EMPTY_STATS: dict[str, Any] = {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

_LabelSet = tuple[tuple[str, str], ...]
_SeriesKey = tuple[str, _LabelSet]


def _label_set(labels: dict[str, str] | None) -> _LabelSet:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _quantile(sorted_vals: list[float], q: float) -> float:
    # Nearest-rank quantile.
    rank = max(1, math.ceil(q * len(sorted_vals)))
    return sorted_vals[rank - 1]


class _HistogramSeries:
    """Running count/sum/min/max plus the most recent samples for quantiles."""

    __slots__ = ("count", "total", "minimum", "maximum", "window")

    def __init__(self, window_size: int):
        self.count = 0
        self.total = 0.0
        self.minimum = math.inf
        self.maximum = -math.inf
        self.window: deque[float] = deque(maxlen=window_size)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)
        self.window.append(value)

    def stats(self) -> dict[str, Any]:
        if not self.count:
            return _EMPTY_STATS.copy()
        ordered = sorted(self.window)
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count,
            "p50": _quantile(ordered, 0.5),
            "p95": _quantile(ordered, 0.95),
        }


class MetricsCollector:
    """Counters and histograms keyed by name plus a label set.

    Histogram count/sum/min/max cover every observation; p50/p95 are computed
    over the last ``window_size`` samples of each series.
    """

    def __init__(self, window_size: int = HISTOGRAM_WINDOW):
        self.window_size = window_size
        self._counters: dict[_SeriesKey, int] = defaultdict(int)
        self._histograms: dict[_SeriesKey, _HistogramSeries] = {}

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self._counters[(name, _label_set(labels))] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        key = (name, _label_set(labels))
        series = self._histograms.get(key)
        if series is None:
            series = self._histograms[key] = _HistogramSeries(self.window_size)
        series.observe(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self._counters.get((name, _label_set(labels)), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """count / sum / min / max / avg / p50 / p95 for one histogram series."""
        series = self._histograms.get((name, _label_set(labels)))
        return series.stats() if series is not None else _EMPTY_STATS.copy()

    def retained_samples(self, name: str, labels: dict[str, str] | None = None) -> int:
        series = self._histograms.get((name, _label_set(labels)))
        return len(series.window) if series is not None else 0

    def get_all_metrics(self) -> dict[str, Any]:
        """JSON-friendly snapshot; series are keyed ``name{k=v,...}``."""
        return {
            "counters": {self._format_key(*key): value for key, value in self._counters.items()},
            "histograms": {self._format_key(*key): s.stats() for key, s in self._histograms.items()},
        }

    def series(self) -> tuple[dict[_SeriesKey, int], dict[_SeriesKey, dict[str, Any]]]:
        """Raw (counters, histogram stats) keyed by ``(name, label_set)``."""
        return (
            dict(self._counters),
            {key: s.stats() for key, s in self._histograms.items()},
        )

    def reset(self):
        self._counters.clear()
        self._histograms.clear()

    @staticmethod
    def _format_key(name: str, label_set: _LabelSet) -> str:
        if not label_set:
            return name
        return name + "{" + ",".join(f"{k}={v}" for k, v in label_set) + "}"


metrics = MetricsCollector()


# ── Recording helpers ───────────────────────────────────────────


def record_jobs_enqueued(count: int):
    metrics.increment_counter("jobs_enqueued_total", value=count)


def record_jobs_claimed(count: int, duration_seconds: float):
    """
    Record one committed claim transaction.

    Args:
        count: Number of jobs moved to Running (may be 0)
        duration_seconds: Wall time of the claim transaction
    """
    if count:
        metrics.increment_counter("jobs_claimed_total", value=count)
    metrics.observe_histogram("claim_duration_seconds", duration_seconds)


def record_claim_error(error_type: str):
    metrics.increment_counter("claim_errors_total", labels={"error": error_type})


def record_job_handled(kind: str, outcome: str):
    metrics.increment_counter("jobs_handled_total", labels={"kind": kind, "outcome": outcome})


def record_job_failed(reason: str):
    metrics.increment_counter("jobs_failed_total", labels={"reason": reason})


def record_conversion_rejected(count: int = 1):
    metrics.increment_counter("domain_conversion_rejected_total", value=count)


def get_metrics_summary() -> dict:
    return metrics.get_all_metrics()


# ── Prometheus exposition ───────────────────────────────────────


def _prom_labels(label_set: _LabelSet, **extra: str) -> str:
    pairs = [*label_set, *extra.items()]
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


def to_prometheus_text() -> str:
    """Render every series in Prometheus text exposition format.

    One ``# TYPE`` line per family; histograms are exposed as summaries
    (``_count``, ``_sum`` and the 0.5 / 0.95 / 1.0 quantiles).
    """
    counters, histograms = metrics.series()
    lines: list[str] = []

    families: dict[str, list[tuple[_LabelSet, int]]] = defaultdict(list)
    for (name, label_set), value in counters.items():
        families[PROMETHEUS_PREFIX + name].append((label_set, value))
    for family, samples in families.items():
        lines.append(f"# TYPE {family} counter")
        lines.extend(f"{family}{_prom_labels(ls)} {value}" for ls, value in samples)

    summaries: dict[str, list[tuple[_LabelSet, dict[str, Any]]]] = defaultdict(list)
    for (name, label_set), stats in histograms.items():
        summaries[PROMETHEUS_PREFIX + name].append((label_set, stats))
    for family, samples in summaries.items():
        lines.append(f"# TYPE {family} summary")
        for label_set, stats in samples:
            for quantile, stat in (("0.5", "p50"), ("0.95", "p95"), ("1.0", "max")):
                lines.append(f"{family}{_prom_labels(label_set, quantile=quantile)} {stats[stat]:.6f}")
            lines.append(f"{family}_count{_prom_labels(label_set)} {stats['count']}")
            lines.append(f"{family}_sum{_prom_labels(label_set)} {stats['sum']:.6f}")

    return "\n".join(lines) + "\n"
