"""In-process metrics for a single generator run.

Counters track RPC traffic, rejections and retries; gauges hold record counts;
summaries hold durations. Everything lives in memory and is dumped once at the
end of a run, either as JSON or in the Prometheus text format.
"""

from __future__ import annotations

import json
import re
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from ..utils.constants import utc_now

PROMETHEUS_PREFIX = "token_registry"
_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


def prometheus_name(name: str) -> str:
    """Map a dotted metric name onto the Prometheus charset under the registry prefix."""

    sanitized = _INVALID_NAME_CHARS.sub("_", name).strip("_") or "unnamed"
    return f"{PROMETHEUS_PREFIX}_{sanitized}"


@dataclass
class Summary:
    count: int = 0
    total: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0


class MetricsRegistry:
    """Thread-safe: sources report from their own worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._gauges: Dict[str, float] = {}
        self._summaries: Dict[str, Summary] = {}

    def increment(self, name: str, amount: float = 1.0) -> None:
        if not amount:
            return
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return float(self._counters.get(name, 0.0))

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._summaries.setdefault(name, Summary()).add(float(value))

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            counters = {name: float(value) for name, value in self._counters.items()}
            gauges = dict(self._gauges)
            summaries = {
                name: {**asdict(summary), "average": summary.average}
                for name, summary in self._summaries.items()
            }
        return {
            "generated_at": utc_now().isoformat(),
            "counters": counters,
            "gauges": gauges,
            "histograms": summaries,
        }

    def export_prometheus(self) -> str:
        snapshot = self.snapshot()
        lines = []
        for kind in ("counters", "gauges"):
            metric_type = "counter" if kind == "counters" else "gauge"
            for name, value in sorted(snapshot[kind].items()):
                metric = prometheus_name(name)
                lines.append(f"# TYPE {metric} {metric_type}")
                lines.append(f"{metric} {value}")
        for name, stats in sorted(snapshot["histograms"].items()):
            metric = prometheus_name(name)
            lines.append(f"# TYPE {metric} summary")
            lines.append(f"{metric}_count {stats['count']}")
            lines.append(f"{metric}_sum {stats['total']}")
        return "\n".join(lines) + "\n"

    def write_snapshot(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot(), indent=2, sort_keys=True), encoding="utf8")

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._summaries.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry", "Summary", "prometheus_name"]
