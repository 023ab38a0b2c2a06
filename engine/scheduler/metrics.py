import threading
import time
from collections import defaultdict
from typing import Any, Dict, List


class SchedulerMetrics:
    """
    Run-owned metrics collector.

    Used for:
    - run reports
    - webhook summaries
    - spotting slow targets
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, int] = {}
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.timestamps: Dict[str, float] = {}

    # ---- counters ----
    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    # ---- gauges ----
    def set_gauge(self, name: str, value: int) -> None:
        with self._lock:
            self.gauges[name] = value

    # ---- histograms ----
    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self.histograms[name].append(value)

    # ---- timestamps ----
    def mark_time(self, key: str) -> None:
        with self._lock:
            self.timestamps[key] = time.monotonic()

    def elapsed_since(self, key: str) -> float:
        with self._lock:
            start = self.timestamps.get(key)
        if start is None:
            return 0.0
        return time.monotonic() - start

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histograms": {
                    name: {
                        "count": len(values),
                        "max": max(values) if values else 0.0,
                        "total": round(sum(values), 3),
                    }
                    for name, values in self.histograms.items()
                },
            }
