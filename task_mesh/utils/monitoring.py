"""
Metrics collection and process resource reporting for Task Mesh.
"""

import os
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional

import psutil


class MetricsCollector:
    """
    In-process metrics: counters, gauges and timers.

    Counters may carry tags; a tagged increment also bumps the untagged total
    so dashboards can read either.
    """

    def __init__(self, max_samples: int = 1000):
        self.max_samples = max_samples
        self.counters: Dict[str, float] = defaultdict(float)
        self.tagged_counters: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self.gauges: Dict[str, float] = {}
        self.timers: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @staticmethod
    def _tag_key(tags: Dict[str, str]) -> str:
        return ",".join(f"{k}={v}" for k, v in sorted(tags.items()))

    def increment_counter(self, name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        with self._lock:
            self.counters[name] += value
            if tags:
                self.tagged_counters[name][self._tag_key(tags)] += value

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric value."""
        with self._lock:
            self.gauges[name] = value

    def record_timer(self, name: str, duration_ms: float):
        """Record a timer value."""
        with self._lock:
            samples = self.timers[name]
            samples.append(duration_ms)
            if len(samples) > self.max_samples:
                del samples[:-self.max_samples]

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        """Get current counter value."""
        if tags:
            return self.tagged_counters.get(name, {}).get(self._tag_key(tags), 0.0)
        return self.counters.get(name, 0.0)

    def get_gauge(self, name: str) -> Optional[float]:
        """Get current gauge value."""
        return self.gauges.get(name)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """Get timer statistics."""
        values = self.timers.get(name, [])
        if not values:
            return {"count": 0}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "mean": sum(sorted_values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[min(count - 1, int(count * 0.95))],
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        with self._lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            timer_names = list(self.timers)
        return {
            "counters": counters,
            "gauges": gauges,
            "timers": {name: self.get_timer_stats(name) for name in timer_names},
        }

    def reset_metrics(self):
        """Reset all metrics."""
        with self._lock:
            self.counters.clear()
            self.tagged_counters.clear()
            self.gauges.clear()
            self.timers.clear()


def process_resources() -> Dict[str, float]:
    """Memory and CPU usage of the current process."""
    process = psutil.Process(os.getpid())
    memory = process.memory_info()
    return {
        "memory_rss_mb": round(memory.rss / (1024 * 1024), 2),
        "cpu_percent": process.cpu_percent(interval=None),
        "threads": process.num_threads(),
    }
