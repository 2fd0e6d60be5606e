"""
Relayer execution metrics.
"""
import time
from collections import Counter
from typing import Callable, Dict


class MetricsCollector:
    """
    Counters for executed/failed tasks, execution delay and gas spent.
    """

    def __init__(self, time_fn: Callable[[], float] = time.time):
        self._time_fn = time_fn
        self.uptime_start_ms = int(time_fn() * 1000)
        self.tasks_executed = 0
        self.tasks_failed = 0
        self.total_execution_delay_ms = 0
        self.total_gas_cost = 0
        self.retries_scheduled = 0
        self.failures_by_kind: Counter = Counter()

    def record_execution(self, delay_ms: int, gas_cost: int) -> None:
        """Record a committed settlement. delay_ms is commit time minus execute_at."""
        self.tasks_executed += 1
        self.total_execution_delay_ms += max(0, delay_ms)
        self.total_gas_cost += gas_cost

    def record_failure(self, kind: str) -> None:
        self.tasks_failed += 1
        self.failures_by_kind[kind] += 1

    def record_retry_scheduled(self) -> None:
        self.retries_scheduled += 1

    def snapshot(self) -> Dict:
        uptime_ms = int(self._time_fn() * 1000) - self.uptime_start_ms
        avg_delay_ms = (
            self.total_execution_delay_ms // self.tasks_executed
            if self.tasks_executed > 0
            else 0
        )
        return {
            "uptime_start_ms": self.uptime_start_ms,
            "uptime_ms": uptime_ms,
            "tasks_executed": self.tasks_executed,
            "tasks_failed": self.tasks_failed,
            "failures_by_kind": dict(self.failures_by_kind),
            "retries_scheduled": self.retries_scheduled,
            "total_execution_delay_ms": self.total_execution_delay_ms,
            "avg_delay_ms": avg_delay_ms,
            "total_gas_cost": self.total_gas_cost,
        }
