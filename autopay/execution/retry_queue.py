"""
Per-task retry timers.

At most one live timer per task id: scheduling again cancels and replaces the
previous timer. When a timer fires its entry is removed and the job is handed
to the re-dispatch callback.
"""
import asyncio
import inspect
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from autopay.domain.models import RetryJob
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

RetryCallback = Callable[[RetryJob], Union[None, Awaitable[None]]]


class RetryQueue:
    def __init__(self, on_retry: RetryCallback):
        self._on_retry = on_retry
        self._timers: Dict[str, Tuple[asyncio.TimerHandle, RetryJob]] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule_retry(self, job: RetryJob, delay_ms: int) -> None:
        """Schedule job after delay_ms, replacing any pending retry for the same task."""
        loop = asyncio.get_running_loop()
        existing = self._timers.pop(job.task_id, None)
        if existing is not None:
            existing[0].cancel()
        handle = loop.call_later(max(0, delay_ms) / 1000, self._fire, job.task_id)
        self._timers[job.task_id] = (handle, job)
        logger.debug("Retry scheduled", task_id=job.task_id, attempt=job.attempt, delay_ms=delay_ms)

    def cancel_retry(self, task_id: str) -> bool:
        entry = self._timers.pop(task_id, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def cancel_all(self) -> None:
        for handle, _ in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def pending(self, task_id: str) -> Optional[RetryJob]:
        entry = self._timers.get(task_id)
        return entry[1] if entry else None

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._timers

    def _fire(self, task_id: str) -> None:
        entry = self._timers.pop(task_id, None)
        if entry is None:
            return
        job = entry[1]
        logger.info("Retrying task", task_id=task_id, attempt=job.attempt)
        result = self._on_retry(job)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._running.add(task)
            task.add_done_callback(self._running.discard)
