"""
Due-task discovery.

One scan: read the newest TaskCreated events, dedupe their task ids, batch-read
the live task objects, and keep those that are PENDING and due. Tasks already
executed or cancelled are gone from the ledger and drop out naturally, so
repeated scans are idempotent.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from autopay.constants import CLOCK_DRIFT_THRESHOLD_MS
from autopay.domain.models import ScheduledTask, TaskStatus
from autopay.domain.protocols import LedgerClient
from autopay.execution.timeouts import call_with_timeout
from autopay.ledger.clock import Clock, SystemClock
from autopay.ledger.escrow import EscrowLedger
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ScanResult:
    due: List[ScheduledTask] = field(default_factory=list)
    events_seen: int = 0
    tasks_live: int = 0
    now_ms: int = 0
    drift_ms: Optional[int] = None


class TaskDiscovery:
    def __init__(
        self,
        client: LedgerClient,
        event_page_limit: int,
        call_timeout_seconds: float = 10.0,
        local_clock: Optional[Clock] = None,
        drift_threshold_ms: int = CLOCK_DRIFT_THRESHOLD_MS,
    ):
        self.client = client
        self.event_page_limit = event_page_limit
        self.call_timeout_seconds = call_timeout_seconds
        self.local_clock = local_clock or SystemClock()
        self.drift_threshold_ms = drift_threshold_ms

    async def reference_time_ms(self) -> Tuple[int, int]:
        """
        Time used for the due check. Returns (now_ms, drift_ms).

        Never later than the ledger clock, which execute_task checks against.
        Within the drift threshold the earlier of the two clocks is used;
        beyond it, ledger time.
        """
        local_now = self.local_clock.now_ms()
        ledger_now = await call_with_timeout(
            self.client.get_ledger_time_ms(), self.call_timeout_seconds, "get_ledger_time_ms"
        )
        drift_ms, within = EscrowLedger.check_clock_drift(ledger_now, local_now, self.drift_threshold_ms)
        if not within:
            logger.warning(
                "CLOCK_DRIFT_EXCEEDED",
                drift_ms=drift_ms,
                threshold_ms=self.drift_threshold_ms,
                using="ledger_time",
            )
            return ledger_now, drift_ms
        return min(local_now, ledger_now), drift_ms

    async def scan(self) -> ScanResult:
        events = await call_with_timeout(
            self.client.query_task_created_events(self.event_page_limit),
            self.call_timeout_seconds,
            "query_task_created_events",
        )
        task_ids = list(dict.fromkeys(e.task_id for e in events))
        result = ScanResult(events_seen=len(events))
        if not task_ids:
            return result

        tasks = await call_with_timeout(
            self.client.multi_get_tasks(task_ids),
            self.call_timeout_seconds,
            "multi_get_tasks",
        )
        live = [t for t in tasks if t is not None]
        now_ms, drift_ms = await self.reference_time_ms()

        result.tasks_live = len(live)
        result.now_ms = now_ms
        result.drift_ms = drift_ms
        result.due = [t for t in live if t.status == TaskStatus.PENDING and now_ms >= t.execute_at]
        return result
