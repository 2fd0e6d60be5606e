"""
Optimistic executor.

One cooperative loop at a fixed interval. Each pass scans for due tasks and
tries to settle every one of them; the ledger decides who wins. A settlement
that loses a race to another relayer fails harmlessly and is dropped.

Per due task:
    1. decode metadata (PlainPayment or YieldDirective)
    2. compose the plain or the yield settlement
    3. sign and submit (direct or sponsored)
    4. success → metrics; failure → classify, then retry / drop / quarantine

At most one attempt per task id is in flight at any time. A stop request ends
the loop between passes; in-flight submissions always run to completion.
"""
import asyncio
from typing import Dict, Optional, Set, Tuple, TYPE_CHECKING

from autopay.domain.metadata import YieldDirective, decode_task_metadata
from autopay.domain.models import RetryJob, ScheduledTask, TaskStatus
from autopay.exceptions import PositionRefError
from autopay.execution.error_recovery import ErrorKind, RetryAction
from autopay.execution.retry_queue import RetryQueue
from autopay.execution.timeouts import call_with_timeout
from autopay.ledger.transaction import TransactionEffects
from autopay.monitoring.logger import get_logger

if TYPE_CHECKING:
    from autopay.context import ExecutorContext

logger = get_logger(__name__)

# Outcomes reported by execute_task
OUTCOME_EXECUTED = "executed"
OUTCOME_READ_ONLY = "read_only"
OUTCOME_RETRY = "retry"
OUTCOME_DROPPED = "dropped"
OUTCOME_QUARANTINED = "quarantined"
OUTCOME_SKIPPED = "skipped"


class OptimisticExecutor:
    def __init__(self, ctx: "ExecutorContext"):
        self.ctx = ctx
        self.config = ctx.config.executor
        self.active = False
        self.cycle_count = 0
        self.retry_queue = RetryQueue(self._on_retry)
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight: Set[str] = set()
        # (task_id, execute_at) pairs parked until the task changes on the ledger
        self._quarantined: Set[Tuple[str, int]] = set()

    @property
    def read_only(self) -> bool:
        return self.ctx.relayer is None

    @property
    def running(self) -> bool:
        return self.active

    def is_quarantined(self, task: ScheduledTask) -> bool:
        return (task.task_id, task.execute_at) in self._quarantined

    async def start(self) -> None:
        """Run scan passes until stop() is called."""
        self.active = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Executor started",
            relayer=self.ctx.relayer.address if self.ctx.relayer else None,
            sponsored=self.ctx.sponsor is not None,
            read_only=self.read_only,
            scan_interval_seconds=self.config.scan_interval_seconds,
        )
        try:
            while self.active:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("Error in executor scan", error=str(e), error_type=type(e).__name__)

                if not self.active:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.scan_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Executor loop cancelled")
            raise
        finally:
            self.active = False
            self.retry_queue.cancel_all()
            logger.info("Executor stopped", cycles=self.cycle_count)

    def stop(self) -> None:
        """Stop between passes. Pending retry timers are cancelled."""
        self.active = False
        if self._stop_event is not None:
            self._stop_event.set()
        self.retry_queue.cancel_all()

    async def run_once(self) -> Dict[str, int]:
        """One scan pass. Returns outcome counts for the pass."""
        self.cycle_count += 1
        loop = asyncio.get_running_loop()
        started = loop.time()

        scan = await self.ctx.discovery.scan()
        candidates = []
        skipped = 0
        for task in scan.due:
            if task.task_id in self._in_flight or task.task_id in self.retry_queue or self.is_quarantined(task):
                skipped += 1
                continue
            candidates.append(task)

        semaphore = asyncio.Semaphore(self.config.max_parallel_tasks)

        async def _guarded(task: ScheduledTask) -> str:
            async with semaphore:
                return await self.execute_task(task)

        outcomes = await asyncio.gather(*(_guarded(t) for t in candidates))

        summary = {
            OUTCOME_EXECUTED: 0,
            OUTCOME_READ_ONLY: 0,
            OUTCOME_RETRY: 0,
            OUTCOME_DROPPED: 0,
            OUTCOME_QUARANTINED: 0,
            OUTCOME_SKIPPED: skipped,
        }
        for outcome in outcomes:
            summary[outcome] += 1

        logger.info(
            "SCAN_SUMMARY",
            cycle=self.cycle_count,
            duration_ms=int((loop.time() - started) * 1000),
            events_seen=scan.events_seen,
            tasks_live=scan.tasks_live,
            due=len(scan.due),
            drift_ms=scan.drift_ms,
            pending_retries=len(self.retry_queue),
            quarantined_total=len(self._quarantined),
            **summary,
        )
        return summary

    async def execute_task(self, task: ScheduledTask, attempt: int = 0) -> str:
        """Attempt to settle one due task."""
        if task.task_id in self._in_flight:
            return OUTCOME_SKIPPED

        if self.read_only:
            logger.info(
                "TASK_DUE_READ_ONLY",
                task_id=task.task_id,
                execute_at=task.execute_at,
                amount=task.principal,
                relayer_fee=task.fee_amount,
            )
            return OUTCOME_READ_ONLY

        self._in_flight.add(task.task_id)
        try:
            try:
                effects, protocol = await self._settle(task)
            except Exception as e:
                return await self._handle_failure(task, attempt, e)

            if not effects.succeeded:
                return await self._handle_failure(task, attempt, effects.error or "Unknown failure")

            self._on_success(task, effects, protocol)
            return OUTCOME_EXECUTED
        finally:
            self._in_flight.discard(task.task_id)

    async def _settle(self, task: ScheduledTask) -> Tuple[TransactionEffects, Optional[str]]:
        payload = decode_task_metadata(task.metadata)
        composer = self.ctx.composer

        protocol = None
        if isinstance(payload, YieldDirective):
            record = self.ctx.strategies.get_by_task_id(task.task_id) if self.ctx.strategies else None
            if record is None:
                raise PositionRefError(f"No yield strategy record for task {task.task_id}")
            composed = await composer.build_yield_settlement(task, record)
            tx = composed.tx
            protocol = record.selected_protocol
        else:
            tx = composer.build_plain_settlement(task)

        effects = await composer.submit(tx, self.ctx.client, self.ctx.relayer, self.ctx.sponsor)
        return effects, protocol

    def _on_success(self, task: ScheduledTask, effects: TransactionEffects, protocol: Optional[str]) -> None:
        delay_ms = self.ctx.clock.now_ms() - task.execute_at
        self.ctx.metrics.record_execution(delay_ms, effects.gas_used)
        self.retry_queue.cancel_retry(task.task_id)

        if protocol is not None and self.ctx.strategies is not None:
            # Funds have left the venue
            self.ctx.strategies.update_current_protocol(task.task_id, None)

        logger.info(
            "TASK_EXECUTED",
            task_id=task.task_id,
            digest=effects.digest,
            amount=task.principal,
            relayer_fee=task.fee_amount,
            protocol=protocol,
            delay_ms=delay_ms,
            gas_used=effects.gas_used,
        )

    async def _handle_failure(self, task: ScheduledTask, attempt: int, err) -> str:
        kind = self.ctx.classifier.classify(err)
        decision = self.ctx.retry_policy.decide(kind, attempt)
        self.ctx.metrics.record_failure(kind.value)
        error = str(err)
        error_type = type(err).__name__ if not isinstance(err, str) else "EffectsError"

        if decision.action == RetryAction.RETRY:
            job = RetryJob(
                task_id=task.task_id,
                attempt=attempt + 1,
                execute_at_ms=self.ctx.clock.now_ms() + decision.delay_ms,
            )
            self.retry_queue.schedule_retry(job, decision.delay_ms)
            self.ctx.metrics.record_retry_scheduled()
            logger.warning(
                "TASK_RETRY_SCHEDULED",
                task_id=task.task_id,
                kind=kind.value,
                attempt=job.attempt,
                delay_ms=decision.delay_ms,
                error=error,
            )
            return OUTCOME_RETRY

        if decision.action == RetryAction.QUARANTINE:
            self._quarantined.add((task.task_id, task.execute_at))
            if kind == ErrorKind.SECURITY:
                self.ctx.alerts.alert_security_failure(task.task_id, error, error_type)
                if self.config.mark_failed_on_security_error:
                    await self._mark_failed(task, error)
            else:
                self.ctx.alerts.alert_task_quarantined(task.task_id, error, kind.value)
            logger.error(
                "TASK_QUARANTINED",
                task_id=task.task_id,
                kind=kind.value,
                error=error,
                error_type=error_type,
            )
            return OUTCOME_QUARANTINED

        if kind in (ErrorKind.OBJECT_NOT_FOUND, ErrorKind.INVALID_STATUS):
            logger.info("TASK_ALREADY_SETTLED", task_id=task.task_id, kind=kind.value, error=error)
        elif kind == ErrorKind.TIME_NOT_READY:
            # Left for a later scan, which only dispatches once ledger time allows it
            logger.info("TASK_DEFERRED_NOT_READY", task_id=task.task_id, execute_at=task.execute_at, attempts=attempt)
        else:
            logger.warning(
                "RETRIES_EXHAUSTED",
                task_id=task.task_id,
                kind=kind.value,
                attempts=attempt,
                error=error,
            )
            self.ctx.alerts.alert_retries_exhausted(task.task_id, error, kind.value, attempt)
        self.retry_queue.cancel_retry(task.task_id)
        return OUTCOME_DROPPED

    async def _mark_failed(self, task: ScheduledTask, reason: str) -> None:
        """Record a security failure on the ledger. Funds stay locked for the sender."""
        tx = self.ctx.composer.build_mark_failed(task.task_id, reason[:256])
        try:
            effects = await self.ctx.composer.submit(tx, self.ctx.client, self.ctx.relayer, self.ctx.sponsor)
        except Exception as e:
            logger.error(
                "MARK_FAILED_SUBMIT_ERROR",
                task_id=task.task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if effects.succeeded:
            logger.warning("TASK_MARKED_FAILED", task_id=task.task_id, digest=effects.digest)
        else:
            logger.error("MARK_FAILED_REJECTED", task_id=task.task_id, error=effects.error)

    async def _on_retry(self, job: RetryJob) -> None:
        if not self.active and self._stop_event is not None:
            return
        try:
            task = await call_with_timeout(
                self.ctx.client.get_task(job.task_id),
                self.ctx.config.executor.call_timeout_seconds,
                "get_task",
            )
        except Exception as e:
            logger.warning("Retry lookup failed", task_id=job.task_id, error=str(e), error_type=type(e).__name__)
            kind = self.ctx.classifier.classify(e)
            decision = self.ctx.retry_policy.decide(kind, job.attempt)
            if decision.action == RetryAction.RETRY:
                self.retry_queue.schedule_retry(
                    RetryJob(job.task_id, job.attempt + 1, self.ctx.clock.now_ms() + decision.delay_ms),
                    decision.delay_ms,
                )
            return

        if task is None or task.status != TaskStatus.PENDING:
            logger.info("Retry dropped, task no longer pending", task_id=job.task_id, attempt=job.attempt)
            return

        try:
            now_ms, _ = await self.ctx.discovery.reference_time_ms()
        except Exception as e:
            logger.warning("Retry clock read failed", task_id=job.task_id, error=str(e), error_type=type(e).__name__)
            return
        if now_ms < task.execute_at:
            logger.info("Retry deferred, task not due on ledger", task_id=job.task_id, execute_at=task.execute_at, now_ms=now_ms)
            return
        await self.execute_task(task, job.attempt)
