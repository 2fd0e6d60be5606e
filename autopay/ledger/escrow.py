"""
Scheduled escrow state machine.

The EscrowLedger owns the task registry and every ScheduledTask. Each public
operation either completes fully or raises LedgerAbort before mutating state;
the runtime rolls back anything a later command in the same transaction breaks.

Lifecycle:
    create_task        → PENDING (principal + fee locked)
    execute_task       PENDING, unpaused, now ≥ execute_at → principal to recipient,
                       fee to caller, task deleted
    cancel_task        PENDING|FAILED, caller == sender → principal + fee refunded
    reschedule_task    PENDING|FAILED, caller ∈ {sender, admin} → PENDING at new time
    mark_task_failed   PENDING, caller ∈ {admin, authorized relayers} → FAILED

Funds are never released by a failure transition. A deleted task cannot be
executed again: a second execute_task aborts with ObjectNotFound.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from autopay.constants import CLOCK_DRIFT_THRESHOLD_MS
from autopay.domain.models import (
    Funds,
    LedgerEvent,
    ScheduledTask,
    TaskCancelled,
    TaskCreated,
    TaskExecuted,
    TaskFailed,
    TaskRegistry,
    TaskRescheduled,
    TaskStatus,
)
from autopay.exceptions import AbortCode, LedgerAbort
from autopay.ledger.bank import Bank
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)


class InvariantViolation(Exception):
    """Raised when a ledger invariant is broken. Indicates a bug, not bad input."""
    pass


def check_invariant(condition: bool, message: str) -> None:
    """Assert an invariant holds."""
    if not condition:
        logger.critical(f"INVARIANT VIOLATION: {message}")
        raise InvariantViolation(message)


@dataclass
class TxContext:
    """Per-transaction context handed to every ledger operation."""
    sender: str
    timestamp_ms: int
    digest: str = "0x0"
    events: List[LedgerEvent] = field(default_factory=list)
    _ids_created: int = 0

    def emit(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def fresh_id(self) -> str:
        self._ids_created += 1
        seed = f"{self.digest}:{self._ids_created}".encode()
        return "0x" + hashlib.sha256(seed).hexdigest()


class EscrowLedger:
    """Registry plus scheduled tasks. Payouts are credited through the bank."""

    def __init__(self, registry: TaskRegistry, bank: Bank):
        self.registry = registry
        self.bank = bank
        self._tasks: Dict[str, ScheduledTask] = {}

    # ============ USER OPERATIONS ============

    def create_task(
        self,
        ctx: TxContext,
        payment: Funds,
        recipient: str,
        execute_at: int,
        relayer_fee: int,
        metadata: bytes = b"",
    ) -> str:
        """
        Lock payment as principal + fee and register a PENDING task.

        payment is consumed entirely: fee is split off, the remainder is principal.
        """
        if self.registry.paused:
            raise LedgerAbort(AbortCode.CONTRACT_PAUSED)
        if execute_at <= ctx.timestamp_ms:
            raise LedgerAbort(
                AbortCode.INVALID_EXECUTION_TIME,
                f"execute_at {execute_at} is not after now {ctx.timestamp_ms}",
            )
        if relayer_fee < self.registry.min_relayer_fee:
            raise LedgerAbort(
                AbortCode.FEE_TOO_LOW,
                f"fee {relayer_fee} below minimum {self.registry.min_relayer_fee}",
            )
        if payment.value <= relayer_fee:
            raise LedgerAbort(
                AbortCode.INSUFFICIENT_FUNDS,
                f"payment {payment.value} does not cover fee {relayer_fee}",
            )

        fee = payment.split(relayer_fee)
        principal = payment.take_all()
        task = ScheduledTask(
            task_id=ctx.fresh_id(),
            sender=ctx.sender,
            recipient=recipient,
            balance=principal,
            relayer_fee=fee,
            execute_at=execute_at,
            created_at=ctx.timestamp_ms,
            metadata=bytes(metadata),
        )
        check_invariant(task.principal > 0, "created task must hold principal")
        check_invariant(task.execute_at > task.created_at, "execute_at must follow created_at")

        self._tasks[task.task_id] = task
        self.registry.total_tasks_created += 1
        ctx.emit(TaskCreated(
            task_id=task.task_id,
            sender=task.sender,
            recipient=task.recipient,
            execute_at=task.execute_at,
            amount=task.principal,
            created_at=task.created_at,
        ))
        logger.debug("Task created", task_id=task.task_id, amount=task.principal, execute_at=execute_at)
        return task.task_id

    def execute_task(self, ctx: TxContext, task_id: str) -> Tuple[int, int]:
        """
        Release principal to the recipient and the fee to the caller.

        Anyone may call. Returns (principal, fee) paid out.
        """
        task = self._require_task(task_id)
        if self.registry.paused:
            raise LedgerAbort(AbortCode.CONTRACT_PAUSED)
        if task.status != TaskStatus.PENDING:
            raise LedgerAbort(AbortCode.INVALID_STATUS, f"task is {task.status.name}")
        if ctx.timestamp_ms < task.execute_at:
            raise LedgerAbort(
                AbortCode.NOT_READY_YET,
                f"now {ctx.timestamp_ms} < execute_at {task.execute_at}",
            )

        principal = task.principal
        fee = task.fee_amount
        check_invariant(principal > 0, f"pending task {task_id} has no principal")

        self.bank.deposit(task.recipient, task.balance)
        self.bank.deposit(ctx.sender, task.relayer_fee)
        task.status = TaskStatus.EXECUTED
        del self._tasks[task_id]

        self.registry.total_tasks_executed += 1
        self.registry.total_volume += principal
        self.registry.total_fees += fee
        ctx.emit(TaskExecuted(
            task_id=task_id,
            executor=ctx.sender,
            timestamp=ctx.timestamp_ms,
            amount=principal,
            relayer_fee_paid=fee,
        ))
        return principal, fee

    def cancel_task(self, ctx: TxContext, task_id: str) -> int:
        """Refund principal + fee to the sender. Returns the refunded amount."""
        task = self._require_task(task_id)
        if ctx.sender != task.sender:
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "only the task sender may cancel")
        if task.status not in (TaskStatus.PENDING, TaskStatus.FAILED):
            raise LedgerAbort(AbortCode.INVALID_STATUS, f"task is {task.status.name}")

        refund = task.balance.take_all()
        refund.join(task.relayer_fee)
        amount = refund.value
        self.bank.deposit(task.sender, refund)
        task.status = TaskStatus.CANCELLED
        del self._tasks[task_id]

        self.registry.total_tasks_cancelled += 1
        ctx.emit(TaskCancelled(task_id=task_id, sender=ctx.sender, timestamp=ctx.timestamp_ms))
        return amount

    def reschedule_task(self, ctx: TxContext, task_id: str, new_execute_at: int) -> None:
        task = self._require_task(task_id)
        if self.registry.paused:
            raise LedgerAbort(AbortCode.CONTRACT_PAUSED)
        if ctx.sender not in (task.sender, self.registry.admin):
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "only the sender or admin may reschedule")
        if task.status not in (TaskStatus.PENDING, TaskStatus.FAILED):
            raise LedgerAbort(AbortCode.INVALID_STATUS, f"task is {task.status.name}")
        if new_execute_at <= ctx.timestamp_ms:
            raise LedgerAbort(
                AbortCode.INVALID_EXECUTION_TIME,
                f"new execute_at {new_execute_at} is not after now {ctx.timestamp_ms}",
            )

        old_execute_at = task.execute_at
        task.execute_at = new_execute_at
        task.status = TaskStatus.PENDING
        task.last_failure_reason = b""
        ctx.emit(TaskRescheduled(
            task_id=task_id,
            old_execute_at=old_execute_at,
            new_execute_at=new_execute_at,
            timestamp=ctx.timestamp_ms,
        ))

    def mark_task_failed(self, ctx: TxContext, task_id: str, reason: str) -> None:
        """Record a failed attempt. Funds stay locked; only reschedule or cancel move on."""
        task = self._require_task(task_id)
        if not self._is_relayer_authority(ctx.sender):
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "caller may not mark tasks failed")
        if task.status != TaskStatus.PENDING:
            raise LedgerAbort(AbortCode.INVALID_STATUS, f"task is {task.status.name}")

        task.status = TaskStatus.FAILED
        task.attempt_count += 1
        task.last_failure_reason = reason.encode("utf-8")
        self.registry.total_tasks_failed += 1
        ctx.emit(TaskFailed(
            task_id=task_id,
            executor=ctx.sender,
            timestamp=ctx.timestamp_ms,
            reason=reason,
        ))

    # ============ ADMIN OPERATIONS ============

    def set_paused(self, ctx: TxContext, paused: bool) -> None:
        self._require_admin(ctx)
        self.registry.paused = bool(paused)
        logger.info("Registry pause state changed", paused=self.registry.paused, by=ctx.sender)

    def set_min_relayer_fee(self, ctx: TxContext, fee: int) -> None:
        self._require_admin(ctx)
        if fee < 0:
            raise LedgerAbort(AbortCode.FEE_TOO_LOW, "minimum fee cannot be negative")
        self.registry.min_relayer_fee = fee

    def add_relayer(self, ctx: TxContext, relayer: str) -> None:
        self._require_admin(ctx)
        self.registry.authorized_relayers.add(relayer)

    def remove_relayer(self, ctx: TxContext, relayer: str) -> None:
        self._require_admin(ctx)
        self.registry.authorized_relayers.discard(relayer)

    # ============ READ VIEWS ============

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def task_ids(self) -> List[str]:
        return list(self._tasks)

    def is_ready_to_execute(self, task_id: str, now_ms: int) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and not self.registry.paused and task.is_due(now_ms)

    def locked_value(self) -> int:
        """Sum of principal + fee across all live tasks."""
        return sum(t.principal + t.fee_amount for t in self._tasks.values())

    @staticmethod
    def check_clock_drift(
        ledger_time_ms: int,
        reference_time_ms: int,
        threshold_ms: int = CLOCK_DRIFT_THRESHOLD_MS,
    ) -> Tuple[int, bool]:
        """Return (absolute drift, drift within threshold)."""
        drift = abs(ledger_time_ms - reference_time_ms)
        return drift, drift <= threshold_ms

    # ============ INTERNAL ============

    def _require_task(self, task_id: str) -> ScheduledTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"task {task_id} does not exist")
        return task

    def _require_admin(self, ctx: TxContext) -> None:
        if ctx.sender != self.registry.admin:
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "admin only")

    def _is_relayer_authority(self, caller: str) -> bool:
        return caller == self.registry.admin or caller in self.registry.authorized_relayers
