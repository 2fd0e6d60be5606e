"""
Transaction builders for the escrow entry functions a task sender or admin calls.

The relayer side (execute_task, mark_task_failed) lives in
autopay.execution.composer.
"""
from typing import Union

from autopay.constants import CLOCK_OBJECT_ID
from autopay.ledger.transaction import Transaction
from autopay.ledger.venues import WITHDRAW_FROM_SENDER_TARGET, ProtocolDeployment


class EscrowCalls:
    def __init__(self, deployment: ProtocolDeployment, registry_id: str, gas_budget: int):
        self.deployment = deployment
        self.registry_id = registry_id
        self.gas_budget = gas_budget

    def _new(self, sender: str) -> Transaction:
        tx = Transaction()
        tx.set_sender(sender)
        tx.set_gas_budget(self.gas_budget)
        return tx

    def create_task(
        self,
        sender: str,
        amount: int,
        recipient: str,
        execute_at: int,
        relayer_fee: int,
        metadata: Union[str, bytes] = "",
    ) -> Transaction:
        """Split `amount` from the sender's balance and lock it as a new task."""
        if isinstance(metadata, bytes):
            metadata = metadata.decode("utf-8")
        tx = self._new(sender)
        payment = tx.move_call(WITHDRAW_FROM_SENDER_TARGET, arguments=[tx.pure(amount)])
        tx.move_call(
            self.deployment.autopay_target("create_task"),
            arguments=[
                payment,
                tx.object(self.registry_id),
                tx.pure(recipient),
                tx.pure(execute_at),
                tx.pure(relayer_fee),
                tx.pure(metadata),
                tx.object(CLOCK_OBJECT_ID),
            ],
        )
        return tx

    def cancel_task(self, sender: str, task_id: str) -> Transaction:
        tx = self._new(sender)
        tx.move_call(
            self.deployment.autopay_target("cancel_task"),
            arguments=[tx.object(task_id), tx.object(self.registry_id), tx.object(CLOCK_OBJECT_ID)],
        )
        return tx

    def reschedule_task(self, sender: str, task_id: str, new_execute_at: int) -> Transaction:
        tx = self._new(sender)
        tx.move_call(
            self.deployment.autopay_target("reschedule_task"),
            arguments=[
                tx.object(task_id),
                tx.object(self.registry_id),
                tx.pure(new_execute_at),
                tx.object(CLOCK_OBJECT_ID),
            ],
        )
        return tx

    def admin_call(self, admin: str, function: str, value) -> Transaction:
        """set_paused, set_min_relayer_fee, add_relayer or remove_relayer."""
        tx = self._new(admin)
        tx.move_call(
            self.deployment.autopay_target(function),
            arguments=[tx.object(self.registry_id), tx.pure(value)],
        )
        return tx
