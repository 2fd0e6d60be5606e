"""
Atomic settlement composer.

Builds the single transaction that settles a due task:

    plain payment:   execute_task
    yield payment:   execute_task → withdraw → [swap] → transfer every produced handle

execute_task runs first, so a transaction racing another relayer aborts before
any venue is touched. Either every leg commits or none does.

Submission modes:
    direct      relayer is sender and gas owner, one signature
    sponsored   relayer is sender, gas station is gas owner, both sign the same bytes
"""
from dataclasses import dataclass
from typing import List, Optional

from autopay.constants import CLOCK_OBJECT_ID, MAX_ALLOWED_GAS_BUDGET, MIN_GAS_BUDGET
from autopay.domain.models import (
    Network,
    ScheduledTask,
    YieldStrategyRecord,
    validate_address,
)
from autopay.domain.protocols import LedgerClient, Signer
from autopay.exceptions import GasBudgetError, PositionRefError, ValidationError
from autopay.execution.adapters.swap import SwapAdapter, SwapLegResult
from autopay.execution.adapters.withdraw import (
    WithdrawAdapterRegistry,
    WithdrawRequest,
    parse_yield_protocol,
)
from autopay.execution.timeouts import call_with_timeout
from autopay.ledger.transaction import Argument, Transaction, TransactionEffects
from autopay.ledger.venues import ProtocolDeployment
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)


def clamp_gas_budget(configured: int) -> int:
    """Clamp into [MIN_GAS_BUDGET, MAX_ALLOWED_GAS_BUDGET]. Non-integer budgets are rejected, not coerced."""
    if isinstance(configured, bool) or not isinstance(configured, int):
        raise GasBudgetError(f"Gas budget must be an integer, got {configured!r}")
    return max(MIN_GAS_BUDGET, min(MAX_ALLOWED_GAS_BUDGET, configured))


@dataclass
class ComposedSettlement:
    tx: Transaction
    coins_to_transfer: List[Argument]
    swap: Optional[SwapLegResult] = None


class AtomicSettlementComposer:
    def __init__(
        self,
        deployment: ProtocolDeployment,
        registry_id: str,
        network: Network,
        gas_budget_limit: int,
        withdraw_adapters: WithdrawAdapterRegistry,
        swap_adapter: SwapAdapter,
        call_timeout_seconds: float = 10.0,
    ):
        self.deployment = deployment
        self.registry_id = registry_id
        self.network = network
        self.gas_budget = clamp_gas_budget(gas_budget_limit)
        self.withdraw_adapters = withdraw_adapters
        self.swap_adapter = swap_adapter
        self.call_timeout_seconds = call_timeout_seconds

    def _append_execute_task(self, tx: Transaction, task_id: str) -> None:
        tx.move_call(
            self.deployment.execute_task_target,
            arguments=[tx.object(task_id), tx.object(self.registry_id), tx.object(CLOCK_OBJECT_ID)],
        )

    def build_plain_settlement(self, task: ScheduledTask) -> Transaction:
        tx = Transaction()
        self._append_execute_task(tx, task.task_id)
        tx.set_gas_budget(self.gas_budget)
        return tx

    async def build_yield_settlement(self, task: ScheduledTask, record: YieldStrategyRecord) -> ComposedSettlement:
        """
        Raises:
            UnsupportedProtocolError: protocol or swap provider unsupported here
            PositionRefError: record lacks a usable position reference
            ValidationError: malformed addresses, coin types or amounts
            SlippageError: slippage bound unusable
        """
        protocol = parse_yield_protocol(record.selected_protocol)
        if record.position_ref is None:
            raise PositionRefError("Yield strategy missing positionRef (required for withdraw execution)")
        if not record.coin_type or not record.coin_type.strip():
            raise ValidationError("Yield strategy missing coinType (required for withdraw execution)")
        target_address = validate_address(record.target_address)
        coin_type = record.coin_type.strip()

        tx = Transaction()
        self._append_execute_task(tx, task.task_id)

        withdrawn = self.withdraw_adapters.append_withdraw(tx, WithdrawRequest(
            protocol=protocol,
            network=self.network,
            owner_address=record.user_address,
            target_address=target_address,
            amount=record.amount,
            coin_type=coin_type,
            position_ref=record.position_ref,
        ))

        coins: List[Argument] = [withdrawn]
        swap_result = None
        if record.swap_config is not None:
            swap_result = await self.swap_adapter.append_swap(
                tx,
                record.swap_config,
                input_coin=withdrawn,
                input_coin_type=coin_type,
                amount_in=record.amount,
            )
            coins = swap_result.coins_to_transfer

        # Everything the legs produced goes to the target; nothing stays with the relayer
        tx.transfer_objects(coins, target_address)
        tx.set_gas_budget(self.gas_budget)

        logger.info(
            "Yield settlement composed",
            task_id=task.task_id,
            protocol=protocol.value,
            amount=record.amount,
            swap=swap_result is not None,
            transfers=len(coins),
        )
        return ComposedSettlement(tx=tx, coins_to_transfer=coins, swap=swap_result)

    def build_mark_failed(self, task_id: str, reason: str) -> Transaction:
        tx = Transaction()
        tx.move_call(
            self.deployment.autopay_target("mark_task_failed"),
            arguments=[
                tx.object(task_id),
                tx.object(self.registry_id),
                tx.pure(reason),
                tx.object(CLOCK_OBJECT_ID),
            ],
        )
        tx.set_gas_budget(self.gas_budget)
        return tx

    async def submit(
        self,
        tx: Transaction,
        client: LedgerClient,
        relayer: Signer,
        sponsor: Optional[Signer] = None,
    ) -> TransactionEffects:
        """Sign and submit, direct or sponsored."""
        tx.set_sender(relayer.address)
        if sponsor is not None:
            tx.set_gas_owner(sponsor.address)
            tx_bytes = tx.to_bytes()
            signatures = [relayer.sign(tx_bytes), sponsor.sign(tx_bytes)]
            mode = "sponsored"
        else:
            tx.gas_owner = None
            tx_bytes = tx.to_bytes()
            signatures = [relayer.sign(tx_bytes)]
            mode = "direct"

        effects = await call_with_timeout(
            client.execute_transaction(tx_bytes, signatures),
            self.call_timeout_seconds,
            "execute_transaction",
        )
        logger.info(
            "Transaction submitted",
            mode=mode,
            digest=effects.digest,
            status=effects.status,
            gas_used=effects.gas_used,
            error=effects.error,
        )
        return effects
