"""
Local ledger runtime.

Executes signed programmable transactions atomically against an in-process
EscrowLedger, bank and venue set. A transaction either commits every command
and its events, or commits nothing except the gas charge.

Execution steps:
    1. Decode bytes, recover signers (sender and gas owner must both sign)
    2. Check the gas owner can cover the budget
    3. Snapshot state, run commands in order, resolve Result handles
    4. Abort if any produced funds were left unconsumed
    5. On abort restore the snapshot; always charge gas to the gas owner
"""
import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from autopay.constants import (
    CLOCK_OBJECT_ID,
    GAS_BASE_COST,
    GAS_PER_COMMAND,
    NATIVE_ASSET,
)
from autopay.domain.models import (
    EventEnvelope,
    Funds,
    Network,
    ScheduledTask,
    TaskCreated,
    TaskRegistry,
)
from autopay.exceptions import AbortCode, InsufficientGasError, LedgerAbort
from autopay.ledger.bank import Bank
from autopay.ledger.clock import Clock, SystemClock
from autopay.ledger.escrow import EscrowLedger, TxContext
from autopay.ledger.keys import recover_signer
from autopay.ledger.transaction import (
    Argument,
    Input,
    MoveCall,
    NestedResult,
    Result,
    Transaction,
    TransactionEffects,
    TransferObjects,
    transaction_digest,
)
from autopay.ledger.venues import (
    COIN_ZERO_TARGET,
    WITHDRAW_FROM_SENDER_TARGET,
    NaviPools,
    ProtocolDeployment,
    ScallopMarket,
    SuilendMarket,
    SwapPool,
    navi_env_for,
)
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

_MOVED = object()

EntryFunction = Callable[[TxContext, List[Any], Tuple[str, ...]], Tuple[Any, ...]]


@dataclass
class LedgerState:
    """Everything a transaction may mutate. Snapshotted as one unit."""
    escrow: EscrowLedger
    bank: Bank
    suilend: Dict[str, SuilendMarket] = field(default_factory=dict)
    navi: Optional[NaviPools] = None
    scallop: Optional[ScallopMarket] = None
    pools: Dict[str, SwapPool] = field(default_factory=dict)


class LocalLedger:
    """In-process ledger with atomic transaction execution and an event log."""

    def __init__(
        self,
        admin: str,
        *,
        registry_id: str = "0x7e61",
        deployment: Optional[ProtocolDeployment] = None,
        network: Network = Network.TESTNET,
        clock: Optional[Clock] = None,
        min_relayer_fee: int = 0,
        native_asset: str = NATIVE_ASSET,
    ):
        self.deployment = deployment or ProtocolDeployment()
        self.network = network
        self.clock = clock or SystemClock()
        self.native_asset = native_asset
        self.registry_id = registry_id

        bank = Bank()
        registry = TaskRegistry(registry_id=registry_id, admin=admin, min_relayer_fee=min_relayer_fee)
        self.state = LedgerState(
            escrow=EscrowLedger(registry, bank),
            bank=bank,
            suilend={
                self.deployment.suilend_lending_market_id: SuilendMarket(
                    self.deployment.suilend_lending_market_id,
                    self.deployment.suilend_lending_market_type,
                )
            },
            navi=NaviPools(env=navi_env_for(network)),
            scallop=ScallopMarket(self.deployment.scallop_market_id, self.deployment.scallop_version_id),
        )
        self._events: List[EventEnvelope] = []
        self._entry_functions = self._build_entry_functions()

    # ============ SETUP HELPERS ============

    def fund(self, owner: str, amount: int, asset: Optional[str] = None) -> None:
        self.state.bank.mint(owner, asset or self.native_asset, amount)

    def add_swap_pool(self, pool: SwapPool) -> None:
        self.state.pools[pool.pool_id] = pool

    def add_suilend_market(self, market: SuilendMarket) -> None:
        self.state.suilend[market.market_id] = market

    @property
    def suilend_market(self) -> SuilendMarket:
        return self.state.suilend[self.deployment.suilend_lending_market_id]

    @property
    def navi(self) -> NaviPools:
        return self.state.navi

    @property
    def scallop(self) -> ScallopMarket:
        return self.state.scallop

    # ============ READS ============

    def now_ms(self) -> int:
        return self.clock.now_ms()

    def balance_of(self, owner: str, asset: Optional[str] = None) -> int:
        return self.state.bank.balance_of(owner, asset or self.native_asset)

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        task = self.state.escrow.get_task(task_id)
        return copy.deepcopy(task) if task is not None else None

    def multi_get_tasks(self, task_ids: Sequence[str]) -> List[Optional[ScheduledTask]]:
        return [self.get_task(task_id) for task_id in task_ids]

    @property
    def registry(self) -> TaskRegistry:
        return copy.deepcopy(self.state.escrow.registry)

    def get_pool(self, pool_id: str) -> Optional[SwapPool]:
        return self.state.pools.get(pool_id)

    def preswap(self, pool_id: str, a2b: bool, amount_in: int) -> int:
        pool = self.state.pools.get(pool_id)
        if pool is None:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"pool {pool_id}", module="router")
        return pool.preswap(a2b, amount_in)

    def query_events(
        self,
        event_type: Optional[str] = None,
        limit: int = 50,
        descending: bool = True,
    ) -> List[EventEnvelope]:
        events = [e for e in self._events if event_type is None or e.event.event_type == event_type]
        if descending:
            events = list(reversed(events))
        return events[:limit]

    def check_clock_drift(self, reference_time_ms: int, threshold_ms: Optional[int] = None) -> Tuple[int, bool]:
        if threshold_ms is None:
            return EscrowLedger.check_clock_drift(self.now_ms(), reference_time_ms)
        return EscrowLedger.check_clock_drift(self.now_ms(), reference_time_ms, threshold_ms)

    # ============ EXECUTION ============

    def execute(self, tx_bytes: bytes, signatures: Sequence[bytes]) -> TransactionEffects:
        """
        Verify and execute a signed transaction.

        Raises (rejected before execution, nothing charged):
            ValidationError: malformed bytes
            LedgerAbort(InvalidSignature): sender or gas owner did not sign
            InsufficientGasError: gas owner cannot cover the budget
        """
        digest = transaction_digest(tx_bytes)
        tx = Transaction.from_bytes(tx_bytes)
        gas_owner = tx.effective_gas_owner

        signers = {recover_signer(tx_bytes, blob) for blob in signatures}
        missing = {tx.sender, gas_owner} - signers
        if missing:
            raise LedgerAbort(
                AbortCode.INVALID_SIGNATURE,
                f"missing signature for {sorted(missing)}",
                module="authority",
            )

        gas_balance = self.state.bank.balance_of(gas_owner, self.native_asset)
        if gas_balance < tx.gas_budget:
            raise InsufficientGasError(
                f"InsufficientGas: gas owner {gas_owner} balance {gas_balance} below budget {tx.gas_budget}"
            )

        # Reserve the full budget up front; commands cannot spend it.
        gas_coin = self.state.bank.withdraw(gas_owner, self.native_asset, tx.gas_budget)
        required_gas = GAS_BASE_COST + GAS_PER_COMMAND * len(tx.commands)
        if required_gas > tx.gas_budget:
            return TransactionEffects(
                digest=digest,
                status="failure",
                gas_used=tx.gas_budget,
                error=f"InsufficientGas: budget {tx.gas_budget} below required {required_gas}",
            )

        ctx = TxContext(sender=tx.sender, timestamp_ms=self.now_ms(), digest=digest)
        snapshot = copy.deepcopy(self.state)
        try:
            self._run_commands(ctx, tx)
        except LedgerAbort as e:
            self.state = snapshot
            self._refund_gas(gas_owner, gas_coin, required_gas)
            logger.info("Transaction aborted", digest=digest, error=str(e))
            return TransactionEffects(digest=digest, status="failure", gas_used=required_gas, error=str(e))
        except Exception:
            self.state = snapshot
            self._refund_gas(gas_owner, gas_coin, 0)
            raise

        self._refund_gas(gas_owner, gas_coin, required_gas)
        envelopes = []
        for event in ctx.events:
            envelope = EventEnvelope(seq=len(self._events), tx_digest=digest, event=event)
            self._events.append(envelope)
            envelopes.append(envelope)
        created = [e.task_id for e in ctx.events if isinstance(e, TaskCreated)]
        return TransactionEffects(
            digest=digest,
            status="success",
            gas_used=required_gas,
            events=envelopes,
            created=created,
        )

    def _refund_gas(self, gas_owner: str, gas_coin: Funds, gas_used: int) -> None:
        """Return the unused part of the reserved budget; gas_used is burned."""
        self.state.bank.deposit(gas_owner, gas_coin.split(gas_coin.value - gas_used))

    def _run_commands(self, ctx: TxContext, tx: Transaction) -> None:
        results: List[List[Any]] = []
        for command in tx.commands:
            if isinstance(command, MoveCall):
                entry = self._entry_functions.get(command.target)
                if entry is None:
                    raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"no function {command.target}", module="vm")
                args = [self._take(results, a) for a in command.arguments]
                outputs = entry(ctx, args, command.type_arguments)
                results.append(list(outputs))
            elif isinstance(command, TransferObjects):
                recipient = command.recipient.value
                for arg in command.objects:
                    value = self._take(results, arg)
                    if not isinstance(value, Funds):
                        raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "only funds can be transferred", module="vm")
                    self.state.bank.deposit(recipient, value)
                results.append([])

        for index, outputs in enumerate(results):
            for sub, value in enumerate(outputs):
                if isinstance(value, Funds):
                    raise LedgerAbort(
                        AbortCode.UNUSED_VALUE,
                        f"result {index}.{sub} ({value.value} {value.asset}) was never consumed",
                        module="vm",
                    )

    @staticmethod
    def _take(results: List[List[Any]], arg: Argument) -> Any:
        """Resolve an argument. Funds outputs move out of their slot."""
        if isinstance(arg, Input):
            return arg.value
        if isinstance(arg, NestedResult):
            index, sub = arg.index, arg.sub
        elif isinstance(arg, Result):
            index, sub = arg.index, 0
            if index < len(results) and len(results[index]) != 1:
                raise LedgerAbort(
                    AbortCode.INVALID_ARGUMENT,
                    f"result {index} has {len(results[index])} outputs, use a nested handle",
                    module="vm",
                )
        else:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"bad argument {arg!r}", module="vm")

        if index >= len(results) or sub >= len(results[index]):
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"handle {index}.{sub} out of range", module="vm")
        value = results[index][sub]
        if value is _MOVED:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"handle {index}.{sub} already moved", module="vm")
        if isinstance(value, Funds):
            results[index][sub] = _MOVED
        return value

    # ============ ENTRY FUNCTIONS ============

    def _build_entry_functions(self) -> Dict[str, EntryFunction]:
        d = self.deployment
        return {
            d.autopay_target("create_task"): self._create_task,
            d.autopay_target("execute_task"): self._execute_task,
            d.autopay_target("cancel_task"): self._cancel_task,
            d.autopay_target("reschedule_task"): self._reschedule_task,
            d.autopay_target("mark_task_failed"): self._mark_task_failed,
            d.autopay_target("set_paused"): self._set_paused,
            d.autopay_target("set_min_relayer_fee"): self._set_min_relayer_fee,
            d.autopay_target("add_relayer"): self._add_relayer,
            d.autopay_target("remove_relayer"): self._remove_relayer,
            COIN_ZERO_TARGET: self._coin_zero,
            WITHDRAW_FROM_SENDER_TARGET: self._withdraw_from_sender,
            d.suilend_withdraw_target: self._suilend_withdraw,
            d.navi_withdraw_target: self._navi_withdraw,
            d.scallop_redeem_target: self._scallop_redeem,
            d.cetus_swap_target: self._cetus_swap,
        }

    def _require_registry(self, registry_id: Any) -> None:
        if registry_id != self.registry_id:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"registry {registry_id}")

    @staticmethod
    def _require_clock(clock_id: Any) -> None:
        if clock_id != CLOCK_OBJECT_ID:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"clock {clock_id}")

    @staticmethod
    def _arity(args: List[Any], n: int, name: str) -> None:
        if len(args) != n:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"{name} expects {n} arguments, got {len(args)}", module="vm")

    @staticmethod
    def _as_int(value: Any, label: str) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"{label} must be an integer", module="vm")
        try:
            return int(value)
        except ValueError:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"{label} must be an integer", module="vm") from None

    def _create_task(self, ctx, args, type_args):
        self._arity(args, 7, "create_task")
        payment, registry_id, recipient, execute_at, fee, metadata, clock_id = args
        self._require_registry(registry_id)
        self._require_clock(clock_id)
        if not isinstance(payment, Funds) or payment.asset != self.native_asset:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "payment must be native funds")
        meta = metadata.encode("utf-8") if isinstance(metadata, str) else bytes(metadata or b"")
        self.state.escrow.create_task(
            ctx,
            payment,
            recipient,
            self._as_int(execute_at, "execute_at"),
            self._as_int(fee, "relayer_fee"),
            meta,
        )
        return ()

    def _execute_task(self, ctx, args, type_args):
        self._arity(args, 3, "execute_task")
        task_id, registry_id, clock_id = args
        self._require_registry(registry_id)
        self._require_clock(clock_id)
        self.state.escrow.execute_task(ctx, task_id)
        return ()

    def _cancel_task(self, ctx, args, type_args):
        self._arity(args, 3, "cancel_task")
        task_id, registry_id, clock_id = args
        self._require_registry(registry_id)
        self._require_clock(clock_id)
        self.state.escrow.cancel_task(ctx, task_id)
        return ()

    def _reschedule_task(self, ctx, args, type_args):
        self._arity(args, 4, "reschedule_task")
        task_id, registry_id, new_execute_at, clock_id = args
        self._require_registry(registry_id)
        self._require_clock(clock_id)
        self.state.escrow.reschedule_task(ctx, task_id, self._as_int(new_execute_at, "new_execute_at"))
        return ()

    def _mark_task_failed(self, ctx, args, type_args):
        self._arity(args, 4, "mark_task_failed")
        task_id, registry_id, reason, clock_id = args
        self._require_registry(registry_id)
        self._require_clock(clock_id)
        self.state.escrow.mark_task_failed(ctx, task_id, str(reason))
        return ()

    def _set_paused(self, ctx, args, type_args):
        self._arity(args, 2, "set_paused")
        self._require_registry(args[0])
        self.state.escrow.set_paused(ctx, bool(args[1]))
        return ()

    def _set_min_relayer_fee(self, ctx, args, type_args):
        self._arity(args, 2, "set_min_relayer_fee")
        self._require_registry(args[0])
        self.state.escrow.set_min_relayer_fee(ctx, self._as_int(args[1], "fee"))
        return ()

    def _add_relayer(self, ctx, args, type_args):
        self._arity(args, 2, "add_relayer")
        self._require_registry(args[0])
        self.state.escrow.add_relayer(ctx, str(args[1]))
        return ()

    def _remove_relayer(self, ctx, args, type_args):
        self._arity(args, 2, "remove_relayer")
        self._require_registry(args[0])
        self.state.escrow.remove_relayer(ctx, str(args[1]))
        return ()

    def _coin_zero(self, ctx, args, type_args):
        if len(type_args) != 1:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "coin::zero needs one type argument", module="coin")
        return (Funds.zero(type_args[0]),)

    def _withdraw_from_sender(self, ctx, args, type_args):
        self._arity(args, 1, "withdraw_from_sender")
        asset = type_args[0] if type_args else self.native_asset
        return (self.state.bank.withdraw(ctx.sender, asset, self._as_int(args[0], "amount")),)

    def _suilend_withdraw(self, ctx, args, type_args):
        self._arity(args, 5, "lending_market::withdraw")
        market_id, owner_cap_id, obligation_id, amount, clock_id = args
        self._require_clock(clock_id)
        if len(type_args) != 2:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "withdraw needs market and coin types", module="lending_market")
        market_type, coin_type = type_args
        market = self.state.suilend.get(market_id)
        if market is None:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"lending market {market_id}", module="lending_market")
        if market.market_type != market_type:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"market type {market_type}", module="lending_market")
        funds = market.withdraw(ctx.sender, owner_cap_id, obligation_id, coin_type, self._as_int(amount, "amount"))
        return (funds,)

    def _navi_withdraw(self, ctx, args, type_args):
        self._arity(args, 5, "incentive_v3::withdraw")
        identifier, amount, account_cap, env, clock_id = args
        self._require_clock(clock_id)
        if env != self.state.navi.env:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"no navi deployment for env {env}", module="incentive_v3")
        if len(type_args) != 1:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "withdraw needs a coin type", module="incentive_v3")
        funds = self.state.navi.withdraw(
            ctx.sender, identifier, type_args[0], self._as_int(amount, "amount"), account_cap
        )
        return (funds,)

    def _scallop_redeem(self, ctx, args, type_args):
        self._arity(args, 4, "redeem::redeem")
        version_id, market_id, market_coin_id, clock_id = args
        self._require_clock(clock_id)
        market = self.state.scallop
        if version_id != market.version_id or market_id != market.market_id:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, "scallop version or market", module="redeem")
        if len(type_args) != 1:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "redeem needs a coin type", module="redeem")
        return (market.redeem(ctx.sender, market_coin_id, type_args[0]),)

    def _cetus_swap(self, ctx, args, type_args):
        self._arity(args, 7, "router::swap")
        pool_id, coin_a, coin_b, a2b, amount, amount_limit, clock_id = args
        self._require_clock(clock_id)
        pool = self.state.pools.get(pool_id)
        if pool is None:
            raise LedgerAbort(AbortCode.OBJECT_NOT_FOUND, f"pool {pool_id}", module="router")
        if not isinstance(coin_a, Funds) or not isinstance(coin_b, Funds):
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "swap inputs must be funds", module="router")
        if tuple(type_args) != (pool.coin_type_a, pool.coin_type_b):
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "type arguments do not match pool", module="router")
        out_a, out_b = pool.swap(
            coin_a,
            coin_b,
            bool(a2b),
            self._as_int(amount, "amount"),
            self._as_int(amount_limit, "amount_limit"),
        )
        return (out_a, out_b)
