"""
Domain models for the escrow ledger and the relayer.

These are the core business objects shared by the ledger model and the executor.
Amounts are integer base units of the ledger asset; times are epoch milliseconds.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, Optional, Set, Union

from autopay.constants import (
    STATUS_CANCELLED,
    STATUS_EXECUTED,
    STATUS_FAILED,
    STATUS_PENDING,
)
from autopay.exceptions import AbortCode, LedgerAbort, PositionRefError, ValidationError

_HEX_ID = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
_COIN_TYPE = re.compile(r"^0x[0-9a-fA-F]{1,64}::[A-Za-z_][A-Za-z0-9_]*::[A-Za-z_][A-Za-z0-9_]*(<.*>)?$")


def validate_address(value: str) -> str:
    """Normalize and validate a ledger address (0x + 1..64 hex chars)."""
    v = value.strip() if isinstance(value, str) else ""
    if not _HEX_ID.match(v):
        raise ValidationError(f"Invalid address: {value!r}")
    return v


def validate_object_id(value: str) -> str:
    """Normalize and validate an object id (same shape as an address)."""
    v = value.strip() if isinstance(value, str) else ""
    if not _HEX_ID.match(v):
        raise ValidationError(f"Invalid object id: {value!r}")
    return v


def validate_coin_type(value: str) -> str:
    """Validate a struct tag like 0x2::sui::SUI."""
    v = value.strip() if isinstance(value, str) else ""
    if not _COIN_TYPE.match(v):
        raise ValidationError(f"Invalid coin type: {value!r}")
    return v


class TaskStatus(int, Enum):
    """
    Scheduled task lifecycle.

    State Machine:
        PENDING → EXECUTED (execute_task, task deleted)
        PENDING → CANCELLED (cancel_task by sender, task deleted)
        PENDING → FAILED (mark_task_failed, funds stay locked)
        PENDING → PENDING (reschedule_task)
        FAILED → PENDING (reschedule_task)
        FAILED → CANCELLED (cancel_task by sender)

    Terminal States: EXECUTED, CANCELLED
    """
    PENDING = STATUS_PENDING
    EXECUTED = STATUS_EXECUTED
    CANCELLED = STATUS_CANCELLED
    FAILED = STATUS_FAILED

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.EXECUTED, TaskStatus.CANCELLED)


class Network(str, Enum):
    """Target ledger network."""
    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"


class YieldProtocol(str, Enum):
    """Yield protocols the relayer can withdraw from."""
    SUILEND = "suilend"
    NAVI = "navi"
    SCALLOP = "scallop"


# ============ FUNDS ============

@dataclass
class Funds:
    """
    A ledger-owned quantity of one asset.

    Funds never go negative; splitting more than held aborts with InsufficientFunds.
    """
    asset: str
    value: int

    def __post_init__(self):
        if self.value < 0:
            raise LedgerAbort(AbortCode.INSUFFICIENT_FUNDS, f"negative funds: {self.value}")

    def split(self, amount: int) -> "Funds":
        if amount < 0 or amount > self.value:
            raise LedgerAbort(
                AbortCode.INSUFFICIENT_FUNDS,
                f"cannot split {amount} from {self.value} {self.asset}",
            )
        self.value -= amount
        return Funds(self.asset, amount)

    def join(self, other: "Funds") -> None:
        if other.asset != self.asset:
            raise LedgerAbort(AbortCode.INSUFFICIENT_FUNDS, f"asset mismatch: {self.asset} vs {other.asset}")
        self.value += other.value
        other.value = 0

    def take_all(self) -> "Funds":
        return self.split(self.value)

    @classmethod
    def zero(cls, asset: str) -> "Funds":
        return cls(asset, 0)


# ============ LEDGER STATE ============

@dataclass
class ScheduledTask:
    """
    A time-locked escrow of principal plus relayer fee.

    Invariants:
        principal > 0 while PENDING
        execute_at > created_at
        no transition leaves a terminal state
    """
    task_id: str
    sender: str
    recipient: str
    balance: Funds
    relayer_fee: Funds
    execute_at: int
    created_at: int
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    last_failure_reason: bytes = b""
    metadata: bytes = b""

    @property
    def principal(self) -> int:
        return self.balance.value

    @property
    def fee_amount(self) -> int:
        return self.relayer_fee.value

    def is_due(self, now_ms: int) -> bool:
        return self.status == TaskStatus.PENDING and now_ms >= self.execute_at


@dataclass
class TaskRegistry:
    """Shared registry object: aggregate counters and admin controls."""
    registry_id: str
    admin: str
    min_relayer_fee: int = 0
    paused: bool = False
    total_tasks_created: int = 0
    total_tasks_executed: int = 0
    total_tasks_cancelled: int = 0
    total_tasks_failed: int = 0
    total_volume: int = 0
    total_fees: int = 0
    authorized_relayers: Set[str] = field(default_factory=set)

    def stats(self) -> Dict[str, int]:
        return {
            "total_tasks_created": self.total_tasks_created,
            "total_tasks_executed": self.total_tasks_executed,
            "total_tasks_cancelled": self.total_tasks_cancelled,
            "total_tasks_failed": self.total_tasks_failed,
            "total_volume": self.total_volume,
            "total_fees": self.total_fees,
            "min_relayer_fee": self.min_relayer_fee,
            "paused": int(self.paused),
        }


# ============ EVENTS ============

@dataclass(frozen=True)
class TaskCreated:
    event_type: ClassVar[str] = "TaskCreated"
    task_id: str
    sender: str
    recipient: str
    execute_at: int
    amount: int
    created_at: int


@dataclass(frozen=True)
class TaskExecuted:
    event_type: ClassVar[str] = "TaskExecuted"
    task_id: str
    executor: str
    timestamp: int
    amount: int
    relayer_fee_paid: int


@dataclass(frozen=True)
class TaskCancelled:
    event_type: ClassVar[str] = "TaskCancelled"
    task_id: str
    sender: str
    timestamp: int


@dataclass(frozen=True)
class TaskFailed:
    event_type: ClassVar[str] = "TaskFailed"
    task_id: str
    executor: str
    timestamp: int
    reason: str


@dataclass(frozen=True)
class TaskRescheduled:
    event_type: ClassVar[str] = "TaskRescheduled"
    task_id: str
    old_execute_at: int
    new_execute_at: int
    timestamp: int


LedgerEvent = Union[TaskCreated, TaskExecuted, TaskCancelled, TaskFailed, TaskRescheduled]


@dataclass(frozen=True)
class EventEnvelope:
    """An event as recorded in the ledger's event log."""
    seq: int
    tx_digest: str
    event: LedgerEvent


# ============ POSITION REFERENCES ============

def _require_text(value: Optional[str], label: str, protocol: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise PositionRefError(f"{protocol} positionRef.{label} is required")
    return value.strip()


@dataclass(frozen=True)
class SuilendPositionRef:
    protocol: ClassVar[YieldProtocol] = YieldProtocol.SUILEND
    obligation_owner_cap_id: str
    obligation_id: str
    lending_market_id: Optional[str] = None
    lending_market_type: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "protocol": self.protocol.value,
            "obligationOwnerCapId": self.obligation_owner_cap_id,
            "obligationId": self.obligation_id,
            "lendingMarketId": self.lending_market_id,
            "lendingMarketType": self.lending_market_type,
        }


@dataclass(frozen=True)
class NaviPositionRef:
    protocol: ClassVar[YieldProtocol] = YieldProtocol.NAVI
    identifier: Union[str, int]
    account_cap: Optional[str] = None
    env: Optional[str] = None  # prod | dev | test

    def to_dict(self) -> Dict:
        return {
            "protocol": self.protocol.value,
            "identifier": self.identifier,
            "accountCap": self.account_cap,
            "env": self.env,
        }


@dataclass(frozen=True)
class ScallopPositionRef:
    protocol: ClassVar[YieldProtocol] = YieldProtocol.SCALLOP
    market_coin_id: str
    pool_coin_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "protocol": self.protocol.value,
            "marketCoinId": self.market_coin_id,
            "poolCoinName": self.pool_coin_name,
        }


PositionRef = Union[SuilendPositionRef, NaviPositionRef, ScallopPositionRef]


def position_ref_from_dict(data: Optional[Dict]) -> PositionRef:
    """Decode a stored position reference. Malformed input is a PositionRefError."""
    if not isinstance(data, dict):
        raise PositionRefError("Yield strategy missing positionRef (required for withdraw execution)")
    protocol = data.get("protocol")
    if protocol == YieldProtocol.SUILEND.value:
        return SuilendPositionRef(
            obligation_owner_cap_id=_require_text(data.get("obligationOwnerCapId"), "obligationOwnerCapId", protocol),
            obligation_id=_require_text(data.get("obligationId"), "obligationId", protocol),
            lending_market_id=data.get("lendingMarketId") or None,
            lending_market_type=data.get("lendingMarketType") or None,
        )
    if protocol == YieldProtocol.NAVI.value:
        identifier = data.get("identifier")
        if isinstance(identifier, bool) or not isinstance(identifier, (str, int)) or identifier == "":
            raise PositionRefError("navi positionRef.identifier is required")
        env = data.get("env")
        if env is not None and env not in ("prod", "dev", "test"):
            raise PositionRefError(f"navi positionRef.env is invalid: {env!r}")
        return NaviPositionRef(identifier=identifier, account_cap=data.get("accountCap") or None, env=env)
    if protocol == YieldProtocol.SCALLOP.value:
        return ScallopPositionRef(
            market_coin_id=_require_text(data.get("marketCoinId"), "marketCoinId", protocol),
            pool_coin_name=data.get("poolCoinName") or None,
        )
    raise PositionRefError(f"Unknown positionRef protocol: {protocol!r}")


# ============ SWAP CONFIG ============

@dataclass(frozen=True)
class SwapConfig:
    """Exchange leg configuration (Cetus-style concentrated liquidity pool)."""
    pool_id: str
    coin_type_a: str
    coin_type_b: str
    a2b: bool
    slippage_bps: Optional[int] = None
    provider: str = "cetus"

    @property
    def input_coin_type(self) -> str:
        return self.coin_type_a if self.a2b else self.coin_type_b

    @property
    def output_coin_type(self) -> str:
        return self.coin_type_b if self.a2b else self.coin_type_a

    def to_dict(self) -> Dict:
        return {
            "provider": self.provider,
            "poolId": self.pool_id,
            "coinTypeA": self.coin_type_a,
            "coinTypeB": self.coin_type_b,
            "a2b": self.a2b,
            "slippageBps": self.slippage_bps,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SwapConfig":
        try:
            a2b = data["a2b"]
            if not isinstance(a2b, bool):
                raise ValidationError(f"Invalid swapConfig: a2b must be a boolean, got {a2b!r}")
            slippage = data.get("slippageBps")
            return cls(
                provider=data.get("provider", "cetus"),
                pool_id=validate_object_id(data["poolId"]),
                coin_type_a=validate_coin_type(data["coinTypeA"]),
                coin_type_b=validate_coin_type(data["coinTypeB"]),
                a2b=a2b,
                slippage_bps=int(slippage) if slippage is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid swapConfig: {e}") from e


# ============ OFF-LEDGER RECORDS ============

@dataclass
class YieldStrategyRecord:
    """
    Yield plan for one task, written when a yield-optimized task is scheduled.

    The executor reads it once at execution time and mutates only current_protocol.
    """
    task_id: str
    user_address: str
    amount: int
    target_address: str
    selected_protocol: str
    target_date: Optional[datetime] = None
    coin_type: Optional[str] = None
    target_coin_type: Optional[str] = None
    current_protocol: Optional[str] = None
    apr_at_selection: Decimal = Decimal("0")
    position_ref: Optional[PositionRef] = None
    swap_config: Optional[SwapConfig] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RetryJob:
    """A scheduled re-dispatch of a task. At most one live job per task id."""
    task_id: str
    attempt: int
    execute_at_ms: int
