"""
Withdraw legs, one adapter per yield protocol.

Each adapter validates its request completely before appending anything to the
transaction, then appends the protocol's withdraw call and returns the handle
of the withdrawn funds. The registry must cover every YieldProtocol member.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from autopay.constants import CLOCK_OBJECT_ID
from autopay.domain.models import (
    Network,
    NaviPositionRef,
    PositionRef,
    ScallopPositionRef,
    SuilendPositionRef,
    YieldProtocol,
    validate_address,
    validate_coin_type,
    validate_object_id,
)
from autopay.exceptions import (
    PositionRefError,
    UnsupportedProtocolError,
    ValidationError,
)
from autopay.ledger.transaction import Argument, Transaction
from autopay.ledger.venues import ProtocolDeployment, navi_env_for
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

# Navi's withdraw API takes a float-safe integer amount
MAX_SAFE_INTEGER = 2 ** 53 - 1


@dataclass(frozen=True)
class WithdrawRequest:
    protocol: YieldProtocol
    network: Network
    owner_address: str
    target_address: str
    amount: int
    coin_type: str
    position_ref: Optional[PositionRef]


def parse_yield_protocol(value: str) -> YieldProtocol:
    """Map a stored protocol name onto the closed protocol set."""
    normalized = (value or "").strip().lower()
    try:
        return YieldProtocol(normalized)
    except ValueError:
        raise UnsupportedProtocolError(f"Unsupported yield protocol for withdraw: {value}") from None


def _checked_id(value: str, label: str) -> str:
    try:
        return validate_object_id(value)
    except ValidationError as e:
        raise PositionRefError(f"{label} is not a valid object id: {value!r}") from e


class WithdrawAdapter(ABC):
    protocol: YieldProtocol

    def __init__(self, deployment: ProtocolDeployment):
        self.deployment = deployment

    def append(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        """Validate req, then append the withdraw. Returns the withdrawn funds handle."""
        if req.protocol != self.protocol:
            raise UnsupportedProtocolError(f"{type(self).__name__} cannot withdraw from {req.protocol.value}")
        if req.amount <= 0:
            raise ValidationError(f"Withdraw amount must be positive, got {req.amount}")
        validate_address(req.target_address)
        validate_coin_type(req.coin_type)
        return self._append(tx, req)

    @abstractmethod
    def _append(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        ...

    def _require_ref(self, req: WithdrawRequest, ref_type):
        if not isinstance(req.position_ref, ref_type):
            raise PositionRefError(f"Missing/invalid positionRef for protocol={self.protocol.value}")
        return req.position_ref


class SuilendWithdrawAdapter(WithdrawAdapter):
    protocol = YieldProtocol.SUILEND

    def _append(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        ref: SuilendPositionRef = self._require_ref(req, SuilendPositionRef)
        cap_id = _checked_id(ref.obligation_owner_cap_id, "obligationOwnerCapId")
        obligation_id = _checked_id(ref.obligation_id, "obligationId")
        market_id = _checked_id(
            ref.lending_market_id or self.deployment.suilend_lending_market_id, "lendingMarketId"
        )
        market_type = ref.lending_market_type or self.deployment.suilend_lending_market_type

        return tx.move_call(
            self.deployment.suilend_withdraw_target,
            arguments=[
                tx.object(market_id),
                tx.object(cap_id),
                tx.object(obligation_id),
                tx.pure(req.amount),
                tx.object(CLOCK_OBJECT_ID),
            ],
            type_arguments=[market_type, req.coin_type],
        )


class NaviWithdrawAdapter(WithdrawAdapter):
    protocol = YieldProtocol.NAVI

    def _append(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        ref: NaviPositionRef = self._require_ref(req, NaviPositionRef)
        if req.amount > MAX_SAFE_INTEGER:
            raise ValidationError(f"Navi withdraw amount is too large: {req.amount}")
        env = ref.env or navi_env_for(req.network)
        account_cap = _checked_id(ref.account_cap, "accountCap") if ref.account_cap else None

        return tx.move_call(
            self.deployment.navi_withdraw_target,
            arguments=[
                tx.pure(ref.identifier),
                tx.pure(req.amount),
                tx.pure(account_cap),
                tx.pure(env),
                tx.object(CLOCK_OBJECT_ID),
            ],
            type_arguments=[req.coin_type],
        )


class ScallopWithdrawAdapter(WithdrawAdapter):
    """
    Scallop withdraw is a redeem of a whole market coin.

    The redeemed amount is whatever the market coin represents; req.amount is
    informational unless the market coin was split upstream.
    """
    protocol = YieldProtocol.SCALLOP

    def _append(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        if req.network != Network.MAINNET:
            raise UnsupportedProtocolError("Scallop execution is mainnet-only (network must be mainnet)")
        ref: ScallopPositionRef = self._require_ref(req, ScallopPositionRef)
        market_coin_id = _checked_id(ref.market_coin_id, "marketCoinId")

        handle = tx.move_call(
            self.deployment.scallop_redeem_target,
            arguments=[
                tx.object(self.deployment.scallop_version_id),
                tx.object(self.deployment.scallop_market_id),
                tx.object(market_coin_id),
                tx.object(CLOCK_OBJECT_ID),
            ],
            type_arguments=[req.coin_type],
        )
        logger.info(
            "Scallop redeem appended",
            market_coin_id=market_coin_id,
            coin_type=req.coin_type,
            requested_amount=req.amount,
        )
        return handle


class WithdrawAdapterRegistry:
    """Exhaustive protocol → adapter mapping."""

    def __init__(self, deployment: ProtocolDeployment):
        self._adapters: Dict[YieldProtocol, WithdrawAdapter] = {
            YieldProtocol.SUILEND: SuilendWithdrawAdapter(deployment),
            YieldProtocol.NAVI: NaviWithdrawAdapter(deployment),
            YieldProtocol.SCALLOP: ScallopWithdrawAdapter(deployment),
        }
        missing = set(YieldProtocol) - set(self._adapters)
        if missing:
            raise UnsupportedProtocolError(f"No withdraw adapter for {sorted(p.value for p in missing)}")

    def get(self, protocol: YieldProtocol) -> WithdrawAdapter:
        return self._adapters[protocol]

    def append_withdraw(self, tx: Transaction, req: WithdrawRequest) -> Argument:
        return self.get(req.protocol).append(tx, req)
