"""
Simulated on-ledger venues used by the local runtime.

    SuilendMarket   obligations addressed by (owner cap, obligation id)
    NaviPools       per-pool account balances addressed by identifier + account cap
    ScallopMarket   market coins redeemed whole for the underlying
    SwapPool        constant-product pool with a fee, quoted by preswap()

Every venue mutation aborts with a LedgerAbort so the runtime can roll the
enclosing transaction back.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from autopay.constants import BPS_DENOMINATOR
from autopay.domain.models import Funds, Network
from autopay.exceptions import AbortCode, LedgerAbort

DEFAULT_SWAP_FEE_BPS = 25


@dataclass(frozen=True)
class ProtocolDeployment:
    """Package and shared-object ids for every venue the relayer touches."""
    autopay_package_id: str = "0xa0"
    suilend_package_id: str = "0x5ee1"
    suilend_lending_market_id: str = "0x5ee2"
    suilend_lending_market_type: str = "0x5ee1::suilend::MAIN_POOL"
    navi_package_id: str = "0xaa71"
    scallop_package_id: str = "0x5ca1"
    scallop_version_id: str = "0x5ca2"
    scallop_market_id: str = "0x5ca3"
    cetus_package_id: str = "0xce75"

    @property
    def execute_task_target(self) -> str:
        return f"{self.autopay_package_id}::autopay::execute_task"

    def autopay_target(self, function: str) -> str:
        return f"{self.autopay_package_id}::autopay::{function}"

    @property
    def suilend_withdraw_target(self) -> str:
        return f"{self.suilend_package_id}::lending_market::withdraw"

    @property
    def navi_withdraw_target(self) -> str:
        return f"{self.navi_package_id}::incentive_v3::withdraw"

    @property
    def scallop_redeem_target(self) -> str:
        return f"{self.scallop_package_id}::redeem::redeem"

    @property
    def cetus_swap_target(self) -> str:
        return f"{self.cetus_package_id}::router::swap"


COIN_ZERO_TARGET = "0x2::coin::zero"
WITHDRAW_FROM_SENDER_TARGET = "0x2::balance::withdraw_from_sender"


def navi_env_for(network: Network) -> str:
    """Navi deployment environment used when a position ref does not pin one."""
    return "prod" if network == Network.MAINNET else "dev"


# ============ SUILEND ============

@dataclass
class Obligation:
    obligation_id: str
    owner_cap_id: str
    deposits: Dict[str, int] = field(default_factory=dict)


class SuilendMarket:
    def __init__(self, market_id: str, market_type: str):
        self.market_id = market_id
        self.market_type = market_type
        self.obligations: Dict[str, Obligation] = {}
        self.cap_owners: Dict[str, str] = {}

    def open_obligation(self, owner: str, obligation_id: str, owner_cap_id: str) -> Obligation:
        obligation = Obligation(obligation_id, owner_cap_id)
        self.obligations[obligation_id] = obligation
        self.cap_owners[owner_cap_id] = owner
        return obligation

    def deposit(self, obligation_id: str, coin_type: str, amount: int) -> None:
        obligation = self._require_obligation(obligation_id)
        obligation.deposits[coin_type] = obligation.deposits.get(coin_type, 0) + amount

    def withdraw(self, caller: str, owner_cap_id: str, obligation_id: str, coin_type: str, amount: int) -> Funds:
        if self.cap_owners.get(owner_cap_id) != caller:
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "caller does not own obligation cap", module="lending_market")
        obligation = self._require_obligation(obligation_id)
        if obligation.owner_cap_id != owner_cap_id:
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "cap does not match obligation", module="lending_market")
        held = obligation.deposits.get(coin_type, 0)
        if amount <= 0 or amount > held:
            raise LedgerAbort(
                AbortCode.INSUFFICIENT_FUNDS,
                f"obligation holds {held}, requested {amount}",
                module="lending_market",
            )
        obligation.deposits[coin_type] = held - amount
        return Funds(coin_type, amount)

    def _require_obligation(self, obligation_id: str) -> Obligation:
        obligation = self.obligations.get(obligation_id)
        if obligation is None:
            raise LedgerAbort(AbortCode.POSITION_NOT_FOUND, obligation_id, module="lending_market")
        return obligation


# ============ NAVI ============

class NaviPools:
    """Pools are keyed by identifier (asset id or coin type); accounts by cap id or address."""

    def __init__(self, env: str):
        self.env = env
        self.pool_coin_types: Dict[str, str] = {}
        self.balances: Dict[Tuple[str, str], int] = {}
        self.account_caps: Dict[str, str] = {}

    @staticmethod
    def pool_key(identifier: Union[str, int]) -> str:
        return str(identifier)

    def add_pool(self, identifier: Union[str, int], coin_type: str) -> None:
        self.pool_coin_types[self.pool_key(identifier)] = coin_type

    def issue_account_cap(self, owner: str, cap_id: str) -> None:
        self.account_caps[cap_id] = owner

    def supply(self, identifier: Union[str, int], account: str, amount: int) -> None:
        key = (self.pool_key(identifier), account)
        self.balances[key] = self.balances.get(key, 0) + amount

    def withdraw(
        self,
        caller: str,
        identifier: Union[str, int],
        coin_type: str,
        amount: int,
        account_cap: Optional[str],
    ) -> Funds:
        pool = self.pool_key(identifier)
        pool_coin = self.pool_coin_types.get(pool)
        if pool_coin is None:
            raise LedgerAbort(AbortCode.POSITION_NOT_FOUND, f"no pool {pool}", module="incentive_v3")
        if pool_coin != coin_type:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"pool {pool} holds {pool_coin}", module="incentive_v3")

        if account_cap is not None:
            if self.account_caps.get(account_cap) != caller:
                raise LedgerAbort(AbortCode.UNAUTHORIZED, "caller does not own account cap", module="incentive_v3")
            account = account_cap
        else:
            account = caller

        held = self.balances.get((pool, account), 0)
        if held == 0:
            raise LedgerAbort(AbortCode.POSITION_NOT_FOUND, f"no supply for {account}", module="incentive_v3")
        if amount <= 0 or amount > held:
            raise LedgerAbort(
                AbortCode.INSUFFICIENT_FUNDS,
                f"account holds {held}, requested {amount}",
                module="incentive_v3",
            )
        self.balances[(pool, account)] = held - amount
        return Funds(coin_type, amount)


# ============ SCALLOP ============

@dataclass
class MarketCoin:
    owner: str
    coin_type: str
    underlying: int


class ScallopMarket:
    def __init__(self, market_id: str, version_id: str):
        self.market_id = market_id
        self.version_id = version_id
        self.market_coins: Dict[str, MarketCoin] = {}

    def mint_market_coin(self, owner: str, market_coin_id: str, coin_type: str, underlying: int) -> None:
        self.market_coins[market_coin_id] = MarketCoin(owner, coin_type, underlying)

    def redeem(self, caller: str, market_coin_id: str, coin_type: str) -> Funds:
        coin = self.market_coins.get(market_coin_id)
        if coin is None:
            raise LedgerAbort(AbortCode.POSITION_NOT_FOUND, market_coin_id, module="redeem")
        if coin.owner != caller:
            raise LedgerAbort(AbortCode.UNAUTHORIZED, "caller does not own market coin", module="redeem")
        if coin.coin_type != coin_type:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, f"market coin is {coin.coin_type}", module="redeem")
        del self.market_coins[market_coin_id]
        return Funds(coin_type, coin.underlying)


# ============ SWAP POOL ============

class SwapPool:
    """Constant-product pool between coin_type_a and coin_type_b."""

    def __init__(
        self,
        pool_id: str,
        coin_type_a: str,
        coin_type_b: str,
        reserve_a: int,
        reserve_b: int,
        fee_bps: int = DEFAULT_SWAP_FEE_BPS,
    ):
        self.pool_id = pool_id
        self.coin_type_a = coin_type_a
        self.coin_type_b = coin_type_b
        self.reserve_a = reserve_a
        self.reserve_b = reserve_b
        self.fee_bps = fee_bps

    def preswap(self, a2b: bool, amount_in: int) -> int:
        """Estimated output for amount_in at current reserves."""
        if amount_in <= 0:
            return 0
        reserve_in, reserve_out = (self.reserve_a, self.reserve_b) if a2b else (self.reserve_b, self.reserve_a)
        amount_in_after_fee = amount_in * (BPS_DENOMINATOR - self.fee_bps)
        numerator = amount_in_after_fee * reserve_out
        denominator = reserve_in * BPS_DENOMINATOR + amount_in_after_fee
        return numerator // denominator

    def swap(
        self,
        coin_a: Funds,
        coin_b: Funds,
        a2b: bool,
        amount: int,
        amount_limit: int,
    ) -> Tuple[Funds, Funds]:
        """
        Swap amount of the input side. Returns (coin_a, coin_b) holding the
        unspent input and the output.

        Aborts with SlippageExceeded when output < amount_limit.
        """
        if coin_a.asset != self.coin_type_a or coin_b.asset != self.coin_type_b:
            raise LedgerAbort(AbortCode.INVALID_ARGUMENT, "coin types do not match pool", module="router")

        amount_out = self.preswap(a2b, amount)
        if amount_out <= 0 or amount_out < amount_limit:
            raise LedgerAbort(
                AbortCode.SLIPPAGE_EXCEEDED,
                f"output {amount_out} below limit {amount_limit}",
                module="router",
            )

        if a2b:
            paid = coin_a.split(amount)
            self.reserve_a += paid.value
            self.reserve_b -= amount_out
            coin_b.join(Funds(self.coin_type_b, amount_out))
        else:
            paid = coin_b.split(amount)
            self.reserve_b += paid.value
            self.reserve_a -= amount_out
            coin_a.join(Funds(self.coin_type_a, amount_out))
        return coin_a, coin_b
