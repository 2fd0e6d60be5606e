"""
Address balances held by the local ledger.

Funds leave the bank only through withdraw() and come back only through
deposit(), so the total supply per asset is conserved by every operation
except mint() and gas charges.
"""
from collections import defaultdict
from typing import Dict, Tuple

from autopay.exceptions import AbortCode, LedgerAbort
from autopay.domain.models import Funds


class Bank:
    def __init__(self):
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)

    def balance_of(self, owner: str, asset: str) -> int:
        return self._balances.get((owner, asset), 0)

    def deposit(self, owner: str, funds: Funds) -> None:
        """Move all of funds into owner's balance. funds is left empty."""
        if funds.value:
            self._balances[(owner, funds.asset)] += funds.take_all().value

    def withdraw(self, owner: str, asset: str, amount: int) -> Funds:
        held = self.balance_of(owner, asset)
        if amount < 0 or amount > held:
            raise LedgerAbort(
                AbortCode.INSUFFICIENT_FUNDS,
                f"{owner} holds {held} {asset}, requested {amount}",
                module="balance",
            )
        self._balances[(owner, asset)] = held - amount
        return Funds(asset, amount)

    def mint(self, owner: str, asset: str, amount: int) -> None:
        self.deposit(owner, Funds(asset, amount))

    def total_supply(self, asset: str) -> int:
        return sum(v for (_, a), v in self._balances.items() if a == asset)
