"""
Seams between the executor and its collaborators.

The executor depends only on these protocols; the local runtime client, a
network RPC binding, or a test double can stand behind each one.
"""
from typing import List, Optional, Protocol, Sequence

from autopay.domain.models import ScheduledTask, TaskCreated, YieldStrategyRecord
from autopay.ledger.transaction import TransactionEffects


class LedgerClient(Protocol):
    """Read and submit surface of the escrow ledger."""

    async def query_task_created_events(self, limit: int) -> List[TaskCreated]: ...

    async def multi_get_tasks(self, task_ids: Sequence[str]) -> List[Optional[ScheduledTask]]: ...

    async def get_task(self, task_id: str) -> Optional[ScheduledTask]: ...

    async def get_ledger_time_ms(self) -> int: ...

    async def execute_transaction(self, tx_bytes: bytes, signatures: Sequence[bytes]) -> TransactionEffects: ...


class SwapQuoter(Protocol):
    async def preswap(self, pool_id: str, a2b: bool, amount_in: int) -> int: ...


class Signer(Protocol):
    address: str

    def sign(self, message: bytes) -> bytes: ...


class StrategyStore(Protocol):
    """Off-ledger yield strategy records, keyed by task id."""

    def get_by_task_id(self, task_id: str) -> Optional[YieldStrategyRecord]: ...

    def update_current_protocol(self, task_id: str, protocol: Optional[str]) -> bool: ...
