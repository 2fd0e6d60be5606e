"""
Async client over a LocalLedger.

Mirrors the remote RPC surface the executor depends on, so the executor runs
unchanged against the local runtime or a network binding.
"""
import asyncio
from typing import List, Optional, Sequence

from autopay.domain.models import ScheduledTask, TaskCreated
from autopay.ledger.runtime import LocalLedger
from autopay.ledger.transaction import TransactionEffects


class LocalLedgerClient:
    def __init__(self, ledger: LocalLedger, latency_seconds: float = 0.0):
        self.ledger = ledger
        self.latency_seconds = latency_seconds

    async def _yield(self) -> None:
        await asyncio.sleep(self.latency_seconds)

    async def query_task_created_events(self, limit: int) -> List[TaskCreated]:
        """Newest-first TaskCreated events, at most limit."""
        await self._yield()
        envelopes = self.ledger.query_events(TaskCreated.event_type, limit=limit, descending=True)
        return [e.event for e in envelopes]

    async def multi_get_tasks(self, task_ids: Sequence[str]) -> List[Optional[ScheduledTask]]:
        await self._yield()
        return self.ledger.multi_get_tasks(task_ids)

    async def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        await self._yield()
        return self.ledger.get_task(task_id)

    async def get_ledger_time_ms(self) -> int:
        await self._yield()
        return self.ledger.now_ms()

    async def execute_transaction(self, tx_bytes: bytes, signatures: Sequence[bytes]) -> TransactionEffects:
        await self._yield()
        return self.ledger.execute(tx_bytes, signatures)

    async def preswap(self, pool_id: str, a2b: bool, amount_in: int) -> int:
        await self._yield()
        return self.ledger.preswap(pool_id, a2b, amount_in)

    async def get_balance(self, owner: str, asset: Optional[str] = None) -> int:
        await self._yield()
        return self.ledger.balance_of(owner, asset)
