"""
Unit tests for OptimisticExecutor against the local ledger.

Covers plain and yield dispatch, read-only mode, retry scheduling, benign race
losses and quarantine of security failures.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from autopay.config.config import Config, ExecutorConfig, RetryConfig
from autopay.constants import GAS_BASE_COST, GAS_PER_COMMAND
from autopay.context import build_context
from autopay.domain.metadata import encode_yield_directive
from autopay.domain.models import SuilendPositionRef, TaskStatus, YieldStrategyRecord
from autopay.exceptions import NetworkError
from autopay.execution.executor import (
    OUTCOME_DROPPED,
    OUTCOME_EXECUTED,
    OUTCOME_QUARANTINED,
    OUTCOME_READ_ONLY,
    OUTCOME_RETRY,
    OptimisticExecutor,
)
from autopay.ledger.clock import ManualClock
from autopay.monitoring.alerts import AlertLevel

from tests.conftest import ONE_SUI

NATIVE = "0x2::sui::SUI"
POSITION = 500_000_000


@pytest.fixture
def build_executor(config, client, clock):
    def _build(relayer=None, sponsor=None, strategies=None, cfg=None):
        ctx = build_context(
            cfg or config,
            client,
            clock=clock,
            relayer=relayer,
            sponsor=sponsor,
            strategies=strategies,
        )
        return OptimisticExecutor(ctx)
    return _build


@pytest.fixture
def due_task(create_task, clock):
    task_id = create_task(delay_ms=60_000)
    clock.advance(ms=60_000)
    return task_id


def _yield_metadata():
    return encode_yield_directive(
        description="rent",
        protocol="suilend",
        apr=4.2,
        amount=POSITION,
        target_date="2026-11-01T00:00:00+00:00",
    )


class TestPlainDispatch:
    @pytest.mark.asyncio
    async def test_run_once_settles_due_task(self, build_executor, ledger, due_task, relayer, recipient):
        executor = build_executor(relayer=relayer)

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 1
        assert ledger.get_task(due_task) is None
        assert ledger.balance_of(recipient.address) == 999_000_000
        snapshot = executor.ctx.metrics.snapshot()
        assert snapshot["tasks_executed"] == 1
        assert snapshot["total_gas_cost"] > 0

    @pytest.mark.asyncio
    async def test_run_once_returns_every_outcome_count(self, build_executor, due_task, relayer):
        executor = build_executor(relayer=relayer)

        summary = await executor.run_once()

        assert summary == {
            OUTCOME_EXECUTED: 1,
            OUTCOME_READ_ONLY: 0,
            OUTCOME_RETRY: 0,
            OUTCOME_DROPPED: 0,
            OUTCOME_QUARANTINED: 0,
            "skipped": 0,
        }

    @pytest.mark.asyncio
    async def test_tasks_not_yet_due_are_left_alone(self, build_executor, ledger, create_task, relayer):
        task_id = create_task(delay_ms=3_600_000)
        executor = build_executor(relayer=relayer)

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 0
        assert ledger.get_task(task_id).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_sponsored_mode_keeps_relayer_gas(self, build_executor, ledger, due_task, relayer, sponsor):
        executor = build_executor(relayer=relayer, sponsor=sponsor)
        relayer_before = ledger.balance_of(relayer.address)

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 1
        assert ledger.balance_of(relayer.address) == relayer_before + 1_000_000

    @pytest.mark.asyncio
    async def test_read_only_reports_without_submitting(self, build_executor, ledger, due_task):
        executor = build_executor(relayer=None)
        assert executor.read_only

        summary = await executor.run_once()

        assert summary[OUTCOME_READ_ONLY] == 1
        assert ledger.get_task(due_task) is not None

    @pytest.mark.asyncio
    async def test_second_scan_is_idempotent(self, build_executor, ledger, due_task, relayer):
        executor = build_executor(relayer=relayer)
        await executor.run_once()

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 0
        assert ledger.registry.total_tasks_executed == 1


class TestRaces:
    @pytest.mark.asyncio
    async def test_losing_relayer_drops_quietly(self, build_executor, ledger, due_task, relayer, sponsor, recipient):
        winner = build_executor(relayer=relayer)
        loser = build_executor(relayer=sponsor)
        stale = ledger.get_task(due_task)

        assert await winner.execute_task(stale) == OUTCOME_EXECUTED
        assert await loser.execute_task(stale) == OUTCOME_DROPPED

        assert ledger.balance_of(recipient.address) == 999_000_000
        assert loser.ctx.alerts.history == []
        assert len(loser.retry_queue) == 0
        assert loser.ctx.metrics.failures_by_kind["ObjectNotFound"] == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_not_ready_schedules_retry_that_settles(
        self, build_executor, ledger, create_task, clock, relayer, recipient
    ):
        cfg = Config(environment="dev", retry=RetryConfig(not_ready_delay_ms=20))
        executor = build_executor(relayer=relayer, cfg=cfg)
        task_id = create_task(delay_ms=60_000)

        # Dispatched before execute_at: the ledger refuses it
        outcome = await executor.execute_task(ledger.get_task(task_id))
        assert outcome == OUTCOME_RETRY
        assert executor.retry_queue.pending(task_id).attempt == 1

        clock.advance(ms=60_000)
        await asyncio.sleep(0.1)

        assert ledger.get_task(task_id) is None
        assert ledger.balance_of(recipient.address) == 999_000_000
        assert executor.ctx.metrics.tasks_executed == 1

    @pytest.mark.asyncio
    async def test_clock_ahead_of_ledger_never_hammers_not_ready(
        self, config, client, ledger, create_task, clock, relayer, recipient
    ):
        task_id = create_task(delay_ms=60_000)
        clock.advance(ms=59_000)
        # Relayer clock 2s ahead of the ledger, inside the drift threshold
        executor = OptimisticExecutor(build_context(
            config, client, clock=ManualClock(clock.now_ms() + 2_000), relayer=relayer,
        ))
        gas_before = ledger.balance_of(relayer.address)

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 0
        assert ledger.balance_of(relayer.address) == gas_before

        # A dispatch the ledger refuses is retried once, then left to the next scan
        outcome = await executor.execute_task(ledger.get_task(task_id))
        await asyncio.sleep(0.2)

        assert outcome == OUTCOME_RETRY
        assert executor.ctx.metrics.failures_by_kind["TimeNotReady"] == 1
        assert executor.ctx.metrics.retries_scheduled == 1
        assert len(executor.retry_queue) == 0
        assert executor.ctx.alerts.history == []
        assert gas_before - ledger.balance_of(relayer.address) == GAS_BASE_COST + GAS_PER_COMMAND

        clock.advance(ms=1_000)
        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 1
        assert ledger.balance_of(recipient.address) == 999_000_000

    @pytest.mark.asyncio
    async def test_repeated_not_ready_drops_without_alert(self, build_executor, ledger, create_task, relayer):
        executor = build_executor(relayer=relayer)
        task_id = create_task(delay_ms=60_000)

        outcome = await executor.execute_task(ledger.get_task(task_id), attempt=1)

        assert outcome == OUTCOME_DROPPED
        assert len(executor.retry_queue) == 0
        assert executor.ctx.alerts.history == []
        assert ledger.get_task(task_id).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_network_error_retries_with_backoff(self, build_executor, client, ledger, due_task, relayer):
        client.execute_transaction = AsyncMock(side_effect=NetworkError("connection reset"))
        executor = build_executor(relayer=relayer)

        outcome = await executor.execute_task(ledger.get_task(due_task))

        assert outcome == OUTCOME_RETRY
        job = executor.retry_queue.pending(due_task)
        assert job.attempt == 1
        assert executor.ctx.metrics.retries_scheduled == 1
        assert executor.ctx.metrics.failures_by_kind["Network"] == 1
        executor.stop()
        assert len(executor.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_pending_retry_is_skipped_by_scan(self, build_executor, client, ledger, due_task, relayer):
        client.execute_transaction = AsyncMock(side_effect=NetworkError("connection reset"))
        executor = build_executor(relayer=relayer)
        await executor.execute_task(ledger.get_task(due_task))

        summary = await executor.run_once()

        assert summary["skipped"] == 1
        assert client.execute_transaction.await_count == 1
        executor.stop()

    @pytest.mark.asyncio
    async def test_exhausted_retries_drop_with_alert(self, build_executor, client, ledger, due_task, relayer):
        client.execute_transaction = AsyncMock(side_effect=NetworkError("connection reset"))
        executor = build_executor(relayer=relayer)

        outcome = await executor.execute_task(ledger.get_task(due_task), attempt=3)

        assert outcome == OUTCOME_DROPPED
        (alert,) = executor.ctx.alerts.history
        assert alert["title"] == "Retries exhausted"
        assert alert["level"] == AlertLevel.WARNING


class TestYieldDispatch:
    @pytest.fixture
    def position(self, ledger, relayer):
        market = ledger.suilend_market
        market.open_obligation(relayer.address, "0xb1", "0xc1")
        market.deposit("0xb1", NATIVE, POSITION)
        return SuilendPositionRef(obligation_owner_cap_id="0xc1", obligation_id="0xb1")

    @pytest.fixture
    def yield_task(self, create_task, clock):
        task_id = create_task(delay_ms=60_000, metadata=_yield_metadata())
        clock.advance(ms=60_000)
        return task_id

    @pytest.mark.asyncio
    async def test_yield_task_withdraws_to_target(
        self, build_executor, ledger, repository, yield_task, position, relayer, sender, recipient
    ):
        repository.save(YieldStrategyRecord(
            task_id=yield_task,
            user_address=sender.address,
            amount=POSITION,
            target_address=recipient.address,
            selected_protocol="suilend",
            current_protocol="suilend",
            coin_type=NATIVE,
            position_ref=position,
        ))
        executor = build_executor(relayer=relayer, strategies=repository)

        summary = await executor.run_once()

        assert summary[OUTCOME_EXECUTED] == 1
        assert ledger.balance_of(recipient.address) == 999_000_000 + POSITION
        assert repository.get_by_task_id(yield_task).current_protocol is None

    @pytest.mark.asyncio
    async def test_missing_record_quarantines_and_marks_failed(
        self, build_executor, ledger, calls, submit, repository, yield_task, admin, relayer
    ):
        assert submit(calls.admin_call(admin.address, "add_relayer", relayer.address), admin).succeeded
        executor = build_executor(relayer=relayer, strategies=repository)

        summary = await executor.run_once()

        assert summary[OUTCOME_QUARANTINED] == 1
        alert = executor.ctx.alerts.history[0]
        assert alert["level"] == AlertLevel.CRITICAL
        task = ledger.get_task(yield_task)
        assert task.status == TaskStatus.FAILED
        assert b"No yield strategy record" in task.last_failure_reason
        # Funds stay locked for the sender
        assert task.principal == ONE_SUI - 1_000_000

    @pytest.mark.asyncio
    async def test_quarantined_task_is_skipped_on_next_scan(
        self, build_executor, ledger, repository, yield_task, relayer
    ):
        cfg = Config(environment="dev", executor=ExecutorConfig(mark_failed_on_security_error=False))
        executor = build_executor(relayer=relayer, strategies=repository, cfg=cfg)

        first = await executor.run_once()
        second = await executor.run_once()

        assert first[OUTCOME_QUARANTINED] == 1
        assert second["skipped"] == 1
        assert executor.is_quarantined(ledger.get_task(yield_task))
        assert ledger.get_task(yield_task).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_malformed_directive_is_quarantined(self, build_executor, ledger, create_task, clock, relayer):
        task_id = create_task(delay_ms=1_000, metadata='{"autoAmm": true, "version": 1, "token": "ETH"}')
        clock.advance(ms=1_000)
        executor = build_executor(relayer=relayer)

        summary = await executor.run_once()

        assert summary[OUTCOME_QUARANTINED] == 1
        assert executor.ctx.alerts.history[0]["title"] == "Task rejected, quarantined"
        assert ledger.get_task(task_id).status == TaskStatus.PENDING


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_runs_until_stopped(self, build_executor, ledger, due_task, relayer):
        executor = build_executor(relayer=relayer)
        runner = asyncio.ensure_future(executor.start())

        await asyncio.sleep(0.05)
        assert executor.running
        executor.stop()
        await asyncio.wait_for(runner, timeout=2)

        assert not executor.running
        assert executor.cycle_count >= 1
        assert ledger.get_task(due_task) is None
