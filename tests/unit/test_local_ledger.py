"""
Unit tests for the local ledger runtime: signatures, gas, atomic rollback and
the event log.
"""
import pytest

from autopay.constants import DEFAULT_GAS_BUDGET, GAS_BASE_COST, GAS_PER_COMMAND
from autopay.domain.models import TaskStatus
from autopay.exceptions import AbortCode, InsufficientGasError, LedgerAbort, ValidationError
from autopay.ledger.keys import KeypairSigner
from autopay.ledger.transaction import Transaction
from autopay.ledger.venues import COIN_ZERO_TARGET, WITHDRAW_FROM_SENDER_TARGET

from tests.conftest import GAS_FLOAT, ONE_SUI

NATIVE = "0x2::sui::SUI"


def _gas(n_commands):
    return GAS_BASE_COST + GAS_PER_COMMAND * n_commands


class TestCreateThroughTransactions:
    def test_create_task_locks_balance(self, ledger, create_task, sender):
        task_id = create_task(amount=ONE_SUI, fee=1_000_000)

        task = ledger.get_task(task_id)
        assert task.principal == 999_000_000
        assert task.status == TaskStatus.PENDING
        assert ledger.balance_of(sender.address) == 9 * ONE_SUI + GAS_FLOAT - _gas(2)
        assert ledger.registry.total_tasks_created == 1

    def test_task_created_event_is_queryable(self, ledger, create_task):
        first = create_task()
        second = create_task(delay_ms=7_200_000)

        events = ledger.query_events("TaskCreated", limit=10)
        assert [e.event.task_id for e in events] == [second, first]
        assert ledger.query_events("TaskCreated", limit=1)[0].event.task_id == second

    def test_aborted_create_charges_gas_only(self, ledger, calls, submit, sender, recipient, clock):
        before = ledger.balance_of(sender.address)
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, clock.now_ms() - 1, 1_000_000)

        effects = submit(tx, sender)

        assert not effects.succeeded
        assert "InvalidExecutionTime" in effects.error
        assert ledger.balance_of(sender.address) == before - _gas(2)
        assert ledger.query_events("TaskCreated") == []
        assert ledger.state.escrow.task_ids() == []


class TestSignatures:
    def test_missing_sender_signature_rejected(self, ledger, calls, sender, relayer, recipient, clock):
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, clock.now_ms() + 10, 0)
        tx_bytes = tx.to_bytes()
        before = ledger.balance_of(sender.address)

        with pytest.raises(LedgerAbort) as exc:
            ledger.execute(tx_bytes, [relayer.sign(tx_bytes)])

        assert exc.value.code == AbortCode.INVALID_SIGNATURE
        assert ledger.balance_of(sender.address) == before

    def test_signature_over_other_bytes_rejected(self, ledger, calls, sender, recipient, clock):
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, clock.now_ms() + 10, 0)
        other = calls.create_task(sender.address, 2 * ONE_SUI, recipient.address, clock.now_ms() + 10, 0)

        with pytest.raises(LedgerAbort) as exc:
            ledger.execute(tx.to_bytes(), [sender.sign(other.to_bytes())])
        assert exc.value.code == AbortCode.INVALID_SIGNATURE

    def test_sponsored_transaction_needs_both_signatures(self, ledger, calls, sender, sponsor, recipient, clock):
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, clock.now_ms() + 10, 0)
        tx.set_gas_owner(sponsor.address)
        tx_bytes = tx.to_bytes()

        with pytest.raises(LedgerAbort):
            ledger.execute(tx_bytes, [sender.sign(tx_bytes)])

        sender_before = ledger.balance_of(sender.address)
        sponsor_before = ledger.balance_of(sponsor.address)
        effects = ledger.execute(tx_bytes, [sender.sign(tx_bytes), sponsor.sign(tx_bytes)])

        assert effects.succeeded
        # Sender pays only the principal; the sponsor pays gas
        assert ledger.balance_of(sender.address) == sender_before - ONE_SUI
        assert ledger.balance_of(sponsor.address) == sponsor_before - _gas(2)


class TestGas:
    def test_gas_owner_without_balance_is_rejected(self, ledger, calls, recipient, clock):
        pauper = KeypairSigner.from_seed(b"\x09" * 32)
        tx = calls.create_task(pauper.address, ONE_SUI, recipient.address, clock.now_ms() + 10, 0)
        tx_bytes = tx.to_bytes()

        with pytest.raises(InsufficientGasError):
            ledger.execute(tx_bytes, [pauper.sign(tx_bytes)])

    def test_budget_below_required_consumes_budget(self, ledger, calls, sender, recipient, clock):
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, clock.now_ms() + 10, 0)
        tx.set_gas_budget(GAS_BASE_COST)
        tx_bytes = tx.to_bytes()
        before = ledger.balance_of(sender.address)

        effects = ledger.execute(tx_bytes, [sender.sign(tx_bytes)])

        assert not effects.succeeded
        assert "InsufficientGas" in effects.error
        assert ledger.balance_of(sender.address) == before - GAS_BASE_COST

    def test_commands_cannot_spend_reserved_gas(self, ledger, sender):
        # Withdraw everything the sender holds while the budget is reserved
        balance = ledger.balance_of(sender.address)
        tx = Transaction()
        tx.set_sender(sender.address)
        tx.set_gas_budget(DEFAULT_GAS_BUDGET)
        coin = tx.move_call(WITHDRAW_FROM_SENDER_TARGET, arguments=[tx.pure(balance)])
        tx.transfer_objects([coin], sender.address)
        tx_bytes = tx.to_bytes()

        effects = ledger.execute(tx_bytes, [sender.sign(tx_bytes)])

        assert not effects.succeeded
        assert "InsufficientFunds" in effects.error
        assert ledger.balance_of(sender.address) == balance - _gas(2)


class TestAtomicity:
    def test_unconsumed_funds_abort_transaction(self, ledger, sender):
        tx = Transaction()
        tx.set_sender(sender.address)
        tx.set_gas_budget(DEFAULT_GAS_BUDGET)
        tx.move_call(WITHDRAW_FROM_SENDER_TARGET, arguments=[tx.pure(ONE_SUI)])
        tx_bytes = tx.to_bytes()
        before = ledger.balance_of(sender.address)

        effects = ledger.execute(tx_bytes, [sender.sign(tx_bytes)])

        assert not effects.succeeded
        assert "UnusedValue" in effects.error
        assert ledger.balance_of(sender.address) == before - _gas(1)

    def test_consumed_zero_coin_is_fine(self, ledger, sender):
        tx = Transaction()
        tx.set_sender(sender.address)
        tx.set_gas_budget(DEFAULT_GAS_BUDGET)
        zero = tx.move_call(COIN_ZERO_TARGET, type_arguments=[NATIVE])
        tx.transfer_objects([zero], sender.address)
        tx_bytes = tx.to_bytes()

        assert ledger.execute(tx_bytes, [sender.sign(tx_bytes)]).succeeded

    def test_later_abort_rolls_back_earlier_commands(self, ledger, calls, sender, recipient, clock):
        ok_at = clock.now_ms() + 10
        tx = calls.create_task(sender.address, ONE_SUI, recipient.address, ok_at, 0)
        # Second command in the same transaction fails validation
        payment = tx.move_call(WITHDRAW_FROM_SENDER_TARGET, arguments=[tx.pure(ONE_SUI)])
        tx.move_call(
            calls.deployment.autopay_target("create_task"),
            arguments=[
                payment,
                tx.object(calls.registry_id),
                tx.pure(recipient.address),
                tx.pure(clock.now_ms()),
                tx.pure(0),
                tx.pure(""),
                tx.object("0x6"),
            ],
        )
        tx_bytes = tx.to_bytes()
        before = ledger.balance_of(sender.address)

        effects = ledger.execute(tx_bytes, [sender.sign(tx_bytes)])

        assert not effects.succeeded
        assert ledger.state.escrow.task_ids() == []
        assert ledger.registry.total_tasks_created == 0
        assert ledger.balance_of(sender.address) == before - _gas(4)

    def test_supply_is_conserved_apart_from_gas(self, ledger, create_task, calls, submit, relayer, clock):
        supply_before = ledger.state.bank.total_supply(NATIVE)
        task_id = create_task(delay_ms=1_000)
        clock.advance(ms=1_000)

        tx = Transaction()
        tx.set_sender(relayer.address)
        tx.set_gas_budget(DEFAULT_GAS_BUDGET)
        tx.move_call(
            calls.deployment.execute_task_target,
            arguments=[tx.object(task_id), tx.object(calls.registry_id), tx.object("0x6")],
        )
        assert submit(tx, relayer).succeeded

        burned = _gas(2) + _gas(1)
        assert ledger.state.bank.total_supply(NATIVE) + ledger.state.escrow.locked_value() == supply_before - burned

    def test_malformed_bytes_rejected(self, ledger, sender):
        with pytest.raises(ValidationError):
            ledger.execute(b"not a transaction", [])


class TestAdminCalls:
    def test_pause_through_transaction(self, ledger, calls, submit, admin):
        assert submit(calls.admin_call(admin.address, "set_paused", True), admin).succeeded
        assert ledger.registry.paused

    def test_non_admin_pause_fails(self, ledger, calls, submit, sender):
        effects = submit(calls.admin_call(sender.address, "set_paused", True), sender)
        assert not effects.succeeded
        assert "Unauthorized" in effects.error
        assert not ledger.registry.paused

    def test_clock_drift_view(self, ledger, clock):
        assert ledger.check_clock_drift(clock.now_ms() + 6_000) == (6_000, False)
        assert ledger.check_clock_drift(clock.now_ms() + 6_000, threshold_ms=10_000) == (6_000, True)
