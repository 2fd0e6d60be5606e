"""
Persistence of yield strategy records.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from autopay.domain.models import (
    NaviPositionRef,
    SuilendPositionRef,
    SwapConfig,
    YieldStrategyRecord,
)
from autopay.exceptions import PositionRefError, ValidationError
from autopay.storage.db import Database
from autopay.storage.repository import YieldStrategyModel

NATIVE = "0x2::sui::SUI"
USDC = "0xdba3::usdc::USDC"


def _record(task_id="0x1", user="0xa11ce", **overrides):
    params = dict(
        task_id=task_id,
        user_address=user,
        amount=2_500_000_000,
        target_address="0xb0b",
        selected_protocol="suilend",
        current_protocol="suilend",
        coin_type=NATIVE,
        apr_at_selection=Decimal("4.250000"),
        target_date=datetime(2026, 11, 1, tzinfo=timezone.utc),
        position_ref=SuilendPositionRef(obligation_owner_cap_id="0xc1", obligation_id="0xb1"),
    )
    params.update(overrides)
    return YieldStrategyRecord(**params)


def test_save_and_read_back(repository):
    swap = SwapConfig(pool_id="0x9001", coin_type_a=NATIVE, coin_type_b=USDC, a2b=True, slippage_bps=50)
    repository.save(_record(swap_config=swap))

    loaded = repository.get_by_task_id("0x1")

    assert loaded.amount == 2_500_000_000
    assert loaded.position_ref == SuilendPositionRef(obligation_owner_cap_id="0xc1", obligation_id="0xb1")
    assert loaded.swap_config == swap
    assert loaded.apr_at_selection == Decimal("4.25")
    assert loaded.target_date == datetime(2026, 11, 1, tzinfo=timezone.utc)


def test_missing_record_is_none(repository):
    assert repository.get_by_task_id("0xdead") is None


def test_save_is_upsert(repository):
    repository.save(_record())
    repository.save(_record(selected_protocol="navi", position_ref=NaviPositionRef(identifier=0, env="dev")))

    loaded = repository.get_by_task_id("0x1")

    assert loaded.selected_protocol == "navi"
    assert loaded.position_ref == NaviPositionRef(identifier=0, env="dev")
    assert len(repository.list_by_user("0xa11ce")) == 1


def test_list_by_user_newest_first(repository):
    now = datetime.now(timezone.utc)
    repository.save(_record("0x1", created_at=now - timedelta(days=2)))
    repository.save(_record("0x2", created_at=now))
    repository.save(_record("0x3", user="0xca7"))

    assert [r.task_id for r in repository.list_by_user("0xa11ce")] == ["0x2", "0x1"]


def test_update_current_protocol(repository):
    repository.save(_record())

    assert repository.update_current_protocol("0x1", None)
    assert repository.get_by_task_id("0x1").current_protocol is None
    assert not repository.update_current_protocol("0xdead", "navi")


def test_delete(repository):
    repository.save(_record())
    assert repository.delete("0x1")
    assert not repository.delete("0x1")
    assert repository.get_by_task_id("0x1") is None


@pytest.mark.parametrize("stored", [
    "not json",
    '{"protocol": "suilend", "obligationId": "0xb1"}',
    '{"protocol": "aave"}',
    '{"protocol": "navi", "identifier": 0, "env": "staging"}',
])
def test_corrupt_position_ref_is_security_error(repository, stored):
    repository.save(_record())
    with repository.db.get_session() as session:
        model = session.query(YieldStrategyModel).filter(YieldStrategyModel.task_id == "0x1").first()
        model.position_ref = stored

    with pytest.raises(PositionRefError):
        repository.get_by_task_id("0x1")


@pytest.mark.parametrize("a2b", ["false", "true", 0, 1, None])
def test_non_boolean_swap_direction_is_rejected(repository, a2b):
    repository.save(_record(swap_config=SwapConfig(pool_id="0x9001", coin_type_a=NATIVE, coin_type_b=USDC, a2b=False)))
    stored = (
        '{"provider": "cetus", "poolId": "0x9001", "coinTypeA": "%s", "coinTypeB": "%s", "a2b": %s}'
        % (NATIVE, USDC, json.dumps(a2b))
    )
    with repository.db.get_session() as session:
        model = session.query(YieldStrategyModel).filter(YieldStrategyModel.task_id == "0x1").first()
        model.swap_config = stored

    with pytest.raises(ValidationError):
        repository.get_by_task_id("0x1")


def test_boolean_swap_direction_kept_as_stored():
    raw = {"poolId": "0x9001", "coinTypeA": NATIVE, "coinTypeB": USDC, "a2b": False}
    swap = SwapConfig.from_dict(raw)
    assert swap.a2b is False
    assert swap.input_coin_type == USDC


def test_record_without_ref_reads_as_none(repository):
    repository.save(_record(position_ref=None))
    assert repository.get_by_task_id("0x1").position_ref is None


def test_database_rejects_unknown_backend():
    with pytest.raises(ValueError):
        Database("mysql://localhost/autopay")
