"""
Context wiring and the relayer entrypoint.
"""
import base64

import pytest

from autopay.config.config import Config, DataConfig, GasConfig, SigningConfig
from autopay.constants import MAX_ALLOWED_GAS_BUDGET
from autopay.context import build_context
from autopay.entrypoints.relayer import LOCAL_GAS_FUNDING, build_local_runtime, build_strategy_store, run_relayer
from autopay.ledger.keys import KeypairSigner
from autopay.storage.repository import StrategyRepository

RELAYER_SEED = b"\x02" * 32
SPONSOR_SEED = b"\x03" * 32


def _b64(seed):
    return base64.b64encode(seed).decode()


@pytest.fixture
def keyed_config():
    return Config(
        environment="dev",
        signing=SigningConfig(relayer_private_key=_b64(RELAYER_SEED), gas_station_private_key=_b64(SPONSOR_SEED)),
        gas=GasConfig(gas_budget_limit=10 ** 12),
    )


def test_context_loads_signers_from_config(keyed_config, client):
    ctx = build_context(keyed_config, client)

    assert ctx.relayer.address == KeypairSigner.from_seed(RELAYER_SEED).address
    assert ctx.sponsor.address == KeypairSigner.from_seed(SPONSOR_SEED).address
    assert ctx.composer.gas_budget == MAX_ALLOWED_GAS_BUDGET
    assert ctx.retry_policy.config is keyed_config.retry


def test_context_without_keys_is_read_only(config, client):
    ctx = build_context(config, client)
    assert ctx.relayer is None
    assert ctx.sponsor is None


def test_local_runtime_funds_signers(keyed_config):
    relayer = KeypairSigner.from_seed(RELAYER_SEED)
    ledger, client = build_local_runtime(keyed_config, relayer)

    assert ledger.balance_of(relayer.address) == LOCAL_GAS_FUNDING
    assert ledger.registry.registry_id == keyed_config.ledger.registry_id
    assert client.ledger is ledger


def test_strategy_store_optional():
    assert build_strategy_store(Config(environment="dev")) is None
    store = build_strategy_store(Config(environment="dev", data=DataConfig(database_url="sqlite:///:memory:")))
    assert isinstance(store, StrategyRepository)


@pytest.mark.asyncio
async def test_run_relayer_single_scan(keyed_config):
    executor = await run_relayer(keyed_config, once=True, with_health=False)

    assert executor.cycle_count == 1
    assert not executor.read_only


@pytest.mark.asyncio
async def test_run_relayer_read_only_ignores_keys(keyed_config):
    executor = await run_relayer(keyed_config, once=True, read_only=True, with_health=False)
    assert executor.read_only
