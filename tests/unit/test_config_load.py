"""
Configuration loading and validation.

Verifies that the bundled config loads, validates properly and respects
environment variable overrides. If config loading is broken, nothing works.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from autopay.config.config import (
    CONFIG_SCHEMA_VERSION,
    Config,
    GasConfig,
    LedgerConfig,
    RetryConfig,
    StrategyConfig,
    load_config,
)
from autopay.constants import DEFAULT_GAS_BUDGET
from autopay.domain.models import Network

CONFIG_PATH = Path(__file__).resolve().parents[2] / "autopay" / "config" / "config.yaml"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


def test_config_yaml_exists():
    """The bundled config must ship with the package."""
    assert CONFIG_PATH.exists(), f"Config file not found at {CONFIG_PATH}"


def test_default_config_loads():
    config = load_config()

    assert config.environment == "dev"
    assert config.ledger.network_enum == Network.TESTNET
    assert config.gas.gas_budget_limit == DEFAULT_GAS_BUDGET
    assert config.retry.max_attempts == 3
    assert config.signing.relayer_private_key is None


def test_config_has_required_sections():
    config = load_config(str(CONFIG_PATH))

    # These sections are accessed throughout the codebase
    for section in ("ledger", "protocols", "executor", "gas", "retry", "strategy", "signing", "data", "monitoring"):
        assert hasattr(config, section), f"Missing {section} config section"


def test_env_expansion_and_secret_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY", "0xbeef")
    monkeypatch.setenv("RELAYER_PRIVATE_KEY", "c2VjcmV0")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    path = _write(tmp_path, "environment: dev\nledger:\n  registry_id: \"${REGISTRY}\"\n")

    config = Config.from_yaml(path)

    assert config.ledger.registry_id == "0xbeef"
    assert config.signing.relayer_private_key == "c2VjcmV0"
    assert config.data.database_url == "sqlite:///:memory:"


def test_unexpanded_secret_placeholder_is_none(tmp_path):
    path = _write(tmp_path, "environment: dev\nsigning:\n  relayer_private_key: ${NOT_SET_ANYWHERE}\n")
    assert Config.from_yaml(path).signing.relayer_private_key is None


def test_environment_variable_overrides_yaml(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "dev")
    path = _write(tmp_path, "environment: prod\n")
    assert Config.from_yaml(path).environment == "dev"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.from_yaml(tmp_path / "nope.yaml")


def test_prod_requires_real_deployment_ids(tmp_path):
    path = _write(tmp_path, "environment: prod\n")
    with pytest.raises(ValueError, match="package_id"):
        load_config(str(path))

    path = _write(tmp_path, "environment: prod\nledger:\n  package_id: '0xfa11'\n  registry_id: '0xfa12'\n")
    assert load_config(str(path)).environment == "prod"


def test_retry_delays_must_be_ordered():
    config = Config(environment="dev", retry=RetryConfig(base_delay_ms=5_000, max_delay_ms=1_000))
    with pytest.raises(ValueError, match="max_delay_ms"):
        config.validate_config()


def test_gas_budget_must_be_positive():
    config = Config(environment="dev", gas=GasConfig(gas_budget_limit=0))
    with pytest.raises(ValueError, match="gas_budget_limit"):
        config.validate_config()


def test_strategy_weights_must_sum_to_one():
    with pytest.raises(PydanticValidationError):
        StrategyConfig(apr_weight=0.5, risk_weight=0.3)


def test_unknown_network_rejected():
    with pytest.raises(PydanticValidationError):
        LedgerConfig(network="localnet")


def test_deployment_follows_config():
    config = Config(environment="dev", ledger=LedgerConfig(package_id="0xfa11"))
    deployment = config.deployment()
    assert deployment.execute_task_target.startswith("0xfa11::")
    assert deployment.suilend_package_id == config.protocols.suilend_package_id


def test_config_schema_version_present():
    assert CONFIG_SCHEMA_VERSION
