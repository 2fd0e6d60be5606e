"""
Pytest configuration and shared fixtures.
"""
import pytest

from autopay.config.config import Config
from autopay.constants import DEFAULT_GAS_BUDGET
from autopay.ledger.calls import EscrowCalls
from autopay.ledger.client import LocalLedgerClient
from autopay.ledger.clock import ManualClock
from autopay.ledger.keys import KeypairSigner
from autopay.ledger.runtime import LocalLedger
from autopay.ledger.venues import ProtocolDeployment
from autopay.storage.db import Database
from autopay.storage.repository import StrategyRepository

START_MS = 1_700_000_000_000
REGISTRY_ID = "0x7e61"
ONE_SUI = 1_000_000_000
GAS_FLOAT = 50 * DEFAULT_GAS_BUDGET


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _isolate_secrets(monkeypatch):
    """Keys and databases from the developer environment never leak into tests."""
    for name in ("RELAYER_PRIVATE_KEY", "GAS_STATION_PRIVATE_KEY", "DATABASE_URL", "SLACK_WEBHOOK_URL", "AUTOPAY_DOTENV"):
        monkeypatch.delenv(name, raising=False)


def _signer(n: int) -> KeypairSigner:
    return KeypairSigner.from_seed(bytes([n]) * 32)


@pytest.fixture
def clock():
    return ManualClock(start_ms=START_MS)


@pytest.fixture
def admin():
    return _signer(1)


@pytest.fixture
def relayer():
    return _signer(2)


@pytest.fixture
def sponsor():
    return _signer(3)


@pytest.fixture
def sender():
    return _signer(4)


@pytest.fixture
def recipient():
    return _signer(5)


@pytest.fixture
def deployment():
    return ProtocolDeployment()


@pytest.fixture
def ledger(admin, relayer, sponsor, sender, clock, deployment):
    """Local ledger with gas for every signer and 10 SUI for the sender."""
    ledger = LocalLedger(admin.address, registry_id=REGISTRY_ID, deployment=deployment, clock=clock)
    for signer in (admin, relayer, sponsor):
        ledger.fund(signer.address, GAS_FLOAT)
    ledger.fund(sender.address, 10 * ONE_SUI + GAS_FLOAT)
    return ledger


@pytest.fixture
def client(ledger):
    return LocalLedgerClient(ledger)


@pytest.fixture
def calls(deployment):
    return EscrowCalls(deployment, REGISTRY_ID, DEFAULT_GAS_BUDGET)


@pytest.fixture
def submit(ledger):
    """Sign tx with every given signer and execute it on the local ledger."""
    def _submit(tx, *signers):
        tx_bytes = tx.to_bytes()
        return ledger.execute(tx_bytes, [s.sign(tx_bytes) for s in signers])
    return _submit


@pytest.fixture
def create_task(calls, submit, sender, recipient, clock):
    """Create a task from the sender and return its id."""
    def _create(amount=ONE_SUI, fee=1_000_000, delay_ms=3_600_000, metadata=""):
        tx = calls.create_task(
            sender.address, amount, recipient.address, clock.now_ms() + delay_ms, fee, metadata
        )
        effects = submit(tx, sender)
        assert effects.succeeded, effects.error
        return effects.created[0]
    return _create


@pytest.fixture
def config():
    return Config(environment="dev")


@pytest.fixture
def repository():
    db = Database("sqlite:///:memory:")
    db.create_all()
    return StrategyRepository(db)
