"""
Executor context.

Everything the executor talks to is constructed once at startup and handed
around explicitly: ledger client, signers, composer, strategy store, metrics
and alerts. No module-level clients or keypairs.
"""
from dataclasses import dataclass, field
from typing import Optional

from autopay.config.config import Config
from autopay.domain.protocols import LedgerClient, Signer, StrategyStore, SwapQuoter
from autopay.execution.adapters.swap import SwapAdapter
from autopay.execution.adapters.withdraw import WithdrawAdapterRegistry
from autopay.execution.composer import AtomicSettlementComposer
from autopay.execution.discovery import TaskDiscovery
from autopay.execution.error_recovery import ErrorClassifier, RetryPolicy
from autopay.ledger.clock import Clock, SystemClock
from autopay.ledger.keys import KeypairSigner
from autopay.monitoring.alerts import AlertSystem
from autopay.monitoring.logger import get_logger
from autopay.monitoring.metrics import MetricsCollector

logger = get_logger(__name__)


@dataclass
class ExecutorContext:
    config: Config
    client: LedgerClient
    composer: AtomicSettlementComposer
    discovery: TaskDiscovery
    relayer: Optional[Signer] = None
    sponsor: Optional[Signer] = None
    strategies: Optional[StrategyStore] = None
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    alerts: AlertSystem = field(default_factory=AlertSystem)
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    retry_policy: Optional[RetryPolicy] = None
    clock: Clock = field(default_factory=SystemClock)

    def __post_init__(self):
        if self.retry_policy is None:
            self.retry_policy = RetryPolicy(self.config.retry)


def build_context(
    config: Config,
    client: LedgerClient,
    quoter: Optional[SwapQuoter] = None,
    strategies: Optional[StrategyStore] = None,
    clock: Optional[Clock] = None,
    relayer: Optional[Signer] = None,
    sponsor: Optional[Signer] = None,
    read_only: bool = False,
) -> ExecutorContext:
    """
    Wire the executor's collaborators from configuration.

    Signers default to the keys in config.signing. With no relayer key, or
    with read_only set, due tasks are reported but never submitted.
    The quoter defaults to the client when it can quote swaps.
    """
    clock = clock or SystemClock()
    deployment = config.deployment()
    timeout = config.executor.call_timeout_seconds

    if read_only:
        relayer, sponsor = None, None
    else:
        if relayer is None and config.signing.relayer_private_key:
            relayer = KeypairSigner.from_secret_b64(config.signing.relayer_private_key)
        if sponsor is None and config.signing.gas_station_private_key:
            sponsor = KeypairSigner.from_secret_b64(config.signing.gas_station_private_key)

    if quoter is None:
        quoter = client  # type: ignore[assignment]

    composer = AtomicSettlementComposer(
        deployment=deployment,
        registry_id=config.ledger.registry_id,
        network=config.ledger.network_enum,
        gas_budget_limit=config.gas.gas_budget_limit,
        withdraw_adapters=WithdrawAdapterRegistry(deployment),
        swap_adapter=SwapAdapter(
            deployment,
            quoter,
            default_slippage_bps=config.executor.default_slippage_bps,
            call_timeout_seconds=timeout,
        ),
        call_timeout_seconds=timeout,
    )
    discovery = TaskDiscovery(
        client,
        event_page_limit=config.executor.event_page_limit,
        call_timeout_seconds=timeout,
        local_clock=clock,
    )

    ctx = ExecutorContext(
        config=config,
        client=client,
        composer=composer,
        discovery=discovery,
        relayer=relayer,
        sponsor=sponsor,
        strategies=strategies,
        alerts=AlertSystem(config.monitoring.alert_methods, config.monitoring.slack_webhook_url),
        clock=clock,
    )
    logger.info(
        "Executor context built",
        network=config.ledger.network,
        registry_id=config.ledger.registry_id,
        relayer=relayer.address if relayer else None,
        sponsor=sponsor.address if sponsor else None,
        gas_budget=composer.gas_budget,
        read_only=relayer is None,
    )
    return ctx
