"""
Relayer process entrypoint.

    python -m autopay.entrypoints.relayer

Startup order:
- dotenv files (never in production), then config, then logging.
- Executor context, built once; no module-level clients or keys.
- Optional health server in a daemon thread.
- Scan loop until SIGINT/SIGTERM; in-flight submissions finish before exit.

The process drives the in-process ledger runtime. A network RPC binding is an
external collaborator that satisfies the same LedgerClient protocol.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import threading
from typing import Optional, Tuple

from autopay.constants import MAX_ALLOWED_GAS_BUDGET

# Gas float for relayer and sponsor on a fresh local runtime
LOCAL_GAS_FUNDING = 100 * MAX_ALLOWED_GAS_BUDGET


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def build_local_runtime(config, relayer=None, sponsor=None, clock=None) -> Tuple["LocalLedger", "LocalLedgerClient"]:
    """Fresh local ledger configured from `config`, with gas float for the signers."""
    from autopay.ledger.client import LocalLedgerClient
    from autopay.ledger.runtime import LocalLedger

    admin = relayer.address if relayer is not None else "0xad"
    ledger = LocalLedger(
        admin,
        registry_id=config.ledger.registry_id,
        deployment=config.deployment(),
        network=config.ledger.network_enum,
        clock=clock,
        native_asset=config.ledger.native_asset,
    )
    for signer in (relayer, sponsor):
        if signer is not None:
            ledger.fund(signer.address, LOCAL_GAS_FUNDING)
    return ledger, LocalLedgerClient(ledger)


def build_strategy_store(config):
    """StrategyRepository over data.database_url, or None when unset."""
    if not config.data.database_url:
        return None
    from autopay.storage.db import Database
    from autopay.storage.repository import StrategyRepository

    db = Database(config.data.database_url, echo=config.data.echo_sql)
    db.create_all()
    return StrategyRepository(db)


def start_health_server(app, host: str, port: int) -> threading.Thread:
    import uvicorn

    def _run_health() -> None:
        uvicorn.run(app, host=host, port=port, log_level="info")

    t = threading.Thread(target=_run_health, name="relayer-health", daemon=True)
    t.start()
    return t


async def run_relayer(config, *, once: bool = False, read_only: bool = False, with_health: bool = True):
    """Build the context and run the executor. Returns the executor after it stops."""
    from autopay.context import build_context
    from autopay.execution.executor import OptimisticExecutor
    from autopay.health import create_health_app
    from autopay.ledger.clock import SystemClock
    from autopay.ledger.keys import KeypairSigner
    from autopay.monitoring.logger import get_logger

    logger = get_logger(__name__)

    relayer = None
    sponsor = None
    if not read_only and config.signing.relayer_private_key:
        relayer = KeypairSigner.from_secret_b64(config.signing.relayer_private_key)
    if relayer is not None and config.signing.gas_station_private_key:
        sponsor = KeypairSigner.from_secret_b64(config.signing.gas_station_private_key)

    if config.ledger.rpc_url:
        logger.warning(
            "RPC_BINDING_EXTERNAL",
            rpc_url=config.ledger.rpc_url,
            message="ledger.rpc_url is served by an external binding; this process drives the local runtime",
        )

    clock = SystemClock()
    _, client = build_local_runtime(config, relayer, sponsor, clock)
    ctx = build_context(
        config,
        client,
        strategies=build_strategy_store(config),
        clock=clock,
        relayer=relayer,
        sponsor=sponsor,
        read_only=read_only,
    )
    executor = OptimisticExecutor(ctx)

    if with_health and config.monitoring.health_port:
        try:
            start_health_server(
                create_health_app(ctx.metrics, executor),
                config.monitoring.health_host,
                config.monitoring.health_port,
            )
            logger.info(
                "Relayer health server started",
                host=config.monitoring.health_host,
                port=config.monitoring.health_port,
            )
        except (OSError, ValueError, ImportError) as e:
            logger.critical("Failed to start health server", error=str(e), error_type=type(e).__name__)
            raise SystemExit(1)

    if once:
        summary = await executor.run_once()
        logger.info("Single scan complete", **summary)
        return executor

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, executor.stop)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; KeyboardInterrupt still stops the loop
            pass

    await executor.start()
    logger.info("Relayer stopped", **ctx.metrics.snapshot())
    return executor


def main() -> None:
    try:
        from autopay.config.dotenv_loader import load_dotenv_files
        from autopay.config.config import load_config
        from autopay.monitoring.logger import setup_logging, get_logger
    except (ImportError, OSError, ValueError, TypeError) as e:
        print(f"FATAL: could not import config/logging: {type(e).__name__}: {e}", file=sys.stderr)
        raise SystemExit(1)

    dotenv_files = load_dotenv_files()

    try:
        config = load_config(_env("CONFIG_PATH"))
    except (OSError, ValueError, TypeError) as e:
        print(f"FATAL: failed to load config: {type(e).__name__}: {e}", file=sys.stderr)
        raise SystemExit(1)

    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    logger = get_logger(__name__)
    logger.info(
        "RELAYER_STARTUP",
        environment=config.environment,
        dotenv_files=[str(p) for p in dotenv_files],
        network=config.ledger.network,
        package_id=config.ledger.package_id,
        registry_id=config.ledger.registry_id,
    )

    try:
        asyncio.run(run_relayer(config))
    except KeyboardInterrupt:
        logger.info("Relayer stopped by user")
        raise SystemExit(0)
    except Exception as e:
        logger.critical("Relayer crashed", error=str(e), error_type=type(e).__name__, exc_info=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
