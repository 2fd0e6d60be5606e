"""
CLI entrypoint for the autopay relayer.

Provides commands for run, check-config, keygen, select (yield protocol choice
and task metadata) and a local demo settlement.
"""
import asyncio
import base64
import math
import os
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, get_args

import typer

from autopay.config.config import load_config
from autopay.config.dotenv_loader import load_dotenv_files
from autopay.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="autopay-relayer",
    help="Scheduled escrow relayer",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path]):
    load_dotenv_files()
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    once: bool = typer.Option(False, "--once", help="Run a single scan and exit"),
    read_only: bool = typer.Option(False, "--read-only", help="Report due tasks without submitting"),
    no_health: bool = typer.Option(False, "--no-health", help="Do not start the health server"),
):
    """
    Run the relayer scan loop.

    Example:
        autopay-relayer run --config autopay/config/config.yaml
    """
    from autopay.entrypoints.relayer import run_relayer

    config = _load(config_path)
    logger.info("Starting relayer", environment=config.environment, network=config.ledger.network, once=once)
    try:
        asyncio.run(run_relayer(config, once=once, read_only=read_only, with_health=not no_health))
    except KeyboardInterrupt:
        logger.info("Relayer stopped by user")


@app.command("check-config")
def check_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Load and validate configuration, then print the effective settings."""
    try:
        config = _load(config_path)
    except (OSError, ValueError) as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(1)

    from autopay.execution.composer import clamp_gas_budget

    typer.echo("✅ Configuration valid")
    typer.echo(f"  environment:     {config.environment}")
    typer.echo(f"  network:         {config.ledger.network}")
    typer.echo(f"  package_id:      {config.ledger.package_id}")
    typer.echo(f"  registry_id:     {config.ledger.registry_id}")
    typer.echo(f"  gas budget:      {clamp_gas_budget(config.gas.gas_budget_limit)} "
               f"(configured {config.gas.gas_budget_limit})")
    typer.echo(f"  scan interval:   {config.executor.scan_interval_seconds}s")
    typer.echo(f"  relayer key:     {'set' if config.signing.relayer_private_key else 'missing (read-only)'}")
    typer.echo(f"  gas station key: {'set' if config.signing.gas_station_private_key else 'not set (direct mode)'}")
    typer.echo(f"  strategy store:  {'set' if config.data.database_url else 'not set'}")


@app.command()
def keygen():
    """Generate an ed25519 key and print its base64 secret and address."""
    from autopay.ledger.keys import KeypairSigner

    seed = os.urandom(32)
    signer = KeypairSigner.from_seed(seed)
    typer.echo(f"address: {signer.address}")
    typer.echo(f"secret:  {base64.b64encode(seed).decode('ascii')}")


@app.command()
def demo(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    amount: int = typer.Option(1_000_000_000, "--amount", help="Payment in base units"),
    fee: int = typer.Option(1_000_000, "--fee", help="Relayer fee in base units"),
    sponsored: bool = typer.Option(False, "--sponsored", help="Pay gas from a separate gas station key"),
):
    """Create one task on a local ledger, advance time and settle it."""
    from autopay.context import build_context
    from autopay.execution.composer import clamp_gas_budget
    from autopay.execution.executor import OptimisticExecutor
    from autopay.entrypoints.relayer import build_local_runtime
    from autopay.ledger.calls import EscrowCalls
    from autopay.ledger.clock import ManualClock, SystemClock
    from autopay.ledger.keys import KeypairSigner

    config = _load(config_path)
    clock = ManualClock(start_ms=SystemClock().now_ms())
    relayer = KeypairSigner.generate()
    sponsor = KeypairSigner.generate() if sponsored else None
    sender = KeypairSigner.generate()
    recipient = KeypairSigner.generate()

    ledger, client = build_local_runtime(config, relayer, sponsor, clock)
    ledger.fund(sender.address, amount + 10 * clamp_gas_budget(config.gas.gas_budget_limit))

    calls = EscrowCalls(config.deployment(), config.ledger.registry_id, clamp_gas_budget(config.gas.gas_budget_limit))
    execute_at = clock.now_ms() + 60_000
    tx_bytes = calls.create_task(sender.address, amount, recipient.address, execute_at, fee, "demo payment").to_bytes()
    created = ledger.execute(tx_bytes, [sender.sign(tx_bytes)])
    if not created.succeeded:
        typer.echo(f"❌ create_task failed: {created.error}", err=True)
        raise typer.Exit(1)
    task_id = created.created[0]
    typer.echo(f"created task {task_id} due at {execute_at}")

    clock.advance(seconds=61)
    ctx = build_context(config, client, clock=clock, relayer=relayer, sponsor=sponsor)
    summary = asyncio.run(OptimisticExecutor(ctx).run_once())

    typer.echo(f"scan: {summary}")
    typer.echo(f"recipient balance: {ledger.balance_of(recipient.address)}")
    typer.echo(f"task still live:   {ledger.get_task(task_id) is not None}")
    typer.echo(f"registry:          {ledger.registry.stats()}")


@app.command("select")
def select_cmd(
    quotes: List[str] = typer.Argument(..., help="Candidates as protocol:apr:tvl[:risk_score]"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    amount: int = typer.Option(..., "--amount", help="Payment in base units"),
    target_date: datetime = typer.Option(..., "--target-date", formats=["%Y-%m-%d"], help="Execution date (UTC)"),
    description: str = typer.Option("", "--description", help="Payment description"),
):
    """
    Pick a yield protocol and print the task metadata to schedule with.

    Example:
        autopay-relayer select suilend:5.1:8000000 navi:5.4:2500000:4 --amount 1000000000 --target-date 2026-11-01
    """
    from autopay.domain.metadata import RecommendedProtocol
    from autopay.exceptions import ValidationError
    from autopay.strategy.selection import ProtocolQuote, decision_to_metadata, select_protocol

    config = _load(config_path)
    candidates = []
    for raw in quotes:
        parts = raw.split(":")
        if len(parts) not in (3, 4):
            raise typer.BadParameter(f"expected protocol:apr:tvl[:risk_score], got {raw!r}")
        if parts[0] not in get_args(RecommendedProtocol):
            raise typer.BadParameter(f"unknown protocol {parts[0]!r}")
        try:
            quote = ProtocolQuote(protocol=parts[0], token="SUI", apr=float(parts[1]), tvl=int(parts[2]))
            if len(parts) == 4:
                quote = replace(quote, risk_score=float(parts[3]))
            if not math.isfinite(quote.apr):
                raise ValueError("apr must be finite")
        except ValueError as e:
            raise typer.BadParameter(f"bad quote {raw!r}: {e}")
        candidates.append(quote)

    try:
        decision = select_protocol(candidates, config.strategy)
    except ValidationError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    metadata = decision_to_metadata(
        decision,
        description=description,
        amount=amount,
        target_date=target_date.replace(tzinfo=timezone.utc),
    )
    typer.echo(f"selected:  {decision.selected_protocol} (APR {decision.apr:.4f}%, score {decision.score:.2f})")
    typer.echo(f"override:  {decision.liquidity_override}")
    typer.echo(f"reasoning: {decision.reasoning}")
    typer.echo(f"metadata:  {metadata.decode('utf-8')}")


if __name__ == "__main__":
    app()
