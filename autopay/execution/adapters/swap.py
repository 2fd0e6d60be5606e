"""
Exchange leg (Cetus-style pool).

Quotes the pool, derives the minimum acceptable output from the slippage
bound, mints a zero coin for the non-input side, and appends the swap. Both
swap outputs are returned so the caller transfers everything the leg produced.
"""
from dataclasses import dataclass
from typing import List, Optional

from autopay.constants import BPS_DENOMINATOR, CLOCK_OBJECT_ID
from autopay.domain.models import SwapConfig
from autopay.domain.protocols import SwapQuoter
from autopay.exceptions import SlippageError, UnsupportedProtocolError, ValidationError
from autopay.execution.timeouts import call_with_timeout
from autopay.ledger.transaction import Argument, Transaction
from autopay.ledger.venues import COIN_ZERO_TARGET, ProtocolDeployment
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_SWAP_PROVIDERS = ("cetus",)


@dataclass
class SwapLegResult:
    coins_to_transfer: List[Argument]
    estimated_out: int
    min_out: int
    slippage_bps: int


def apply_slippage_bps(amount_out: int, slippage_bps: int) -> int:
    """amount_out × (10000 − bps) / 10000, floored."""
    if slippage_bps < 0 or slippage_bps > BPS_DENOMINATOR:
        raise SlippageError(f"Invalid slippageBps: {slippage_bps}")
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


class SwapAdapter:
    def __init__(
        self,
        deployment: ProtocolDeployment,
        quoter: SwapQuoter,
        default_slippage_bps: int,
        call_timeout_seconds: float = 10.0,
    ):
        self.deployment = deployment
        self.quoter = quoter
        self.default_slippage_bps = default_slippage_bps
        self.call_timeout_seconds = call_timeout_seconds

    async def append_swap(
        self,
        tx: Transaction,
        config: SwapConfig,
        input_coin: Argument,
        input_coin_type: str,
        amount_in: int,
        slippage_bps: Optional[int] = None,
    ) -> SwapLegResult:
        """
        Raises:
            UnsupportedProtocolError: provider is not supported
            ValidationError: input asset does not match the swap direction
            SlippageError: bound out of range or minimum output not positive
        """
        if config.provider not in SUPPORTED_SWAP_PROVIDERS:
            raise UnsupportedProtocolError(f"Unsupported swap provider: {config.provider}")
        if input_coin_type != config.input_coin_type:
            raise ValidationError(
                f"Swap input {config.input_coin_type} does not match withdrawn asset {input_coin_type}"
            )
        if amount_in <= 0:
            raise ValidationError(f"Swap amount must be positive, got {amount_in}")

        if slippage_bps is None:
            slippage_bps = config.slippage_bps if config.slippage_bps is not None else self.default_slippage_bps

        estimated_out = await call_with_timeout(
            self.quoter.preswap(config.pool_id, config.a2b, amount_in),
            self.call_timeout_seconds,
            "preswap",
        )
        min_out = apply_slippage_bps(int(estimated_out), slippage_bps)
        if min_out <= 0:
            raise SlippageError(
                f"Computed minOut is <= 0 (estimatedOut={estimated_out}, slippageBps={slippage_bps})"
            )

        zero_coin = tx.move_call(COIN_ZERO_TARGET, type_arguments=[config.output_coin_type])
        coin_a, coin_b = (input_coin, zero_coin) if config.a2b else (zero_coin, input_coin)

        swapped = tx.move_call(
            self.deployment.cetus_swap_target,
            arguments=[
                tx.object(config.pool_id),
                coin_a,
                coin_b,
                tx.pure(config.a2b),
                tx.pure(amount_in),
                tx.pure(min_out),
                tx.object(CLOCK_OBJECT_ID),
            ],
            type_arguments=[config.coin_type_a, config.coin_type_b],
        )

        logger.info(
            "Swap leg appended",
            pool_id=config.pool_id,
            a2b=config.a2b,
            amount_in=amount_in,
            estimated_out=estimated_out,
            min_out=min_out,
        )
        return SwapLegResult(
            coins_to_transfer=[swapped[0], swapped[1]],
            estimated_out=int(estimated_out),
            min_out=min_out,
            slippage_bps=slippage_bps,
        )
