"""
Yield protocol selection.

Scores each candidate as apr_weight × normalized APR + risk_weight × normalized
safety, after dropping candidates below the TVL/APR floors. When the top-scored
candidate beats a safer one by less than liquidity_preference_apr_delta APR
points, the safer one wins (lower risk score, then higher TVL).

Risk scores are 0-10, lower is safer:
    2 + volatility component (0-8) + TVL adjustment (-2..+2), clamped 0-10
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from autopay.config.config import StrategyConfig
from autopay.domain.metadata import encode_yield_directive
from autopay.exceptions import ValidationError
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

HEURISTIC_CONFIDENCE = 0.7


@dataclass(frozen=True)
class ProtocolQuote:
    """Current APR/TVL snapshot for one protocol and token."""
    protocol: str
    token: str
    apr: float
    tvl: int
    risk_score: float = 5.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AprHistoryPoint:
    apr: float
    timestamp: datetime
    tvl: int


@dataclass
class SelectionDecision:
    selected_protocol: str
    apr: float
    score: float
    reasoning: str
    confidence: float = HEURISTIC_CONFIDENCE
    model: str = "heuristic"
    considered: List[ProtocolQuote] = field(default_factory=list)
    liquidity_override: bool = False


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calculate_volatility(history: Sequence[AprHistoryPoint]) -> float:
    """Population std-dev of absolute APR deltas between consecutive points."""
    if len(history) < 2:
        return 0.0
    ordered = sorted(history, key=lambda p: p.timestamp)
    deltas = [abs(b.apr - a.apr) for a, b in zip(ordered, ordered[1:])]
    mean = sum(deltas) / len(deltas)
    variance = sum((d - mean) ** 2 for d in deltas) / len(deltas)
    return math.sqrt(variance)


def calculate_risk_score(tvl: int, history: Sequence[AprHistoryPoint]) -> float:
    volatility_component = _clamp(calculate_volatility(history) / 5 * 8, 0, 8)

    if tvl < 100_000:
        tvl_adjustment = 2
    elif tvl < 1_000_000:
        tvl_adjustment = 1
    elif tvl >= 10_000_000:
        tvl_adjustment = -2
    else:
        tvl_adjustment = -1

    return _clamp(2 + volatility_component + tvl_adjustment, 0, 10)


def calculate_weighted_score(quote: ProtocolQuote, config: StrategyConfig) -> float:
    normalized_apr = _clamp(quote.apr / config.assumed_max_apr, 0, 1) * 100
    normalized_safety = _clamp((10 - quote.risk_score) / 10, 0, 1) * 100
    return normalized_apr * config.apr_weight + normalized_safety * config.risk_weight


def _is_safer(candidate: ProtocolQuote, incumbent: ProtocolQuote) -> bool:
    if candidate.risk_score != incumbent.risk_score:
        return candidate.risk_score < incumbent.risk_score
    return candidate.tvl > incumbent.tvl


def select_protocol(quotes: Sequence[ProtocolQuote], config: StrategyConfig) -> SelectionDecision:
    """
    Pick the protocol to hold funds in until the task's execution time.

    Raises:
        ValidationError: no candidate passes the TVL/APR floors
    """
    valid = [q for q in quotes if q.tvl >= config.min_tvl and q.apr >= config.min_apr]
    if not valid:
        raise ValidationError("No valid protocols found (failed TVL/APR thresholds)")

    scored = sorted(
        ((calculate_weighted_score(q, config), q) for q in valid),
        key=lambda pair: pair[0],
        reverse=True,
    )
    best_score, best = scored[0]

    chosen_score, chosen = best_score, best
    for score, candidate in scored[1:]:
        if best.apr - candidate.apr >= config.liquidity_preference_apr_delta:
            continue
        if _is_safer(candidate, chosen):
            chosen_score, chosen = score, candidate

    override = chosen is not best
    if override:
        logger.info(
            "Liquidity preference applied",
            top_scored=best.protocol,
            chosen=chosen.protocol,
            apr_delta=round(best.apr - chosen.apr, 4),
        )

    reasoning = " ".join([
        f"Selected {chosen.protocol} for token {chosen.token}.",
        f"APR={chosen.apr:.4f}%, TVL={chosen.tvl}, riskScore={chosen.risk_score:.2f}.",
        f"Heuristic score={chosen_score:.2f} (APR weight {config.apr_weight}, risk weight {config.risk_weight}).",
    ])
    if override:
        reasoning += (
            f" Preferred over {best.protocol} (APR delta below "
            f"{config.liquidity_preference_apr_delta} points, lower risk or deeper liquidity)."
        )

    return SelectionDecision(
        selected_protocol=chosen.protocol,
        apr=chosen.apr,
        score=chosen_score,
        reasoning=reasoning,
        considered=[q for _, q in scored],
        liquidity_override=override,
    )


def decision_to_metadata(
    decision: SelectionDecision,
    *,
    description: str,
    amount: int,
    target_date: datetime,
    token: str = "SUI",
) -> bytes:
    """Encode a selection as the task metadata written at scheduling time."""
    return encode_yield_directive(
        description=description,
        protocol=decision.selected_protocol,
        apr=decision.apr,
        amount=amount,
        target_date=target_date.astimezone(timezone.utc).isoformat(),
        token=token,
        reasoning=decision.reasoning,
    )


def quote_with_history(quote: ProtocolQuote, history: Optional[Sequence[AprHistoryPoint]]) -> ProtocolQuote:
    """Return quote with its risk score recomputed from APR history."""
    return ProtocolQuote(
        protocol=quote.protocol,
        token=quote.token,
        apr=quote.apr,
        tvl=quote.tvl,
        risk_score=calculate_risk_score(quote.tvl, history or []),
        timestamp=quote.timestamp,
    )
