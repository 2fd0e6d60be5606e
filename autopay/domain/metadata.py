"""
Versioned task metadata payload.

Task metadata is opaque bytes on the ledger. The relayer understands exactly one
tagged payload family:

    PlainPayment          any text that is not a yield directive
    YieldDirective        {"autoAmm": true, "version": 1, ...} validated against AutoAmmMetadataV1

Unknown versions are ignored (treated as a plain payment), never guessed.
A payload that claims a known version but fails validation is rejected.
"""
import json
from dataclasses import dataclass
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from autopay.exceptions import MetadataDecodeError
from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_METADATA_VERSIONS = (1,)

RecommendedProtocol = Literal["scallop", "navi", "cetus", "suilend"]


class RecommendationV1(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    protocol: RecommendedProtocol
    apr: float = Field(allow_inf_nan=False)


class ConsideredProtocolV1(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    protocol: RecommendedProtocol
    apr: float = Field(allow_inf_nan=False)
    riskScore: float = Field(allow_inf_nan=False)
    tvl: str


class AutoAmmMetadataV1(BaseModel):
    """Schema of the v1 yield directive written by the task creator."""
    model_config = ConfigDict(strict=True, extra="ignore")

    version: Literal[1]
    autoAmm: Literal[True]
    description: str
    token: Literal["SUI"]
    amountMist: str = Field(pattern=r"^[0-9]+$")
    targetDate: str
    recommendation: RecommendationV1
    reasoning: Optional[str] = None
    consideredTop: Optional[List[ConsideredProtocolV1]] = None


@dataclass(frozen=True)
class PlainPayment:
    description: str
    ignored_version: Optional[int] = None


@dataclass(frozen=True)
class YieldDirective:
    protocol: str
    apr: float
    token: str
    amount: int
    target_date: str
    description: str = ""
    reasoning: Optional[str] = None


TaskPayload = Union[PlainPayment, YieldDirective]


def _to_text(raw: Union[bytes, bytearray, str, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    try:
        return bytes(raw).decode("utf-8")
    except UnicodeDecodeError:
        return ""


def decode_task_metadata(raw: Union[bytes, bytearray, str, None]) -> TaskPayload:
    """
    Decode task metadata into a PlainPayment or a YieldDirective.

    Raises:
        MetadataDecodeError: payload claims a supported version but is malformed
    """
    text = _to_text(raw).strip()
    if not text:
        return PlainPayment(description="")

    try:
        parsed = json.loads(text)
    except ValueError:
        return PlainPayment(description=text)

    if not isinstance(parsed, dict) or parsed.get("autoAmm") is not True:
        return PlainPayment(description=text)

    version = parsed.get("version")
    if isinstance(version, bool) or version not in SUPPORTED_METADATA_VERSIONS:
        logger.warning("Ignoring task metadata with unknown version", version=version)
        return PlainPayment(
            description=str(parsed.get("description", "")),
            ignored_version=version if isinstance(version, int) and not isinstance(version, bool) else None,
        )

    try:
        model = AutoAmmMetadataV1.model_validate(parsed)
    except PydanticValidationError as e:
        raise MetadataDecodeError(f"Invalid v{version} yield directive: {e.error_count()} error(s)") from e

    return YieldDirective(
        protocol=model.recommendation.protocol,
        apr=model.recommendation.apr,
        token=model.token,
        amount=int(model.amountMist),
        target_date=model.targetDate,
        description=model.description,
        reasoning=model.reasoning,
    )


def encode_yield_directive(
    *,
    description: str,
    protocol: str,
    apr: float,
    amount: int,
    target_date: str,
    token: str = "SUI",
    reasoning: Optional[str] = None,
) -> bytes:
    """Encode a v1 yield directive as task metadata bytes."""
    model = AutoAmmMetadataV1(
        version=1,
        autoAmm=True,
        description=description,
        token=token,
        amountMist=str(amount),
        targetDate=target_date,
        recommendation=RecommendationV1(protocol=protocol, apr=float(apr)),
        reasoning=reasoning,
    )
    return model.model_dump_json(exclude_none=True).encode("utf-8")
