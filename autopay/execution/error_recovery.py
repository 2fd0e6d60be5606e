"""
Error classification and retry policy.

The classifier maps any failure (raised exception or failed-effects error
string) to an ErrorKind. The policy maps ErrorKind + attempt to an action:

    TIME_NOT_READY                       retry after not_ready_delay_ms up to max_not_ready_retries, then drop
    CONTRACT_PAUSED                      retry after paused_backoff_ms
    NETWORK, INSUFFICIENT_GAS, UNKNOWN   retry after min(base × 2^attempt, max), bounded attempts
    OBJECT_NOT_FOUND, INVALID_STATUS     drop (another relayer or the sender got there first)
    VALIDATION, SECURITY                 quarantine until the task changes on the ledger
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Union

from autopay.config.config import RetryConfig
from autopay.exceptions import (
    DataError,
    InsufficientGasError,
    NetworkError,
    SecurityError,
)


class ErrorKind(str, Enum):
    INSUFFICIENT_GAS = "InsufficientGas"
    NETWORK = "Network"
    OBJECT_NOT_FOUND = "ObjectNotFound"
    TIME_NOT_READY = "TimeNotReady"
    CONTRACT_PAUSED = "ContractPaused"
    INVALID_STATUS = "InvalidStatus"
    VALIDATION = "Validation"
    SECURITY = "Security"
    UNKNOWN = "Unknown"


class RetryAction(str, Enum):
    RETRY = "retry"
    DROP = "drop"
    QUARANTINE = "quarantine"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_ms: int = 0


_VALIDATION_MARKERS = (
    "FeeTooLow",
    "Unauthorized",
    "InvalidExecutionTime",
    "InsufficientFunds",
    "PositionNotFound",
    "UnusedValue",
    "InvalidArgument",
    "InvalidSignature",
)


class ErrorClassifier:
    """Maps failures to ErrorKind. Type checks first, then message markers."""

    def classify(self, err: Union[BaseException, str]) -> ErrorKind:
        if isinstance(err, SecurityError):
            return ErrorKind.SECURITY
        if isinstance(err, InsufficientGasError):
            return ErrorKind.INSUFFICIENT_GAS
        if isinstance(err, (NetworkError, asyncio.TimeoutError, ConnectionError)):
            return ErrorKind.NETWORK
        if isinstance(err, DataError):
            return ErrorKind.VALIDATION

        message = str(err)
        lowered = message.lower()

        if "NotReady" in message:
            return ErrorKind.TIME_NOT_READY
        if "paused" in lowered:
            return ErrorKind.CONTRACT_PAUSED
        if "InvalidStatus" in message:
            return ErrorKind.INVALID_STATUS
        if "ObjectNotFound" in message:
            return ErrorKind.OBJECT_NOT_FOUND
        if "InsufficientGas" in message or "insufficient gas" in lowered:
            return ErrorKind.INSUFFICIENT_GAS
        # Abort codes before free text: "PositionNotFound: ... not found" is a validation failure
        if any(marker in message for marker in _VALIDATION_MARKERS):
            return ErrorKind.VALIDATION
        if "not found" in lowered:
            return ErrorKind.OBJECT_NOT_FOUND
        if "network" in lowered or "timeout" in lowered or "timed out" in lowered or "connection" in lowered:
            return ErrorKind.NETWORK
        return ErrorKind.UNKNOWN


class RetryPolicy:
    def __init__(self, config: RetryConfig):
        self.config = config

    def backoff_delay_ms(self, attempt: int) -> int:
        return min(self.config.base_delay_ms * (2 ** attempt), self.config.max_delay_ms)

    def decide(self, kind: ErrorKind, attempt: int) -> RetryDecision:
        if kind == ErrorKind.TIME_NOT_READY:
            if attempt >= self.config.max_not_ready_retries:
                return RetryDecision(RetryAction.DROP)
            return RetryDecision(RetryAction.RETRY, self.config.not_ready_delay_ms)
        if kind == ErrorKind.CONTRACT_PAUSED:
            return RetryDecision(RetryAction.RETRY, self.config.paused_backoff_ms)
        if kind in (ErrorKind.NETWORK, ErrorKind.INSUFFICIENT_GAS, ErrorKind.UNKNOWN):
            if attempt >= self.config.max_attempts:
                return RetryDecision(RetryAction.DROP)
            return RetryDecision(RetryAction.RETRY, self.backoff_delay_ms(attempt))
        if kind in (ErrorKind.VALIDATION, ErrorKind.SECURITY):
            return RetryDecision(RetryAction.QUARANTINE)
        return RetryDecision(RetryAction.DROP)
