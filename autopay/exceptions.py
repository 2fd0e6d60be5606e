"""
Custom exception hierarchy for the autopay relayer.

Hierarchy:

    AutopayError (base)
    ├── OperationalError   - transient/retryable (network, RPC timeouts, gas)
    │   ├── NetworkError
    │   │   └── RpcTimeoutError
    │   └── InsufficientGasError
    ├── DataError          - bad input, never auto-retried
    │   ├── ValidationError
    │   └── MetadataDecodeError
    ├── LedgerAbort        - ledger assertion failed, whole transaction rolled back
    └── SecurityError      - fatal for the attempt, requires operator correction
        ├── GasBudgetError
        ├── PositionRefError
        ├── SlippageError
        └── UnsupportedProtocolError

Rules:
    - OperationalError: classify, schedule a retry with backoff, continue loop
    - DataError / LedgerAbort: classify by abort code; races are benign and terminal
    - SecurityError: alert, quarantine the task, never substitute defaults
"""
from enum import Enum
from typing import Optional


class AutopayError(Exception):
    """Base exception for all relayer and ledger errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(AutopayError):
    """Transient/retryable error: RPC, network, timeouts, gas estimation."""
    pass


class NetworkError(OperationalError):
    """Network or RPC transport failure."""
    pass


class RpcTimeoutError(NetworkError):
    """An external call exceeded its bounded timeout."""
    pass


class InsufficientGasError(OperationalError):
    """The paying identity cannot cover the gas budget."""
    pass


# ============ DATA (bad input, not retried) ============

class DataError(AutopayError):
    """Bad input data. Treatment: log and skip, never auto-retry."""
    pass


class ValidationError(DataError):
    """Raised when a request fails structural validation."""
    pass


class MetadataDecodeError(DataError):
    """Task metadata bytes could not be decoded into a known payload."""
    pass


# ============ LEDGER ABORTS ============

class AbortCode(str, Enum):
    """Abort codes raised by the ledger's atomic operations."""
    CONTRACT_PAUSED = "ContractPaused"
    INVALID_EXECUTION_TIME = "InvalidExecutionTime"
    FEE_TOO_LOW = "FeeTooLow"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INVALID_STATUS = "InvalidStatus"
    NOT_READY_YET = "NotReadyYet"
    UNAUTHORIZED = "Unauthorized"
    OBJECT_NOT_FOUND = "ObjectNotFound"
    INSUFFICIENT_GAS = "InsufficientGas"
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    POSITION_NOT_FOUND = "PositionNotFound"
    UNUSED_VALUE = "UnusedValue"
    INVALID_ARGUMENT = "InvalidArgument"
    INVALID_SIGNATURE = "InvalidSignature"


class LedgerAbort(AutopayError):
    """A ledger assertion failed. No state from the operation escapes."""

    def __init__(self, code: AbortCode, message: Optional[str] = None, module: str = "autopay"):
        self.code = code
        self.module = module
        detail = f": {message}" if message else ""
        super().__init__(f"MoveAbort in {module}: {code.value}{detail}")


# ============ SECURITY (fatal for the attempt) ============

class SecurityError(AutopayError):
    """Security-sensitive failure. Halts the attempt; the task is not consumed."""
    pass


class GasBudgetError(SecurityError):
    """Gas budget outside the safety window after clamping (should be unreachable)."""
    pass


class PositionRefError(SecurityError):
    """Missing or structurally invalid position reference for a withdraw."""
    pass


class SlippageError(SecurityError):
    """Slippage bound out of range or resulting minimum output not positive."""
    pass


class UnsupportedProtocolError(SecurityError):
    """Protocol or swap provider is not supported on the target network."""
    pass
