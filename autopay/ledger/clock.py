"""
Ledger clocks.

SystemClock reads wall time. ManualClock is a deterministic clock that advances
only when told to, for local runs and tests.

Usage:
    clock = ManualClock(start_ms=1_700_000_000_000)
    clock.advance(ms=60_000)
    clock.now_ms()   # 1_700_000_060_000
"""
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall-clock time in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Deterministic clock. Never moves backwards."""

    def __init__(self, start_ms: int):
        if start_ms < 0:
            raise ValueError("ManualClock start must be non-negative")
        self._current = start_ms

    def now_ms(self) -> int:
        return self._current

    def advance(self, *, ms: int = 0, seconds: float = 0) -> None:
        delta = ms + int(seconds * 1000)
        if delta < 0:
            raise ValueError("Cannot advance by negative delta")
        self._current += delta

    def set(self, t_ms: int) -> None:
        if t_ms < self._current:
            raise ValueError(f"Cannot move clock backwards: {t_ms} < {self._current}")
        self._current = t_ms
