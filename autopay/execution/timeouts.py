"""
Bounded external calls.
"""
import asyncio
from typing import Awaitable, TypeVar

from autopay.exceptions import RpcTimeoutError

T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """Await with a deadline. A timeout surfaces as RpcTimeoutError (a NetworkError)."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise RpcTimeoutError(f"{operation} timed out after {timeout_seconds}s (network timeout)") from e
