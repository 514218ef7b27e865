"""
Shared async and vector utilities.

Provides run_async_safe() for calling async code from sync context,
gather_bounded() for fan-out under a concurrency cap, and the numpy helpers
used to move embeddings in and out of pgvector.
"""

import asyncio
import logging
from typing import Any, Awaitable, Iterable, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


def run_async_safe(
    coro: Any,
    timeout: Optional[float] = 30.0,
    operation_name: str = "async operation",
) -> Any:
    """
    Safely run async coroutine from sync context.

    Handles two scenarios:
    1. No running event loop: Uses asyncio.run() directly
    2. Already in async context: Uses the running loop (requires nest_asyncio)

    Args:
        coro: Async coroutine to execute
        timeout: Timeout in seconds (None disables it)
        operation_name: Name of operation for error messages

    Raises:
        TimeoutError: If execution exceeds timeout
        RuntimeError: If called inside a running loop without nest_asyncio
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    awaitable = asyncio.wait_for(coro, timeout=timeout) if timeout else coro
    try:
        if loop is None:
            return asyncio.run(awaitable)
        else:
            return loop.run_until_complete(awaitable)
    except asyncio.CancelledError:
        raise
    except asyncio.TimeoutError as e:
        logger.error(f"Timeout ({timeout}s) during {operation_name}")
        raise TimeoutError(f"'{operation_name}' timed out after {timeout}s") from e
    except RuntimeError as e:
        if "This event loop is already running" in str(e):
            raise RuntimeError(
                f"Cannot run '{operation_name}' synchronously inside an async context. "
                "Use the async method directly or apply nest_asyncio."
            ) from e
        raise


async def gather_bounded(aws: Iterable[Awaitable[Any]], limit: int) -> List[Any]:
    """
    Await all awaitables with at most `limit` running at once.

    Results come back in input order. Exceptions propagate like asyncio.gather
    (the first failure cancels nothing; callers catch per item).
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(aw: Awaitable[Any]) -> Any:
        async with semaphore:
            return await aw

    return await asyncio.gather(*(_run(aw) for aw in aws))


def l2_normalize(vec: Sequence[float]) -> np.ndarray:
    """Return the L2-normalized float32 vector (zero vectors are returned unchanged)."""
    arr = np.asarray(vec, dtype=np.float32).flatten()
    if arr.size == 0:
        return arr
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr
    return arr / norm


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is missing or zero."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float32).flatten()
    vb = np.asarray(b, dtype=np.float32).flatten()
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def vec_to_pgvector(vec: Sequence[float]) -> str:
    """Convert a vector to pgvector string format '[0.1,0.2,...]'."""
    return "[" + ",".join(map(str, np.asarray(vec, dtype=np.float32).flatten().tolist())) + "]"


def pgvector_to_vec(value: Any) -> Optional[np.ndarray]:
    """Parse a pgvector column value (text '[...]' or sequence) into a float32 array."""
    if value is None:
        return None
    if isinstance(value, str):
        inner = value.strip().strip("[]")
        if not inner:
            return np.zeros(0, dtype=np.float32)
        return np.asarray([float(x) for x in inner.split(",")], dtype=np.float32)
    return np.asarray(value, dtype=np.float32)
