"""Retry-then-fall-back combinator shared by the upstream adapters."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from vidscribe.logging_config import get_logger

logger = get_logger(__name__)

C = TypeVar("C")
T = TypeVar("T")


class FallbackExhaustedError(RuntimeError):
    """Raised when there are no candidates to try at all."""


class OperationAborted(Exception):
    """Stops the retry and fallback loop outright; never retried or skipped past."""


async def with_fallback(
    candidates: Sequence[C],
    operation: Callable[[C, int], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    describe: Optional[Callable[[C], str]] = None,
    checkpoint: Optional[Callable[[], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` against each candidate in order until one succeeds.

    Within a candidate, retryable errors are retried up to ``max_attempts``
    times with exponential backoff (``base_delay * 2 ** attempt``). A
    non-retryable error abandons the current candidate immediately. When every
    candidate is exhausted the last error is raised.

    ``operation`` receives the candidate and the zero-based attempt number.
    ``checkpoint`` is awaited before every attempt; raising
    :class:`OperationAborted` from it (or from ``operation``) ends the loop
    without trying anything else.
    """
    if not candidates:
        raise FallbackExhaustedError("No candidates available")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    label = describe or str
    last_error: Optional[BaseException] = None

    for index, candidate in enumerate(candidates):
        for attempt in range(max_attempts):
            if checkpoint is not None:
                await checkpoint()
            try:
                return await operation(candidate, attempt)
            except (asyncio.CancelledError, OperationAborted):
                raise
            except Exception as exc:
                last_error = exc
                retryable = is_retryable(exc)
                if not retryable:
                    logger.warning(
                        "%s failed with non-retryable error: %s", label(candidate), exc
                    )
                    break
                if attempt + 1 < max_attempts:
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "%s attempt %s/%s failed (%s); retrying in %.1fs",
                        label(candidate),
                        attempt + 1,
                        max_attempts,
                        exc,
                        delay,
                    )
                    if delay > 0:
                        await sleep(delay)
                else:
                    logger.warning(
                        "%s exhausted %s attempt(s): %s", label(candidate), max_attempts, exc
                    )

        if index + 1 < len(candidates):
            logger.info(
                "Falling back from %s to %s", label(candidate), label(candidates[index + 1])
            )

    assert last_error is not None
    raise last_error


__all__ = ["with_fallback", "FallbackExhaustedError", "OperationAborted"]
