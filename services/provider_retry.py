"""
Bounded exponential backoff for external provider calls

Only TransientProviderError is retried. A ProviderTimeoutError means the
outcome of the call is unknown, so callers that perform side effects pass a
`before_retry` hook that re-checks provider state before the call is issued
again; if the hook returns a value, that value is used as the result.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from workflow_errors import ProviderTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)


async def call_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    description: str,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    before_retry: Optional[Callable[[], Awaitable[Any]]] = None,
) -> Any:
    """
    Run operation, retrying transient failures with exponential backoff

    Args:
        operation: Zero-argument coroutine factory performing the provider call
        description: Human-readable name used in log messages
        max_attempts: Total attempts including the first
        base_delay: Delay before the second attempt; doubles each retry
        before_retry: Optional lookup run after a timeout, before retrying

    Returns:
        The operation's result, or the lookup's result if it found the work done

    Raises:
        TransientProviderError: the last transient failure once attempts run out
        PermanentProviderError: immediately, without retrying
    """
    max_attempts = max(1, max_attempts)
    last_error: Optional[TransientProviderError] = None
    outcome_unknown = False

    for attempt in range(max_attempts):
        if outcome_unknown and before_retry is not None:
            recovered = await before_retry()
            if recovered is not None:
                logger.info(f"✅ {description}: earlier attempt had succeeded, skipping retry")
                return recovered

        try:
            return await operation()
        except TransientProviderError as e:
            last_error = e
            outcome_unknown = outcome_unknown or isinstance(e, ProviderTimeoutError)
            attempt_num = attempt + 1
            if attempt_num >= max_attempts:
                logger.error(f"❌ {description} failed after {max_attempts} attempts: {e.reason}")
                break

            delay = base_delay * (2 ** attempt)
            logger.warning(f"⚠️ {description} failed (attempt {attempt_num}/{max_attempts}): "
                           f"{e.reason}, retrying in {delay}s...")
            await asyncio.sleep(delay)

    if outcome_unknown and before_retry is not None:
        recovered = await before_retry()
        if recovered is not None:
            logger.info(f"✅ {description}: final state check found the work done")
            return recovered

    assert last_error is not None
    raise last_error
