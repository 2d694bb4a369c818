"""Retry with exponential backoff and jitter for catalog calls."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from flowforge.core.exceptions import CatalogServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_ERROR_MARKERS = ("401", "403", "unauthorized", "forbidden", "authentication", "invalid api key")


class BackoffPolicy(BaseModel):
    """delay(attempt) = min(base_delay * 2**attempt, max_delay), then +/- jitter."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.3, ge=0, le=1)

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
        base = min(self.base_delay * (2**attempt), self.max_delay)
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, base * (1 + spread))


def is_auth_error(exc: BaseException) -> bool:
    """Auth failures cannot be fixed by retrying."""
    if isinstance(exc, CatalogServiceError) and exc.status in (401, 403):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in AUTH_ERROR_MARKERS)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    operation_name: str = "catalog call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run ``operation`` with retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and delay parameters
        operation_name: Used in log and error messages
        sleep: Awaitable sleep, injectable for tests
        rng: Random source for jitter, injectable for tests

    Returns:
        The first successful result

    Raises:
        CatalogServiceError: Immediately (retryable=False) for auth failures or
            non-retryable catalog errors; after the last attempt otherwise
    """
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if is_auth_error(e):
                logger.warning(f"{operation_name} failed with an auth error, not retrying: {e}")
                raise CatalogServiceError(
                    f"{operation_name} failed: authentication rejected by the catalog service",
                    retryable=False,
                    status=getattr(e, "status", None) or 401,
                    original_error=e if not isinstance(e, CatalogServiceError) else None,
                ) from e
            if isinstance(e, CatalogServiceError) and not e.retryable:
                raise

            logger.debug(f"{operation_name} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}")
            if attempt < policy.max_attempts - 1:
                delay = policy.delay_for(attempt, rng)
                logger.debug(f"Retrying {operation_name} in {delay:.2f}s")
                await sleep(delay)

    raise CatalogServiceError(
        f"{operation_name} failed after {policy.max_attempts} attempts",
        retryable=True,
        original_error=last_error if isinstance(last_error, Exception) else None,
    )
