"""Retry a single document-store step on transient failures."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from animatch.config import Settings, get_settings
from animatch.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_store_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    settings: Optional[Settings] = None,
) -> T:
    """Await ``fn()`` and retry it while it raises ``StoreUnavailableError``.

    Uses exponential backoff bounded by ``STORE_RETRY_WAIT_MIN_SECONDS`` and
    ``STORE_RETRY_WAIT_MAX_SECONDS``, up to ``STORE_RETRY_ATTEMPTS`` tries.
    ``fn`` must be safe to repeat: every store step in the matching core is
    idempotent.  The last ``StoreUnavailableError`` is re-raised once the
    attempts are exhausted; any other exception propagates immediately.
    """
    settings = settings or get_settings()
    attempts = settings.STORE_RETRY_ATTEMPTS

    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=settings.STORE_RETRY_WAIT_MIN_SECONDS,
                min=settings.STORE_RETRY_WAIT_MIN_SECONDS,
                max=settings.STORE_RETRY_WAIT_MAX_SECONDS,
            ),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        "store_retry_attempt",
                        operation=operation,
                        attempt_number=attempt.retry_state.attempt_number,
                    )
                return await fn()
    except StoreUnavailableError as exc:
        logger.warning(
            "store_retry_exhausted",
            operation=operation,
            attempts=attempts,
            last_error=str(exc),
        )
        raise
