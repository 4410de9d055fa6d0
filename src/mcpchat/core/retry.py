"""Fixed-delay retry helper shared by the HTTP-facing components."""

import logging
import time
from typing import (
    Callable,
    Tuple,
    Type,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    fn: Callable[[], T],
    attempts: int,
    delay_ms: int,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """
    Call *fn* up to *attempts* times, sleeping *delay_ms* between tries.

    Only exceptions listed in *retry_on* trigger another attempt; anything else propagates at
    once.  The last retryable exception is re-raised when attempts run out.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.info(
                "%s failed (%s), retrying in %dms (attempt %d/%d)",
                label,
                exc,
                delay_ms,
                attempt,
                attempts,
            )
            sleep(delay_ms / 1000)
    raise AssertionError("unreachable")  # pragma: no cover
