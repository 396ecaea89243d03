from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    operation: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: int = 3,
    base_delay: float = 0.1,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds, backing off 2^attempt * base_delay between tries."""
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, exc)
                raise
            delay = (2**attempt) * base_delay
            logger.warning(
                "%s failed on attempt %d/%d, retrying in %.1fs: %s",
                description,
                attempt,
                attempts,
                delay,
                exc,
            )
            sleep(delay)
    raise RuntimeError(f"{description}: attempts must be positive")
