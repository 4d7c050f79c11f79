"""
RETRY UTILITY
=============

Calls a function and, if it raises, retries a few times with exponential backoff.
Used around Groq completion calls so a temporary rate limit or network blip
doesn't immediately turn into an apology message for the user.

Example:
  text = with_retry(lambda: llm.invoke(messages), max_retries=2, initial_delay=0.5)
"""

import logging
import time
from typing import Callable, TypeVar


logger = logging.getLogger("ragchat")

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute fn(). If it raises, wait initial_delay seconds and try again; delay doubles each retry.
    After max_retries attempts (including the first), re-raise the last exception.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    delay = initial_delay
    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if attempt == max_retries:
                raise
            logger.warning(
                "Attempt %s/%s failed (%s). Retrying in %.1fs: %s",
                attempt,
                max_retries,
                getattr(fn, "__name__", "call"),
                delay,
                e,
            )
            sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
