"""
Rate limiting utilities.

Detection of rate-limit errors from RPC and relay endpoints, and an
exponential backoff retry wrapper shared by the ledger client and the relays.
"""

import random
import re
from typing import Awaitable, Callable, Optional, Type, TypeVar

from loguru import logger

from bundler.solana.clock import Clock, SYSTEM_CLOCK

T = TypeVar("T")

RATE_LIMIT_INDICATORS = [
    "rate limit",
    "too many requests",
    "throttle",
]

# A bare status code, not digits inside a larger number such as "14293"
RATE_LIMIT_STATUS = re.compile(r"(?<![\w.])429(?![\w.])")


def error_text(error: BaseException) -> str:
    """Message of an error joined with the message of its cause, if any."""
    text = str(error)
    cause = error.__cause__ or error.__context__
    if cause is not None and str(cause) not in text:
        text = f"{text} ({cause})"
    return text


def is_rate_limit_error(error_message: str) -> bool:
    """
    Check if an error message indicates rate limiting.

    Args:
        error_message: The error message to check

    Returns:
        True if this appears to be a rate limiting error
    """
    error_lower = error_message.lower()
    for indicator in RATE_LIMIT_INDICATORS:
        if indicator in error_lower:
            return True
    return RATE_LIMIT_STATUS.search(error_message) is not None


def calculate_backoff(attempt: int, initial_backoff: float, max_backoff: float,
                      jitter: bool = True) -> float:
    """
    Exponential backoff for a 0-based attempt, capped at max_backoff.

    Args:
        attempt: Current attempt number (0-based)
        initial_backoff: Delay for the first retry in seconds
        max_backoff: Upper bound in seconds
        jitter: Apply +/-10% jitter

    Returns:
        Backoff time in seconds
    """
    base_delay = min(initial_backoff * (2 ** attempt), max_backoff)
    if not jitter:
        return base_delay
    return base_delay * random.uniform(0.9, 1.1)


def _is_rate_limited_text(error: BaseException) -> bool:
    return is_rate_limit_error(error_text(error))


async def retry_on_rate_limit(
    operation: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int,
    initial_backoff: float,
    max_backoff: float,
    exhausted_error: Type[Exception],
    clock: Optional[Clock] = None,
    is_rate_limited: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """
    Run an async operation, retrying with backoff while it is rate limited.

    Errors that are not rate limits propagate immediately. Once the retry
    budget is spent the last error is wrapped in exhausted_error.

    Args:
        operation: Zero-argument coroutine factory
        label: Operation name for logs
        max_retries: Maximum number of retries after the first attempt
        initial_backoff: First backoff in seconds
        max_backoff: Backoff cap in seconds
        exhausted_error: Exception type raised when retries run out
        clock: Clock used for sleeping
        is_rate_limited: Classifier for raised errors, defaults to matching
            the error text with is_rate_limit_error

    Returns:
        Result of the operation
    """
    clock = clock or SYSTEM_CLOCK
    is_rate_limited = is_rate_limited or _is_rate_limited_text

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_rate_limited(e):
                raise
            if attempt >= max_retries:
                logger.error(f"{label}: rate limit retries exhausted ({max_retries}), giving up")
                raise exhausted_error(f"{label}: rate limited after {max_retries} retries: {e}") from e

            backoff_time = calculate_backoff(attempt, initial_backoff, max_backoff)
            logger.warning(
                f"{label}: rate limited, retrying in {backoff_time:.1f}s (attempt {attempt + 1}/{max_retries})",
                extra={"label": label, "attempt": attempt + 1, "backoff": backoff_time}
            )
            await clock.sleep(backoff_time)

    raise exhausted_error(f"{label}: rate limited")
