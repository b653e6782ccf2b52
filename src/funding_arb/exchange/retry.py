"""Bounded retry for outbound venue calls with error classification.

Every ccxt failure is mapped onto the engine taxonomy:

  RateLimitExceeded / DDoSProtection / "rate limit" / "429"  -> RateLimitError
  NetworkError (timeouts, resets, exchange unavailable)       -> ExchangeConnectionError
  ExchangeError (bad symbol, insufficient funds, ...)         -> ApiError
  anything else                                               -> ApiError

Transient classes are retried with a fixed delay up to max_attempts; other
classes surface immediately.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import ccxt.async_support

from funding_arb.exceptions import (
    TRANSIENT_ERRORS,
    ApiError,
    ArbitrageError,
    ExchangeConnectionError,
    RateLimitError,
)
from funding_arb.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")


def classify_error(exc: BaseException, exchange: str = "") -> ArbitrageError:
    """Map an arbitrary exception to the engine's error taxonomy."""
    if isinstance(exc, ArbitrageError):
        return exc

    message = str(exc) or exc.__class__.__name__
    prefix = f"[{exchange}] " if exchange else ""

    if isinstance(exc, (ccxt.async_support.RateLimitExceeded, ccxt.async_support.DDoSProtection)):
        return RateLimitError(f"{prefix}{message}")
    if any(marker in message.lower() for marker in _RATE_LIMIT_MARKERS):
        return RateLimitError(f"{prefix}{message}")
    if isinstance(exc, ccxt.async_support.NetworkError):
        return ExchangeConnectionError(f"{prefix}{message}")
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return ExchangeConnectionError(f"{prefix}{message}")
    if isinstance(exc, ccxt.async_support.ExchangeError):
        return ApiError(f"{prefix}{message}", code=exc.__class__.__name__)
    return ApiError(f"{prefix}{message}")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


async def retry_api_call(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    operation: str = "",
    exchange: str = "",
    max_attempts: int = 3,
    delay: float = 1.0,
    should_continue: Callable[[], bool] | None = None,
    **kwargs: Any,
) -> T:
    """Call fn(*args, **kwargs), retrying transient failures.

    Args:
        fn: Coroutine function performing the venue call.
        operation: Name used in log events.
        exchange: Venue name used in log events and error messages.
        max_attempts: Total attempts including the first.
        delay: Fixed seconds to wait between attempts.
        should_continue: Checked before each retry; returning False stops
            retrying (e.g. after the connector was disconnected).

    Returns:
        Whatever fn returns.

    Raises:
        ExchangeConnectionError, RateLimitError: After the final attempt.
        ApiError: Immediately, for non-transient failures.
    """
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc, exchange)

            if not is_retryable(error):
                logger.warning(
                    "api_call_rejected",
                    exchange=exchange,
                    operation=operation,
                    error=str(error),
                )
                raise error from exc

            stopped = should_continue is not None and not should_continue()
            if attempt == attempts or stopped:
                logger.error(
                    "api_call_failed_permanently",
                    exchange=exchange,
                    operation=operation,
                    attempts=attempt,
                    error=str(error),
                )
                raise error from exc

            if isinstance(error, RateLimitError):
                logger.warning(
                    "rate_limit_exceeded",
                    exchange=exchange,
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=delay,
                )
            else:
                logger.warning(
                    "api_call_retry",
                    exchange=exchange,
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=delay,
                    error=str(error),
                )
            await asyncio.sleep(delay)

    raise ExchangeConnectionError(f"{operation} exhausted retries")  # Unreachable
