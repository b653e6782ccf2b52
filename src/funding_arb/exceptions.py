"""Custom exceptions for the funding rate arbitrage engine.

Venue, detection and position-lifecycle exceptions live here
to avoid circular imports between modules.
"""

from decimal import Decimal


class ArbitrageError(Exception):
    """Base exception for all engine errors."""


class ExchangeConnectionError(ArbitrageError):
    """Raised on transport-level venue failures (timeouts, resets). Retryable."""


class RateLimitError(ArbitrageError):
    """Raised when a venue throttles requests. Retryable with backoff."""


class ApiError(ArbitrageError):
    """Raised when a venue rejects a call (bad symbol, insufficient margin, ...)."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ValidationError(ArbitrageError):
    """Raised on invalid input such as a zero interval or bad threshold. Never retried."""


class InsufficientBalanceError(ValidationError):
    """Raised when a venue's free balance cannot cover a leg's margin."""

    def __init__(self, exchange: str, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient balance on {exchange}: required {required}, available {available}"
        )
        self.exchange = exchange
        self.required = required
        self.available = available


class PositionLockedError(ArbitrageError):
    """Raised when an open for the same user and symbol is already in progress."""


class PositionNotFoundError(ArbitrageError):
    """Raised when a position id does not exist."""


class InvalidPositionStatusError(ArbitrageError):
    """Raised when an operation is not allowed in the position's current status."""


class PositionCloseError(ArbitrageError):
    """Raised when both legs of a close fail. The position stays OPEN."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


TRANSIENT_ERRORS = (ExchangeConnectionError, RateLimitError)
