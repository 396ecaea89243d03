from __future__ import annotations


class CheckoutError(Exception):
    """Base class for failures that end up in the JSON error envelope."""

    status_code = 500
    public_message: str | None = None

    def __init__(
        self,
        message: str,
        *,
        details: object | None = None,
        public_message: str | None = None,
    ):
        super().__init__(message)
        self.details = details
        if public_message is not None:
            self.public_message = public_message

    @property
    def client_message(self) -> str:
        return self.public_message or str(self)


class ValidationError(CheckoutError):
    """Raised when request fields are missing or malformed."""

    status_code = 400


class ConfigurationError(CheckoutError):
    """Raised when a server-side secret or setting is absent."""

    status_code = 500
    public_message = "Payment service not configured"


class UpstreamError(CheckoutError):
    """Raised when a gateway is unreachable or answers with a non-success status."""

    status_code = 502


class VerificationError(CheckoutError):
    """Raised when a payment cannot be proven genuine."""

    status_code = 400


class PersistenceError(CheckoutError):
    """Raised when the order store rejects a read or write."""

    status_code = 500
    public_message = "Failed to record payment order"


class Unauthorized(CheckoutError):
    status_code = 401
    public_message = "Unauthorized"


class AccessDenied(CheckoutError):
    status_code = 403


class NotFound(CheckoutError):
    status_code = 404


class RateLimitExceeded(CheckoutError):
    status_code = 429
    public_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, reset_at: float, limit: int):
        super().__init__(f"Rate limit exceeded, retry in {retry_after}s")
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.limit = limit
