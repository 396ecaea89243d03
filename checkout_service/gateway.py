from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

import httpx

from .errors import UpstreamError


@dataclass(frozen=True)
class OrderRef:
    """What the client needs to launch a gateway's hosted checkout."""

    order_id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    approval_url: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationPayload:
    order_id: str
    payment_id: Optional[str] = None
    signature: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    order_id: str
    gateway_status: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    reason: Optional[str] = None
    # Set only when the gateway itself reports the order can never be paid.
    terminal: bool = False
    raw: dict = field(default_factory=dict)


class PaymentGatewayAdapter(Protocol):
    name: str
    default_currency: str
    max_amount: int

    def create_order(
        self,
        amount: int,
        currency: str,
        description: str | None = None,
        notes: dict | None = None,
        receipt: str | None = None,
    ) -> OrderRef: ...

    def verify(self, payload: VerificationPayload) -> VerificationResult: ...

    def close(self) -> None: ...


@runtime_checkable
class SupportsCapture(Protocol):
    def capture(self, order_id: str) -> VerificationResult: ...


def build_http_client(timeout: float, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    return httpx.Client(timeout=timeout, transport=transport)


def json_body(response: httpx.Response, source: str) -> dict:
    """Decode a success body, treating anything but a JSON object as an upstream failure."""
    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamError(f"{source} returned a malformed response") from exc
    if not isinstance(body, dict):
        raise UpstreamError(f"{source} returned a malformed response")
    return body


def error_description(response: httpx.Response) -> str:
    """Pull a short human-readable reason out of a gateway error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("description"):
            return str(error["description"])
        for key in ("error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase


class RetryableUpstreamError(UpstreamError):
    """Transport failure or gateway 5xx; safe to try the same call again."""
