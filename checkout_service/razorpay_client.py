from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Callable

import httpx

from .errors import ConfigurationError, UpstreamError, ValidationError
from .gateway import (
    OrderRef,
    RetryableUpstreamError,
    VerificationPayload,
    VerificationResult,
    build_http_client,
    error_description,
    json_body,
)
from .retry import call_with_retries

logger = logging.getLogger(__name__)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class RazorpayGateway:
    """HMAC-signed checkout: the client carries back a signature only the key secret can produce."""

    name = "razorpay"
    default_currency = "INR"
    max_amount = 10_000_000

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        *,
        api_base: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        retry_sleep: Callable[[float], None] = time.sleep,
        max_amount: int | None = None,
    ):
        self._key_id = key_id
        self._key_secret = key_secret
        if max_amount is not None:
            self.max_amount = max_amount
        self._base_url = api_base.rstrip("/")
        self._client = client or build_http_client(timeout)
        self._sleep = retry_sleep

    def create_order(
        self,
        amount: int,
        currency: str,
        description: str | None = None,
        notes: dict | None = None,
        receipt: str | None = None,
    ) -> OrderRef:
        auth = self._credentials()
        notes = dict(notes or {})
        if description and "service_name" not in notes:
            notes["service_name"] = description
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt or f"receipt_{int(time.time())}",
            "notes": notes,
        }
        data = call_with_retries(
            lambda: self._post_order(payload, auth),
            retry_on=(RetryableUpstreamError,),
            description="Razorpay order creation",
            sleep=self._sleep,
        )
        logger.info("Razorpay order created id=%s amount=%s", data["id"], data.get("amount"))
        return OrderRef(
            order_id=data["id"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", payload["receipt"]),
            raw=data,
        )

    def verify(self, payload: VerificationPayload) -> VerificationResult:
        if not self._key_secret:
            raise ConfigurationError("Razorpay secret not configured")
        if not (payload.order_id and payload.payment_id and payload.signature):
            raise ValidationError("Missing required payment verification fields")

        if not signature_matches(
            self._key_secret, payload.order_id, payload.payment_id, payload.signature
        ):
            logger.warning(
                "Invalid payment signature order=%s payment=%s",
                payload.order_id,
                payload.payment_id,
            )
            return VerificationResult(
                verified=False,
                order_id=payload.order_id,
                payment_id=payload.payment_id,
                reason="Invalid payment signature",
            )

        details = self._fetch_payment(payload.payment_id)
        return VerificationResult(
            verified=True,
            order_id=payload.order_id,
            payment_id=payload.payment_id,
            gateway_status=details.get("status"),
            amount=details.get("amount"),
            currency=details.get("currency"),
            payment_method=details.get("method"),
            raw=details,
        )

    def close(self) -> None:
        self._client.close()

    def _credentials(self) -> tuple[str, str]:
        if not self._key_id or not self._key_secret:
            raise ConfigurationError("Razorpay credentials not configured")
        return self._key_id, self._key_secret

    def _post_order(self, payload: dict, auth: tuple[str, str]) -> dict:
        try:
            response = self._client.post(f"{self._base_url}/v1/orders", json=payload, auth=auth)
        except httpx.HTTPError as exc:
            raise RetryableUpstreamError(f"Razorpay unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise RetryableUpstreamError(f"Razorpay error ({response.status_code})")
        if response.status_code >= 400:
            logger.error("Razorpay rejected order (%s): %s", response.status_code, response.text)
            raise UpstreamError(
                f"Failed to create payment order: {error_description(response)}",
                details={"status": response.status_code},
            )
        data = json_body(response, "Razorpay")
        if not data.get("id"):
            raise UpstreamError("Razorpay returned an order without id")
        return data

    def _fetch_payment(self, payment_id: str) -> dict:
        # The signature alone proves the payment; details only enrich the record.
        if not self._key_id:
            return {}
        try:
            response = self._client.get(
                f"{self._base_url}/v1/payments/{payment_id}",
                auth=(self._key_id, self._key_secret),
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch Razorpay payment %s: %s", payment_id, exc)
            return {}
        if response.status_code >= 400:
            logger.warning(
                "Could not fetch Razorpay payment %s (%s): %s",
                payment_id,
                response.status_code,
                response.text,
            )
            return {}
        try:
            return json_body(response, "Razorpay")
        except UpstreamError as exc:
            logger.warning("Could not read Razorpay payment %s: %s", payment_id, exc)
            return {}
