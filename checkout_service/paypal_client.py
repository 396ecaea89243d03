from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

from .config import PAYPAL_SANDBOX_API
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
from .money import format_minor_units, to_minor_units
from .retry import call_with_retries

logger = logging.getLogger(__name__)

APPROVED_STATUSES = frozenset({"APPROVED", "COMPLETED"})
VOIDED_STATUSES = frozenset({"VOIDED"})
FAILED_CAPTURE_STATUSES = frozenset({"DECLINED", "FAILED"})


class PayPalGateway:
    """Order-status gateway: only what PayPal itself reports about an order is trusted."""

    name = "paypal"
    default_currency = "USD"
    max_amount = 1_000_000

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        *,
        api_base: str = PAYPAL_SANDBOX_API,
        brand_name: str = "Checkout",
        return_url: str | None = None,
        cancel_url: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        retry_sleep: Callable[[float], None] = time.sleep,
        max_amount: int | None = None,
    ):
        if max_amount is not None:
            self.max_amount = max_amount
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = api_base.rstrip("/")
        self._brand_name = brand_name
        self._return_url = return_url
        self._cancel_url = cancel_url
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
        token = self._access_token()
        purchase_unit: dict = {
            "amount": {"currency_code": currency, "value": format_minor_units(amount)},
            "description": description,
        }
        if receipt:
            purchase_unit["custom_id"] = receipt
        context = {
            "brand_name": self._brand_name,
            "landing_page": "NO_PREFERENCE",
            "user_action": "PAY_NOW",
        }
        if self._return_url:
            context["return_url"] = self._return_url
        if self._cancel_url:
            context["cancel_url"] = self._cancel_url
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": context,
        }

        data = call_with_retries(
            lambda: self._post_order(payload, token),
            retry_on=(RetryableUpstreamError,),
            description="PayPal order creation",
            sleep=self._sleep,
        )
        logger.info("PayPal order created id=%s status=%s", data["id"], data.get("status"))
        return OrderRef(
            order_id=data["id"],
            amount=amount,
            currency=currency,
            receipt=receipt,
            approval_url=_approval_url(data),
            raw=data,
        )

    def verify(self, payload: VerificationPayload) -> VerificationResult:
        if not payload.order_id:
            raise ValidationError("Missing order_id")
        token = self._access_token()
        try:
            response = self._client.get(
                f"{self._base_url}/v2/checkout/orders/{payload.order_id}",
                headers=_bearer(token),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"PayPal unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "PayPal order lookup failed %s (%s): %s",
                payload.order_id,
                response.status_code,
                response.text,
            )
            raise UpstreamError(f"PayPal order lookup failed: {error_description(response)}")

        data = json_body(response, "PayPal")
        status = data.get("status")
        if status not in APPROVED_STATUSES:
            logger.warning("PayPal order %s not approved, status=%s", payload.order_id, status)
            return VerificationResult(
                verified=False,
                order_id=payload.order_id,
                gateway_status=status,
                reason="Payment not approved",
                terminal=status in VOIDED_STATUSES,
                raw=data,
            )
        amount, currency = _unit_amount(data)
        capture = _first_capture(data)
        return VerificationResult(
            verified=True,
            order_id=payload.order_id,
            gateway_status=status,
            payment_id=capture.get("id") if capture else None,
            amount=amount,
            currency=currency,
            payment_method="paypal",
            raw=data,
        )

    def capture(self, order_id: str) -> VerificationResult:
        if not order_id:
            raise ValidationError("Missing orderId")
        token = self._access_token()
        logger.info("Capturing PayPal payment for order %s", order_id)
        try:
            response = self._client.post(
                f"{self._base_url}/v2/checkout/orders/{order_id}/capture",
                headers=_bearer(token),
                json={},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"PayPal unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "PayPal capture failed %s (%s): %s", order_id, response.status_code, response.text
            )
            raise UpstreamError(f"PayPal capture failed: {error_description(response)}")

        data = json_body(response, "PayPal")
        status = data.get("status")
        capture = _first_capture(data) or {}
        if status != "COMPLETED":
            logger.warning("PayPal capture for %s ended with status=%s", order_id, status)
            return VerificationResult(
                verified=False,
                order_id=order_id,
                gateway_status=status,
                reason="Payment capture failed",
                terminal=capture.get("status") in FAILED_CAPTURE_STATUSES,
                raw=data,
            )
        amount, currency = _capture_amount(capture)
        if amount is None:
            amount, currency = _unit_amount(data)
        return VerificationResult(
            verified=True,
            order_id=order_id,
            gateway_status=status,
            payment_id=capture.get("id"),
            amount=amount,
            currency=currency,
            payment_method="paypal",
            raw=data,
        )

    def close(self) -> None:
        self._client.close()

    def _access_token(self) -> str:
        if not self._client_id or not self._client_secret:
            raise ConfigurationError("PayPal credentials not configured")
        try:
            response = self._client.post(
                f"{self._base_url}/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"PayPal unreachable: {exc}") from exc

        token = None
        if response.status_code < 400:
            token = json_body(response, "PayPal").get("access_token")
        if not token:
            logger.error("PayPal token request failed (%s): %s", response.status_code, response.text)
            raise UpstreamError(
                f"Failed to authenticate with PayPal: {error_description(response)}"
            )
        return token

    def _post_order(self, payload: dict, token: str) -> dict:
        try:
            response = self._client.post(
                f"{self._base_url}/v2/checkout/orders",
                headers=_bearer(token),
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise RetryableUpstreamError(f"PayPal unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise RetryableUpstreamError(f"PayPal error ({response.status_code})")
        if response.status_code >= 400:
            logger.error("PayPal rejected order (%s): %s", response.status_code, response.text)
            raise UpstreamError(f"PayPal API error: {error_description(response)}")
        data = json_body(response, "PayPal")
        if not data.get("id"):
            raise UpstreamError("PayPal returned an order without id")
        return data


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _approval_url(order: dict) -> Optional[str]:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def _purchase_unit(order: dict) -> dict:
    units = order.get("purchase_units") or []
    return units[0] if units else {}


def _first_capture(order: dict) -> Optional[dict]:
    captures = (_purchase_unit(order).get("payments") or {}).get("captures") or []
    return captures[0] if captures else None


def _unit_amount(order: dict) -> tuple[Optional[int], Optional[str]]:
    return _capture_amount(_purchase_unit(order))


def _capture_amount(entry: dict) -> tuple[Optional[int], Optional[str]]:
    amount = entry.get("amount") or {}
    if amount.get("value") is None:
        return None, None
    return to_minor_units(amount["value"]), amount.get("currency_code")
