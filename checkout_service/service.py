from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from .errors import PersistenceError, ValidationError, VerificationError
from .gateway import (
    OrderRef,
    PaymentGatewayAdapter,
    SupportsCapture,
    VerificationPayload,
    VerificationResult,
)
from .repository import COMPLETED, FAILED, PaymentOrderRecord, PaymentOrderRepository
from .retry import call_with_retries

logger = logging.getLogger(__name__)


@dataclass
class CreateOrderCommand:
    amount: int
    currency: Optional[str] = None
    service_name: Optional[str] = None
    receipt: Optional[str] = None
    notes: dict = field(default_factory=dict)
    customer_email: Optional[str] = None
    require_service_name: bool = False


@dataclass
class VerifyPaymentCommand:
    payload: VerificationPayload
    customer_email: Optional[str] = None
    service_name: Optional[str] = None
    amount: Optional[int] = None


@dataclass(frozen=True)
class VerificationOutcome:
    result: VerificationResult
    record: Optional[PaymentOrderRecord]
    persisted: bool
    already_completed: bool = False


class CheckoutService:
    """Runs the create → verify → persist protocol against any registered gateway.

    Only a ``VerificationResult`` with ``verified=True`` produced by the
    gateway adapter can lead to a ``completed`` row.
    """

    def __init__(
        self,
        repository: PaymentOrderRepository,
        gateways: Mapping[str, PaymentGatewayAdapter],
        *,
        persist_attempts: int = 3,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self._repo = repository
        self._gateways = dict(gateways)
        self._persist_attempts = persist_attempts
        self._sleep = retry_sleep

    def gateway(self, name: str) -> PaymentGatewayAdapter:
        try:
            return self._gateways[name]
        except KeyError:
            raise ValidationError(f"Unknown payment gateway: {name}") from None

    def create_order(self, gateway_name: str, command: CreateOrderCommand) -> OrderRef:
        gateway = self.gateway(gateway_name)
        _validate_order(gateway, command)
        currency = (command.currency or gateway.default_currency).upper()

        order = gateway.create_order(
            command.amount,
            currency,
            description=command.service_name,
            notes=command.notes,
            receipt=command.receipt,
        )

        try:
            self._repo.record_pending(
                order.order_id,
                gateway=gateway.name,
                amount=order.amount,
                currency=order.currency,
                service_name=command.service_name or (command.notes or {}).get("service_name"),
                customer_email=command.customer_email,
                receipt=order.receipt,
                notes=command.notes or None,
            )
        except PersistenceError as exc:
            # The gateway order exists either way; verification inserts the row if needed.
            logger.error("Could not record pending order %s: %s", order.order_id, exc)
        return order

    def verify_payment(self, gateway_name: str, command: VerifyPaymentCommand) -> VerificationOutcome:
        gateway = self.gateway(gateway_name)
        result = gateway.verify(command.payload)
        return self._settle(gateway, command, result)

    def capture_payment(self, gateway_name: str, command: VerifyPaymentCommand) -> VerificationOutcome:
        gateway = self.gateway(gateway_name)
        if not isinstance(gateway, SupportsCapture):
            raise ValidationError(f"Gateway {gateway_name} does not support capture")
        if not command.payload.order_id:
            raise ValidationError("Missing orderId")
        result = gateway.capture(command.payload.order_id)
        return self._settle(gateway, command, result)

    def _settle(
        self,
        gateway: PaymentGatewayAdapter,
        command: VerifyPaymentCommand,
        result: VerificationResult,
    ) -> VerificationOutcome:
        if not result.verified:
            # Rejections from unauthenticated input leave the store untouched.
            if result.terminal:
                self._record_failure(gateway, result)
            raise VerificationError(result.reason or "Payment verification failed", details=result.raw)

        logger.info(
            "Payment verified gateway=%s order=%s payment=%s",
            gateway.name,
            result.order_id,
            result.payment_id,
        )

        existing = self._safe_get(result.order_id)
        if existing is not None and existing.status == COMPLETED:
            logger.info("Order %s already completed, keeping existing record", result.order_id)
            return VerificationOutcome(result=result, record=existing, persisted=True, already_completed=True)
        if existing is not None and existing.status == FAILED:
            return self._unreconciled(gateway, result, existing)

        verified_at = datetime.now(timezone.utc).isoformat()
        try:
            record = call_with_retries(
                lambda: self._repo.record_completed(
                    result.order_id,
                    gateway=gateway.name,
                    currency=result.currency or (existing.currency if existing else gateway.default_currency),
                    payment_id=result.payment_id or command.payload.payment_id,
                    verified_at=verified_at,
                    amount=command.amount if command.amount is not None else result.amount,
                    amount_paid=result.amount,
                    payment_method=result.payment_method,
                    customer_email=command.customer_email,
                    service_name=command.service_name,
                ),
                retry_on=(PersistenceError,),
                attempts=self._persist_attempts,
                description=f"Recording completed order {result.order_id}",
                sleep=self._sleep,
            )
        except PersistenceError:
            logger.error(
                "Payment verified but not recorded, needs reconciliation: gateway=%s order=%s payment=%s",
                gateway.name,
                result.order_id,
                result.payment_id,
            )
            return VerificationOutcome(result=result, record=None, persisted=False)
        if record.status != COMPLETED:
            return self._unreconciled(gateway, result, record)
        return VerificationOutcome(result=result, record=record, persisted=True)

    def _unreconciled(
        self,
        gateway: PaymentGatewayAdapter,
        result: VerificationResult,
        record: PaymentOrderRecord,
    ) -> VerificationOutcome:
        logger.error(
            "Payment verified for %s order, needs reconciliation: gateway=%s order=%s payment=%s",
            record.status,
            gateway.name,
            result.order_id,
            result.payment_id,
        )
        return VerificationOutcome(result=result, record=record, persisted=False)

    def _record_failure(self, gateway: PaymentGatewayAdapter, result: VerificationResult) -> None:
        try:
            self._repo.record_failed(
                result.order_id,
                gateway=gateway.name,
                reason=result.reason or "verification failed",
                payment_id=result.payment_id,
            )
        except PersistenceError as exc:
            logger.error("Could not record failed verification for %s: %s", result.order_id, exc)

    def _safe_get(self, order_id: str) -> PaymentOrderRecord | None:
        try:
            return self._repo.get_order(order_id)
        except PersistenceError as exc:
            logger.warning("Could not read order %s before recording: %s", order_id, exc)
            return None


def _validate_order(gateway: PaymentGatewayAdapter, command: CreateOrderCommand) -> None:
    amount = command.amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Invalid amount. Must be an integer in minor currency units")
    if amount <= 0:
        raise ValidationError("Invalid amount. Must be greater than 0")
    if amount > gateway.max_amount:
        raise ValidationError("Amount exceeds maximum allowed limit")
    if command.notes is not None and not isinstance(command.notes, dict):
        raise ValidationError("Notes must be an object")
    if command.require_service_name and not (command.service_name or "").strip():
        raise ValidationError("Missing amount or service_name")
