from __future__ import annotations

import pytest

from checkout_service.errors import PersistenceError, ValidationError, VerificationError
from checkout_service.gateway import OrderRef, VerificationPayload, VerificationResult
from checkout_service.razorpay_client import compute_signature, signature_matches
from checkout_service.repository import COMPLETED, FAILED, PENDING
from checkout_service.service import CheckoutService, CreateOrderCommand, VerifyPaymentCommand

SECRET = "rzp_test_secret"


class FakeSignedGateway:
    name = "razorpay"
    default_currency = "INR"
    max_amount = 10_000_000

    def __init__(self):
        self.created = []

    def create_order(self, amount, currency, description=None, notes=None, receipt=None):
        self.created.append((amount, currency, description))
        return OrderRef(
            order_id=f"order_{len(self.created)}",
            amount=amount,
            currency=currency,
            receipt=receipt or "receipt_1",
        )

    def verify(self, payload):
        if not signature_matches(SECRET, payload.order_id, payload.payment_id, payload.signature):
            return VerificationResult(
                verified=False,
                order_id=payload.order_id,
                payment_id=payload.payment_id,
                reason="Invalid payment signature",
            )
        return VerificationResult(
            verified=True,
            order_id=payload.order_id,
            payment_id=payload.payment_id,
            amount=100000,
            currency="INR",
            payment_method="upi",
        )


class FakeStatusGateway:
    name = "paypal"
    default_currency = "USD"
    max_amount = 1_000_000

    def __init__(self, status="APPROVED"):
        self.status = status
        self.captured = []

    def create_order(self, amount, currency, description=None, notes=None, receipt=None):
        return OrderRef(order_id="PAYPAL-1", amount=amount, currency=currency)

    def verify(self, payload):
        if self.status not in ("APPROVED", "COMPLETED"):
            return VerificationResult(
                verified=False,
                order_id=payload.order_id,
                gateway_status=self.status,
                reason="Payment not approved",
                terminal=self.status == "VOIDED",
                raw={"id": payload.order_id, "status": self.status},
            )
        return VerificationResult(
            verified=True,
            order_id=payload.order_id,
            gateway_status=self.status,
            amount=4999,
            currency="USD",
            payment_method="paypal",
        )

    def capture(self, order_id):
        self.captured.append(order_id)
        return VerificationResult(
            verified=True,
            order_id=order_id,
            gateway_status="COMPLETED",
            payment_id="CAPTURE-1",
            amount=4999,
            currency="USD",
            payment_method="paypal",
        )


class FlakyRepository:
    """Wraps a real repository but fails every completed write."""

    def __init__(self, repo):
        self._repo = repo
        self.completed_attempts = 0

    def __getattr__(self, name):
        return getattr(self._repo, name)

    def record_completed(self, *args, **kwargs):
        self.completed_attempts += 1
        raise PersistenceError("database is locked")


class BrokenRepository:
    def record_pending(self, *args, **kwargs):
        raise PersistenceError("Database unavailable")


def _signed(order_id, payment_id="pay_1", secret=SECRET):
    return VerifyPaymentCommand(
        VerificationPayload(order_id, payment_id, compute_signature(secret, order_id, payment_id))
    )


@pytest.fixture()
def razorpay():
    return FakeSignedGateway()


@pytest.fixture()
def service(repo, razorpay):
    return CheckoutService(
        repo,
        {"razorpay": razorpay, "paypal": FakeStatusGateway()},
        retry_sleep=lambda seconds: None,
    )


def test_create_order_records_pending_row(service, repo, razorpay):
    order = service.create_order(
        "razorpay",
        CreateOrderCommand(amount=100000, currency="inr", notes={"service_name": "UI/UX"}),
    )

    assert razorpay.created == [(100000, "INR", None)]
    record = repo.get_order(order.order_id)
    assert record.status == PENDING
    assert record.service_name == "UI/UX"
    assert record.currency == "INR"


@pytest.mark.parametrize("amount", [0, -1, -100000])
def test_non_positive_amount_rejected_before_gateway_call(service, razorpay, amount):
    with pytest.raises(ValidationError, match="greater than 0"):
        service.create_order("razorpay", CreateOrderCommand(amount=amount))
    assert razorpay.created == []


@pytest.mark.parametrize("amount", [True, 10.5, "100"])
def test_non_integer_amount_rejected(service, razorpay, amount):
    with pytest.raises(ValidationError):
        service.create_order("razorpay", CreateOrderCommand(amount=amount))
    assert razorpay.created == []


def test_amount_above_gateway_limit_rejected(service, razorpay):
    with pytest.raises(ValidationError, match="maximum"):
        service.create_order("razorpay", CreateOrderCommand(amount=10_000_001))
    assert razorpay.created == []


def test_amount_limit_follows_gateway_setting(repo, razorpay):
    razorpay.max_amount = 50_000
    service = CheckoutService(repo, {"razorpay": razorpay})

    with pytest.raises(ValidationError, match="maximum"):
        service.create_order("razorpay", CreateOrderCommand(amount=50_001))
    service.create_order("razorpay", CreateOrderCommand(amount=50_000))

    assert razorpay.created == [(50_000, "INR", None)]


def test_service_name_required_when_requested(service):
    with pytest.raises(ValidationError, match="service_name"):
        service.create_order(
            "paypal", CreateOrderCommand(amount=4999, require_service_name=True, service_name="  ")
        )


def test_unknown_gateway_rejected(service):
    with pytest.raises(ValidationError, match="Unknown payment gateway"):
        service.create_order("stripe", CreateOrderCommand(amount=100))


def test_pending_write_failure_does_not_fail_order_creation(razorpay):
    service = CheckoutService(BrokenRepository(), {"razorpay": razorpay})

    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))

    assert order.order_id == "order_1"


def test_verified_payment_is_recorded_completed(service, repo):
    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))

    outcome = service.verify_payment("razorpay", _signed(order.order_id))

    assert outcome.persisted is True
    assert outcome.already_completed is False
    assert outcome.record.status == COMPLETED
    assert outcome.record.payment_id == "pay_1"
    assert outcome.record.amount == 100000
    assert outcome.record.payment_method == "upi"


def test_tampered_signature_leaves_pending_row_untouched(service, repo):
    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))
    command = _signed(order.order_id, secret="not-the-secret")

    with pytest.raises(VerificationError, match="Invalid payment signature"):
        service.verify_payment("razorpay", command)

    record = repo.get_order(order.order_id)
    assert record.status == PENDING
    assert record.failure_reason is None


def test_forged_verification_of_unknown_order_writes_nothing(service, repo):
    with pytest.raises(VerificationError):
        service.verify_payment("razorpay", VerifyPaymentCommand(VerificationPayload("junk_1", "pay_1", "00")))

    assert repo.get_order("junk_1") is None
    assert repo.list_orders() == []


def test_genuine_payment_completes_after_forged_attempt(service, repo):
    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))
    with pytest.raises(VerificationError):
        service.verify_payment("razorpay", _signed(order.order_id, secret="forged"))

    outcome = service.verify_payment("razorpay", _signed(order.order_id))

    assert outcome.persisted is True
    assert outcome.record.status == COMPLETED


def test_repeated_verification_converges_on_one_completed_row(service, repo):
    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))

    first = service.verify_payment("razorpay", _signed(order.order_id))
    second = service.verify_payment("razorpay", _signed(order.order_id))

    assert first.already_completed is False
    assert second.already_completed is True
    assert second.record.verified_at == first.record.verified_at
    assert [r.order_id for r in repo.list_orders()] == [order.order_id]


def test_forged_attempt_after_completion_keeps_completed(service, repo):
    order = service.create_order("razorpay", CreateOrderCommand(amount=100000))
    service.verify_payment("razorpay", _signed(order.order_id))

    with pytest.raises(VerificationError):
        service.verify_payment("razorpay", _signed(order.order_id, secret="forged"))

    assert repo.get_order(order.order_id).status == COMPLETED


def test_persistence_failure_after_verification_is_not_raised(repo, razorpay):
    flaky = FlakyRepository(repo)
    service = CheckoutService(
        flaky, {"razorpay": razorpay}, persist_attempts=3, retry_sleep=lambda seconds: None
    )

    outcome = service.verify_payment("razorpay", _signed("order_1"))

    assert outcome.result.verified is True
    assert outcome.persisted is False
    assert outcome.record is None
    assert flaky.completed_attempts == 3


def test_status_gateway_approved_order_completes(repo):
    service = CheckoutService(repo, {"paypal": FakeStatusGateway("APPROVED")})

    outcome = service.verify_payment(
        "paypal",
        VerifyPaymentCommand(VerificationPayload("PAYPAL-1"), service_name="AI integration"),
    )

    assert outcome.record.status == COMPLETED
    assert outcome.record.amount == 4999
    assert outcome.record.service_name == "AI integration"


def test_status_gateway_created_order_is_rejected_without_write(repo):
    service = CheckoutService(repo, {"paypal": FakeStatusGateway("CREATED")})
    service.create_order("paypal", CreateOrderCommand(amount=4999, service_name="UI/UX"))

    with pytest.raises(VerificationError, match="Payment not approved") as excinfo:
        service.verify_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-1")))

    assert excinfo.value.details == {"id": "PAYPAL-1", "status": "CREATED"}
    assert repo.get_order("PAYPAL-1").status == PENDING


def test_status_gateway_created_unknown_order_writes_nothing(repo):
    service = CheckoutService(repo, {"paypal": FakeStatusGateway("CREATED")})

    with pytest.raises(VerificationError):
        service.verify_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-9")))

    assert repo.list_orders() == []


def test_voided_order_is_recorded_failed(repo):
    service = CheckoutService(repo, {"paypal": FakeStatusGateway("VOIDED")})
    service.create_order("paypal", CreateOrderCommand(amount=4999, service_name="UI/UX"))

    with pytest.raises(VerificationError):
        service.verify_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-1")))

    record = repo.get_order("PAYPAL-1")
    assert record.status == FAILED
    assert record.failure_reason == "Payment not approved"


def test_verified_payment_on_failed_order_needs_reconciliation(repo):
    gateway = FakeStatusGateway("VOIDED")
    service = CheckoutService(repo, {"paypal": gateway})
    service.create_order("paypal", CreateOrderCommand(amount=4999, service_name="UI/UX"))
    with pytest.raises(VerificationError):
        service.verify_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-1")))

    gateway.status = "APPROVED"
    outcome = service.verify_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-1")))

    assert outcome.result.verified is True
    assert outcome.persisted is False
    assert repo.get_order("PAYPAL-1").status == FAILED


def test_capture_records_capture_id(repo):
    gateway = FakeStatusGateway()
    service = CheckoutService(repo, {"paypal": gateway})

    outcome = service.capture_payment("paypal", VerifyPaymentCommand(VerificationPayload("PAYPAL-1")))

    assert gateway.captured == ["PAYPAL-1"]
    assert outcome.record.payment_id == "CAPTURE-1"
    assert outcome.record.status == COMPLETED


def test_capture_requires_capable_gateway(service):
    with pytest.raises(ValidationError, match="does not support capture"):
        service.capture_payment("razorpay", _signed("order_1"))


def test_capture_requires_order_id(repo):
    service = CheckoutService(repo, {"paypal": FakeStatusGateway()})

    with pytest.raises(ValidationError, match="Missing orderId"):
        service.capture_payment("paypal", VerifyPaymentCommand(VerificationPayload("")))
