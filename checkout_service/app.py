from __future__ import annotations

import hmac
import logging
import uuid
from typing import Mapping

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import schemas
from .assistant import ChatAssistant, ChatMessage, RateLimiter, RateLimitStatus
from .config import Settings
from .database import connection_factory, init_db
from .errors import (
    AccessDenied,
    CheckoutError,
    NotFound,
    RateLimitExceeded,
    Unauthorized,
    ValidationError,
    VerificationError,
)
from .gateway import PaymentGatewayAdapter, VerificationPayload
from .money import to_minor_units
from .paypal_client import PayPalGateway
from .razorpay_client import RazorpayGateway
from .repository import PaymentOrderRepository
from .service import CheckoutService, CreateOrderCommand, VerifyPaymentCommand

logger = logging.getLogger(__name__)


def build_gateways(settings: Settings) -> dict[str, PaymentGatewayAdapter]:
    return {
        RazorpayGateway.name: RazorpayGateway(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            api_base=settings.razorpay_api_base,
            timeout=settings.gateway_timeout_seconds,
            max_amount=settings.razorpay_max_amount,
        ),
        PayPalGateway.name: PayPalGateway(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            api_base=settings.paypal_api_base,
            brand_name=settings.paypal_brand_name,
            return_url=settings.paypal_return_url,
            cancel_url=settings.paypal_cancel_url,
            timeout=settings.gateway_timeout_seconds,
            max_amount=settings.paypal_max_amount,
        ),
    }


def error_response(exc: CheckoutError, **extra) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    body: dict = {"success": False, **extra, "error": exc.client_message}
    if isinstance(exc, VerificationError) and exc.details:
        body["details"] = exc.details
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(exc.reset_at)),
        }
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def create_app(
    settings: Settings | None = None,
    *,
    repository: PaymentOrderRepository | None = None,
    gateways: Mapping[str, PaymentGatewayAdapter] | None = None,
    assistant: ChatAssistant | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if repository is None:
        factory = connection_factory(settings)
        init_db(factory)
        repository = PaymentOrderRepository(factory)
    gateways = dict(gateways) if gateways is not None else build_gateways(settings)
    service = CheckoutService(repository, gateways)
    assistant = assistant or ChatAssistant(
        settings.gemini_api_key,
        model=settings.gemini_model,
        timeout=settings.gateway_timeout_seconds,
    )
    limiter = RateLimiter(settings.chat_rate_limit, settings.chat_rate_window_seconds)

    app = FastAPI(
        title="Checkout Service",
        version="0.1.0",
        description="Opens, verifies and records one-time payments for the site checkout.",
    )
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.on_event("shutdown")
    def close_clients() -> None:
        for gateway in gateways.values():
            gateway.close()
        assistant.close()

    @app.exception_handler(CheckoutError)
    async def checkout_error(request: Request, exc: CheckoutError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(ValidationError(_describe_validation(exc)))

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "An unexpected error occurred"},
        )

    def check_csrf(request: Request) -> None:
        if not settings.require_csrf_token:
            return
        token = request.headers.get("X-CSRF-Token")
        if not token:
            raise AccessDenied("CSRF token is required for payment requests")
        if not _is_uuid4(token):
            raise AccessDenied("Invalid CSRF token format")

    def require_api_key(request: Request) -> None:
        key = request.headers.get("X-API-Key") or ""
        if not settings.admin_api_key or not hmac.compare_digest(
            key.encode("utf-8"), settings.admin_api_key.encode("utf-8")
        ):
            raise Unauthorized("Invalid or missing API key")

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse()

    @app.post(
        "/razorpay/orders",
        response_model=schemas.RazorpayOrderResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(check_csrf)],
        tags=["razorpay"],
    )
    def create_razorpay_order(payload: schemas.RazorpayOrderRequest) -> schemas.RazorpayOrderResponse:
        notes = payload.notes or {}
        order = service.create_order(
            "razorpay",
            CreateOrderCommand(
                amount=payload.amount,
                currency=payload.currency,
                receipt=payload.receipt,
                notes=notes,
                service_name=notes.get("service_name"),
                customer_email=payload.customer_email,
            ),
        )
        return schemas.RazorpayOrderResponse(
            order_id=order.order_id,
            amount=order.amount,
            currency=order.currency,
            receipt=order.receipt,
        )

    @app.post("/razorpay/verify", response_model=schemas.RazorpayVerifyResponse, tags=["razorpay"])
    def verify_razorpay_payment(payload: schemas.RazorpayVerifyRequest):
        command = VerifyPaymentCommand(
            VerificationPayload(
                order_id=payload.razorpay_order_id or "",
                payment_id=payload.razorpay_payment_id,
                signature=payload.razorpay_signature,
            )
        )
        try:
            outcome = service.verify_payment("razorpay", command)
        except CheckoutError as exc:
            return error_response(exc, verified=False)
        return schemas.RazorpayVerifyResponse(
            order_id=outcome.result.order_id,
            payment_id=outcome.result.payment_id,
        )

    @app.post(
        "/paypal/orders",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(check_csrf)],
        tags=["paypal"],
    )
    def create_paypal_order(payload: schemas.PayPalOrderRequest) -> dict:
        if payload.amount is None or not payload.service_name:
            raise ValidationError("Missing amount or service_name")
        order = service.create_order(
            "paypal",
            CreateOrderCommand(
                amount=to_minor_units(payload.amount),
                currency="USD",
                service_name=payload.service_name,
                customer_email=payload.customer_email,
                require_service_name=True,
            ),
        )
        return order.raw

    @app.post("/paypal/verify", response_model=schemas.PayPalVerifyResponse, tags=["paypal"])
    def verify_paypal_payment(payload: schemas.PayPalPaymentRequest):
        try:
            service.verify_payment("paypal", _paypal_command(payload))
        except CheckoutError as exc:
            return error_response(exc, verified=False)
        return schemas.PayPalVerifyResponse()

    @app.post("/paypal/capture", response_model=schemas.PayPalCaptureResponse, tags=["paypal"])
    def capture_paypal_payment(payload: schemas.PayPalPaymentRequest):
        try:
            outcome = service.capture_payment("paypal", _paypal_command(payload))
        except CheckoutError as exc:
            return error_response(exc, verified=False)
        return schemas.PayPalCaptureResponse(capture_id=outcome.result.payment_id)

    @app.post("/chat", response_model=schemas.ChatResponse, tags=["assistant"])
    def chat(payload: schemas.ChatRequest, request: Request, response: Response) -> schemas.ChatResponse:
        quota = limiter.hit(_client_ip(request))
        reply = assistant.reply(
            payload.message,
            [ChatMessage(role=turn.role, content=turn.content) for turn in payload.conversation_history],
        )
        response.headers.update(_rate_limit_headers(quota))
        return schemas.ChatResponse(message=reply)

    @app.get(
        "/orders",
        response_model=list[schemas.PaymentOrderSummary],
        dependencies=[Depends(require_api_key)],
        tags=["orders"],
    )
    def list_orders(limit: int = Query(50, ge=1, le=500)) -> list[schemas.PaymentOrderSummary]:
        records = repository.list_orders(limit=limit)
        return [schemas.PaymentOrderSummary(**record.__dict__) for record in records]

    @app.get(
        "/orders/{order_id}",
        response_model=schemas.PaymentOrderSummary,
        dependencies=[Depends(require_api_key)],
        tags=["orders"],
    )
    def get_order(order_id: str) -> schemas.PaymentOrderSummary:
        record = repository.get_order(order_id)
        if record is None:
            raise NotFound("Order not found")
        return schemas.PaymentOrderSummary(**record.__dict__)

    return app


def _paypal_command(payload: schemas.PayPalPaymentRequest) -> VerifyPaymentCommand:
    return VerifyPaymentCommand(
        VerificationPayload(order_id=payload.order_id or ""),
        customer_email=payload.customer_email,
        service_name=payload.service_name,
        amount=to_minor_units(payload.amount) if payload.amount is not None else None,
    )


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if real_ip := request.headers.get("x-real-ip"):
        return real_ip
    return request.client.host if request.client else "unknown"


def _rate_limit_headers(quota: RateLimitStatus) -> dict:
    return {
        "X-RateLimit-Limit": str(quota.limit),
        "X-RateLimit-Remaining": str(quota.remaining),
        "X-RateLimit-Reset": str(int(quota.reset_at)),
    }


def _is_uuid4(token: str) -> bool:
    try:
        return uuid.UUID(token).version == 4
    except ValueError:
        return False


def _describe_validation(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
