from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class RazorpayOrderRequest(BaseModel):
    amount: int = Field(..., description="Amount in paise")
    currency: Optional[str] = "INR"
    receipt: Optional[str] = None
    notes: Optional[Dict[str, str]] = None
    customer_email: Optional[str] = None


class RazorpayOrderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    amount: int
    currency: str
    receipt: Optional[str] = None


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class RazorpayVerifyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    verified: bool = True
    message: str = "Payment verified successfully"
    order_id: str = Field(..., alias="orderId")
    payment_id: str = Field(..., alias="paymentId")


class PayPalOrderRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Amount in dollars, e.g. 49.99")
    service_name: Optional[str] = None
    customer_email: Optional[str] = None


class PayPalPaymentRequest(BaseModel):
    order_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("order_id", "orderId")
    )
    customer_email: Optional[str] = None
    amount: Optional[Decimal] = None
    service_name: Optional[str] = None


class PayPalVerifyResponse(BaseModel):
    success: bool = True


class PayPalCaptureResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    capture_id: Optional[str] = Field(default=None, alias="captureId")


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    conversation_history: List[ChatTurn] = Field(
        default_factory=list, alias="conversationHistory"
    )


class ChatResponse(BaseModel):
    success: bool = True
    message: str
    role: Literal["assistant"] = "assistant"


class PaymentOrderSummary(BaseModel):
    order_id: str
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    currency: str
    status: Literal["pending", "completed", "failed"]
    customer_email: Optional[str] = None
    service_name: Optional[str] = None
    payment_gateway: str
    payment_method: Optional[str] = None
    receipt: Optional[str] = None
    notes: Optional[dict] = None
    failure_reason: Optional[str] = None
    verified: bool
    verified_at: Optional[str] = None
    created_at: str
    updated_at: str
