from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

PAYPAL_LIVE_API = "https://api-m.paypal.com"
PAYPAL_SANDBOX_API = "https://api-m.sandbox.paypal.com"


def _build_database_url(env: Mapping[str, str]) -> str:
    if url := env.get("DATABASE_URL"):
        return url
    user = env.get("DB_USER", "checkout")
    password = env.get("DB_PASSWORD", "checkout")
    host = env.get("DB_HOST", "checkout-db")
    port = env.get("DB_PORT", "5432")
    name = env.get("DB_NAME", "checkout_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Everything the service needs from its environment, read once at startup."""

    database_url: str = "sqlite:///checkout.db"
    db_connect_retries: int = 30
    db_connect_retry_delay: float = 2.0

    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_api_base: str = "https://api.razorpay.com"
    razorpay_max_amount: int = 10_000_000

    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_api_base: str = PAYPAL_SANDBOX_API
    paypal_brand_name: str = "Checkout"
    paypal_max_amount: int = 1_000_000
    paypal_return_url: Optional[str] = None
    paypal_cancel_url: Optional[str] = None

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    chat_rate_limit: int = 10
    chat_rate_window_seconds: float = 60.0

    gateway_timeout_seconds: float = 10.0
    allowed_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    require_csrf_token: bool = False
    admin_api_key: Optional[str] = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        mode = env.get("PAYPAL_MODE", "sandbox").lower()
        origins = tuple(
            origin.strip()
            for origin in env.get("ALLOWED_ORIGINS", "*").split(",")
            if origin.strip()
        )
        return cls(
            database_url=_build_database_url(env),
            db_connect_retries=int(env.get("DB_CONNECT_MAX_RETRIES", "30")),
            db_connect_retry_delay=float(env.get("DB_CONNECT_RETRY_DELAY", "2")),
            razorpay_key_id=env.get("RAZORPAY_KEY_ID") or None,
            razorpay_key_secret=env.get("RAZORPAY_KEY_SECRET") or None,
            razorpay_api_base=env.get("RAZORPAY_API_BASE", "https://api.razorpay.com"),
            razorpay_max_amount=int(env.get("RAZORPAY_MAX_AMOUNT", "10000000")),
            paypal_client_id=env.get("PAYPAL_CLIENT_ID") or None,
            paypal_client_secret=env.get("PAYPAL_CLIENT_SECRET") or None,
            paypal_api_base=PAYPAL_LIVE_API if mode in {"live", "production"} else PAYPAL_SANDBOX_API,
            paypal_brand_name=env.get("PAYPAL_BRAND_NAME", "Checkout"),
            paypal_max_amount=int(env.get("PAYPAL_MAX_AMOUNT", "1000000")),
            paypal_return_url=env.get("PAYPAL_RETURN_URL") or None,
            paypal_cancel_url=env.get("PAYPAL_CANCEL_URL") or None,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_model=env.get("GEMINI_MODEL", "gemini-2.5-flash"),
            chat_rate_limit=int(env.get("CHAT_RATE_LIMIT", "10")),
            chat_rate_window_seconds=float(env.get("CHAT_RATE_WINDOW_SECONDS", "60")),
            gateway_timeout_seconds=float(env.get("GATEWAY_TIMEOUT_SECONDS", "10")),
            allowed_origins=origins or ("*",),
            require_csrf_token=_flag(env.get("REQUIRE_CSRF_TOKEN")),
            admin_api_key=env.get("ADMIN_API_KEY") or None,
        )
