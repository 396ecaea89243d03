from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Iterable, Literal, Optional

import httpx
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter

from .errors import ConfigurationError, RateLimitExceeded, UpstreamError, ValidationError
from .gateway import build_http_client, error_description, json_body

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
HISTORY_WINDOW = 4

SYSTEM_CONTEXT = (
    "You are the assistant on a freelance web developer's website. Help visitors "
    "understand the services offered (SaaS, e-commerce, UI/UX, AI integration). "
    "Keep every answer under three sentences, stay professional, politely decline "
    "personal questions and steer back to the services."
)
FALLBACK_REPLY = (
    "I'd love to help, but that question goes beyond what I can assist with. "
    "**Let's talk about the web development services** - what type of project interests you?"
)
EMPTY_REPLY = "How can I help you learn about the web development services today?"


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter per client key."""

    namespace = "chat"

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        storage: Storage | None = None,
    ):
        self.max_requests = max_requests
        self._item = RateLimitItemPerSecond(max_requests, max(1, int(window_seconds)))
        self._window = FixedWindowRateLimiter(storage or MemoryStorage())

    def hit(self, key: str) -> RateLimitStatus:
        allowed = self._window.hit(self._item, self.namespace, key)
        reset_at, remaining = self._window.get_window_stats(self._item, self.namespace, key)
        if not allowed:
            raise RateLimitExceeded(
                retry_after=max(1, math.ceil(reset_at - time.time())),
                reset_at=reset_at,
                limit=self.max_requests,
            )
        return RateLimitStatus(self.max_requests, remaining, reset_at)


class ChatAssistant:
    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "gemini-2.5-flash",
        api_base: str = GEMINI_API_BASE,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = api_base.rstrip("/")
        self._client = client or build_http_client(timeout)

    def reply(self, message: str, history: Iterable[ChatMessage] = ()) -> str:
        if not message or not message.strip():
            raise ValidationError("Message cannot be empty")
        if not self._api_key:
            raise ConfigurationError("GEMINI_API_KEY not set", public_message="AI service not configured")

        payload = {
            "contents": build_contents(message, history),
            "generationConfig": {"temperature": 0.7, "topP": 0.95, "maxOutputTokens": 300},
        }
        try:
            response = self._client.post(
                f"{self._base_url}/models/{self._model}:generateContent",
                headers={"x-goog-api-key": self._api_key},
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"AI service unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error("Gemini API error (%s): %s", response.status_code, response.text)
            raise UpstreamError(
                "Failed to get response from AI service",
                details=error_description(response),
            )

        data = json_body(response, "AI service")
        candidates = data.get("candidates") or []
        if not candidates:
            logger.error("Gemini returned no candidates: %s", data.get("promptFeedback"))
            raise UpstreamError("AI service returned an unexpected response")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason and finish_reason != "STOP":
            logger.warning("Gemini stopped with %s", finish_reason)
            return FALLBACK_REPLY
        return _first_text(candidate) or EMPTY_REPLY

    def close(self) -> None:
        self._client.close()


def build_contents(message: str, history: Iterable[ChatMessage]) -> list[dict]:
    contents = [
        {"role": "user", "parts": [{"text": "System context: " + SYSTEM_CONTEXT}]},
        {"role": "model", "parts": [{"text": "Understood. I'll follow these guidelines."}]},
    ]
    for entry in list(history)[-HISTORY_WINDOW:]:
        contents.append(
            {
                "role": "model" if entry.role == "assistant" else "user",
                "parts": [{"text": entry.content}],
            }
        )
    contents.append({"role": "user", "parts": [{"text": message}]})
    return contents


def _first_text(candidate: dict) -> Optional[str]:
    parts = (candidate.get("content") or {}).get("parts") or []
    if parts and parts[0].get("text"):
        return parts[0]["text"]
    return None
