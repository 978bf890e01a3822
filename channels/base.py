"""
Delivery Client — base infrastructure shared by provider clients.

Provides:
- SendResult: what a successful provider call returns
- classify_http_error / classify_exception: transient vs permanent failures
- DeliveryMetrics: per-client send/fail/latency tracking for health checks
- DeliveryClient: abstract base; subclasses implement `send` for one provider
  and inherit the typed helpers (template, text, media, interactive list)
"""
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from core.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    provider_message_id: str
    message_type: str = "text"
    raw: dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════
#  ERROR CLASSIFICATION
# ══════════════════════════════════════════════════════════════

def classify_http_error(status_code: int, message: str = "") -> DeliveryError:
    """HTTP 429 and 5xx are transient; every other 4xx is permanent."""
    detail = message or f"provider returned HTTP {status_code}"
    if status_code == 429 or status_code >= 500:
        return TransientDeliveryError(detail, status_code=status_code)
    return PermanentDeliveryError(detail, status_code=status_code)


def classify_exception(exc: BaseException) -> DeliveryError:
    """Map a transport-level exception onto the delivery error taxonomy."""
    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return TransientDeliveryError(f"timeout: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_error(exc.response.status_code, str(exc))
    if isinstance(exc, httpx.TransportError):
        return TransientDeliveryError(f"transport error: {exc}")
    return TransientDeliveryError(str(exc))


def option_row_id(index: int) -> str:
    return f"option_{index}"


def option_index(row_id: str) -> Optional[int]:
    """Inverse of option_row_id; None for ids that are not list rows."""
    prefix, _, idx = (row_id or "").partition("_")
    if prefix != "option" or not idx.isdigit():
        return None
    return int(idx)


def _clip(text: str, limit: int) -> str:
    """Template parameters have hard provider limits; overlong text ends in '..'."""
    return text if len(text) <= limit else text[: limit - 2] + ".."


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class DeliveryMetrics:
    """Tracks send, failure and latency counts for one client."""

    def __init__(self, name: str):
        self.name = name
        self.messages_sent: int = 0
        self.transient_failures: int = 0
        self.permanent_failures: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: DeliveryError):
        if error.retryable:
            self.transient_failures += 1
        else:
            self.permanent_failures += 1
        self._errors.append(str(error))
        del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "client": self.name,
            "sent": self.messages_sent,
            "transient_failures": self.transient_failures,
            "permanent_failures": self.permanent_failures,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryClient(abc.ABC):
    """
    Base class for provider clients.

    `send` takes a message descriptor (the provider's message body without
    the addressing envelope) and returns a SendResult, or raises
    TransientDeliveryError / PermanentDeliveryError.
    """

    name: str = "delivery"

    def __init__(self):
        self.metrics = DeliveryMetrics(self.name)

    @abc.abstractmethod
    async def send(self, recipient: str, descriptor: dict[str, Any]) -> SendResult:
        ...

    def normalize_recipient(self, recipient: str) -> str:
        """The address form the provider reports back in webhooks."""
        return recipient

    async def close(self) -> None:
        pass

    # ── Typed helpers ─────────────────────────────────────────

    async def send_text(self, recipient: str, body: str, preview_url: bool = False) -> SendResult:
        return await self.send(recipient, {
            "type": "text",
            "text": {"body": body, "preview_url": preview_url},
        })

    async def send_template(
        self,
        recipient: str,
        template_name: str,
        language: str,
        header_text: Optional[str] = None,
        body_params: list[str] = None,
        quick_reply_payload: Optional[str] = None,
    ) -> SendResult:
        components: list[dict[str, Any]] = []
        if header_text:
            components.append({
                "type": "header",
                "parameters": [{"type": "text", "text": _clip(header_text, 60)}],
            })
        if body_params:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": _clip(p, 1024)} for p in body_params],
            })
        if quick_reply_payload:
            components.append({
                "type": "button",
                "sub_type": "quick_reply",
                "index": "0",
                "parameters": [{"type": "payload", "payload": quick_reply_payload}],
            })
        return await self.send(recipient, {
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": language},
                "components": components,
            },
        })

    async def send_image(self, recipient: str, link: str, caption: str = "") -> SendResult:
        media: dict[str, Any] = {"link": link}
        if caption:
            media["caption"] = caption
        return await self.send(recipient, {"type": "image", "image": media})

    async def send_video(self, recipient: str, link: str, caption: str = "") -> SendResult:
        media: dict[str, Any] = {"link": link}
        if caption:
            media["caption"] = caption
        return await self.send(recipient, {"type": "video", "video": media})

    async def send_document(self, recipient: str, link: str, filename: str = "") -> SendResult:
        media: dict[str, Any] = {"link": link}
        if filename:
            media["filename"] = filename
        return await self.send(recipient, {"type": "document", "document": media})

    async def send_interactive_list(
        self,
        recipient: str,
        body: str,
        options: list[str],
        header: str = "Quiz",
        button_text: str = "Choose an option",
        section_title: str = "Choose one",
    ) -> SendResult:
        """Interactive list; row ids are `option_{index}` and titles are cut to 24 characters."""
        rows = [
            {"id": option_row_id(i), "title": opt if len(opt) <= 24 else opt[:22] + ".."}
            for i, opt in enumerate(options)
        ]
        return await self.send(recipient, {
            "type": "interactive",
            "interactive": {
                "type": "list",
                "header": {"type": "text", "text": header},
                "body": {"text": body},
                "action": {
                    "button": button_text[:20],
                    "sections": [{"title": section_title[:24], "rows": rows}],
                },
            },
        })

    async def health_check(self) -> dict[str, Any]:
        return self.metrics.to_dict()
