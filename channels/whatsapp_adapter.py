"""
WhatsApp Client — WhatsApp Business Cloud API integration.

Provides:
- Outbound: template, text, image, video, document and interactive list messages
  (POST {api_url}/{api_version}/{phone_number_id}/messages)
- Error classification: timeouts, transport errors, 5xx and 429 are transient;
  other 4xx responses are permanent
- Webhook verification (hub.verify_token challenge) and X-Hub-Signature-256 checks
- Webhook parsing into status events and content events, across every entry/change
"""
from __future__ import annotations

import hashlib
import hmac
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from channels.base import DeliveryClient, SendResult, classify_exception, classify_http_error
from config.settings import WhatsAppConfig, get_settings
from core.errors import PermanentDeliveryError
from models.schemas import ContentEvent, StatusEvent

logger = structlog.get_logger()


def _epoch(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


class WhatsAppClient(DeliveryClient):
    """
    WhatsApp Business Cloud API client.

    A transport can be injected (httpx.MockTransport in tests); otherwise a
    pooled AsyncClient is created lazily and reused.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self.config = config or get_settings().whatsapp
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def messages_url(self) -> str:
        base = self.config.api_url.rstrip("/")
        return f"{base}/{self.config.api_version}/{self.config.phone_number_id}/messages"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self.config.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.request_timeout,
                transport=self._transport,
            )
        return self.client

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone or "")

    def normalize_recipient(self, recipient: str) -> str:
        return self.normalize_phone(recipient)

    # ── Send ──────────────────────────────────────────────────

    async def send(self, recipient: str, descriptor: dict[str, Any]) -> SendResult:
        to = self.normalize_phone(recipient)
        if not to:
            raise PermanentDeliveryError(f"Invalid recipient {recipient!r}")

        payload = {"messaging_product": "whatsapp", "to": to, **descriptor}
        message_type = descriptor.get("type", "text")
        start = time.monotonic()

        try:
            client = await self._get_client()
            response = await client.post(self.messages_url, json=payload)
        except Exception as e:
            error = classify_exception(e)
            self.metrics.record_failure(error)
            logger.warning("whatsapp_send_error",
                           to=to,
                           type=message_type,
                           error=str(error),
                           retryable=error.retryable)
            raise error from e

        if response.status_code >= 400:
            error = classify_http_error(response.status_code, self._error_detail(response))
            self.metrics.record_failure(error)
            logger.warning("whatsapp_send_rejected",
                           to=to,
                           type=message_type,
                           status_code=response.status_code,
                           error=str(error),
                           retryable=error.retryable)
            raise error

        try:
            data = response.json()
            message_id = data["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            error = PermanentDeliveryError("Malformed provider response: no message id")
            self.metrics.record_failure(error)
            raise error from e

        latency = (time.monotonic() - start) * 1000
        self.metrics.record_send(latency)
        logger.info("whatsapp_message_sent",
                    to=to,
                    type=message_type,
                    msg_id=message_id,
                    latency_ms=round(latency, 1))
        return SendResult(provider_message_id=message_id, message_type=message_type, raw=data)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            err = response.json().get("error", {})
            return f"HTTP {response.status_code}: {err.get('message') or response.text}"
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, mode: str, token: str, challenge: str) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        if mode == "subscribe" and token and token == self.config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature_header: Optional[str]) -> bool:
        """Check X-Hub-Signature-256. Always true when no app secret is configured."""
        secret = self.config.app_secret
        if not secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header.split("=", 1)[1])

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, body: dict[str, Any]) -> tuple[list[StatusEvent], list[ContentEvent]]:
        """Parse a Cloud API webhook payload into status and content events."""
        statuses: list[StatusEvent] = []
        contents: list[ContentEvent] = []

        for entry in body.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}

                for status in value.get("statuses", []) or []:
                    if not status.get("id") or not status.get("status"):
                        continue
                    statuses.append(StatusEvent(
                        provider_message_id=status["id"],
                        status=status["status"],
                        recipient=status.get("recipient_id", ""),
                        timestamp=_epoch(status.get("timestamp")),
                        errors=status.get("errors", []) or [],
                    ))

                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    event = self._parse_message(msg, names)
                    if event:
                        contents.append(event)

        return statuses, contents

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[ContentEvent]:
        sender = msg.get("from", "")
        msg_id = msg.get("id", "")
        if not sender or not msg_id:
            return None

        msg_type = msg.get("type", "text")
        body = ""
        reply_id: Optional[str] = None
        reply_title: Optional[str] = None

        if msg_type == "text":
            body = msg.get("text", {}).get("body", "")

        elif msg_type == "button":
            # quick-reply button on a template message
            button = msg.get("button", {})
            reply_id = button.get("payload", "")
            reply_title = button.get("text", "")
            body = reply_title

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            itype = interactive.get("type", "")
            reply = interactive.get(itype, {}) if itype in ("button_reply", "list_reply") else {}
            reply_id = reply.get("id", "")
            reply_title = reply.get("title", "")
            body = reply_title

        elif msg_type in ("image", "video", "document"):
            media = msg.get(msg_type, {})
            body = media.get("caption") or media.get("filename") or f"[{msg_type.capitalize()}]"

        elif msg_type == "location":
            loc = msg.get("location", {})
            body = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"

        elif msg_type == "audio":
            body = "[Voice message]"

        else:
            body = f"[{msg_type}]"

        return ContentEvent(
            sender=sender,
            provider_message_id=msg_id,
            type=msg_type,
            body=body,
            button_reply_id=reply_id or None,
            button_reply_title=reply_title or None,
            context_message_id=(msg.get("context") or {}).get("id"),
            sender_name=names.get(sender, ""),
            timestamp=_epoch(msg.get("timestamp")),
        )

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {**base, "configured": bool(self.config.phone_number_id and self.config.access_token)}
