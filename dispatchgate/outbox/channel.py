from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from dispatchgate.config import DispatchSettings
from dispatchgate.utils.canonical import sha256_text


class ChannelDeliveryError(RuntimeError):
    """Raised when a channel send fails; the worker turns it into a retry or a dead letter."""


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    body: str
    message_key: str


@dataclass(frozen=True)
class ChannelResult:
    provider: str
    provider_message_id: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "provider_message_id": self.provider_message_id,
            "status": self.status,
        }


class ChannelAdapter(Protocol):
    name: str

    def send(self, message: OutboundMessage) -> ChannelResult:
        ...


@dataclass(frozen=True)
class StubChannelAdapter:
    """
    Local adapter with deterministic message ids: the same message key always
    yields the same id, so repeated sends are indistinguishable.
    """

    mode: str = "dry_run"
    name: str = "stub"

    def send(self, message: OutboundMessage) -> ChannelResult:
        if not str(message.to or "").strip():
            raise ChannelDeliveryError("recipient is required")
        digest = sha256_text(f"{self.mode}:{message.message_key}|{message.to}|{message.body}")
        status = "DRY_RUN" if self.mode == "dry_run" else "ACCEPTED"
        return ChannelResult(provider=f"{self.name}:{self.mode}", provider_message_id=digest[:32], status=status)


class WebhookChannelAdapter:
    """Posts messages to an HTTP endpoint, passing the message key as the Idempotency-Key header."""

    name: str = "webhook"

    def __init__(self, url: str, *, timeout_seconds: float, session: Optional[Any] = None):
        if not str(url or "").strip():
            raise ChannelDeliveryError("webhook channel requires a URL")
        self._url = url
        self._timeout = max(0.1, float(timeout_seconds))
        self._session = session or requests.Session()

    def send(self, message: OutboundMessage) -> ChannelResult:
        try:
            response = self._session.post(
                self._url,
                json={"to": message.to, "body": message.body, "message_key": message.message_key},
                headers={"Content-Type": "application/json", "Idempotency-Key": message.message_key},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ChannelDeliveryError(f"webhook send failed: {exc}") from exc
        if response.status_code not in {200, 201, 202}:
            raise ChannelDeliveryError(
                f"webhook send failed with status {response.status_code}: {response.text[:200]}"
            )
        try:
            decoded = response.json()
            body = decoded if isinstance(decoded, dict) else {}
        except ValueError:
            body = {}
        provider_message_id = str(body.get("message_id") or body.get("id") or message.message_key)
        return ChannelResult(
            provider=self.name,
            provider_message_id=provider_message_id,
            status=str(body.get("status") or "ACCEPTED"),
        )


def build_channel_adapter(settings: DispatchSettings) -> ChannelAdapter:
    if settings.channel_webhook_url and not settings.channel_dry_run:
        return WebhookChannelAdapter(settings.channel_webhook_url, timeout_seconds=settings.channel_timeout_seconds)
    return StubChannelAdapter(mode="dry_run" if settings.channel_dry_run else "local")
