from __future__ import annotations

from dataclasses import dataclass
from typing import Any


BROADCAST_RECIPIENT = "@all"


@dataclass(frozen=True)
class OutboundMessage:
    text: str | None = None
    media_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.text is not None:
            payload["text"] = self.text
        if self.media_url is not None:
            payload["mediaUrl"] = self.media_url
        return payload

    def text_with_link(self) -> str:
        text = self.text or ""
        if not self.media_url:
            return text
        attachment = f"📎 Attachment: {self.media_url}"
        return f"{text}\n\n{attachment}" if text else attachment


@dataclass(frozen=True)
class DeliveryContext:
    """Explicit conversation context threaded from the inbound request to every send."""

    recipient_hint: str | None = None
    account_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    detail: str | None = None


DELIVERED = DeliveryResult(delivered=True)
CONTINUE = DeliveryResult(delivered=False)
