from __future__ import annotations

import logging
from typing import Protocol

from wecom_bridge.config import DeliveryConfig
from wecom_bridge.delivery.messages import CONTINUE, DELIVERED, DeliveryResult, OutboundMessage
from wecom_bridge.delivery.sync import PendingSyncStore
from wecom_bridge.domain.errors import BridgeError
from wecom_bridge.domain.media import detect_media_type, fetch_media
from wecom_bridge.observability import incr_metric, log_event
from wecom_bridge.providers.webhook import client as webhook_client
from wecom_bridge.providers.wecom.client import WeComApiClient, media_payload, text_payload
from wecom_bridge.providers.wework import client as wework_client


class DeliveryTier(Protocol):
    name: str

    def applies(self, config: DeliveryConfig) -> bool: ...

    def deliver(
        self,
        recipient_id: str,
        message: OutboundMessage,
        config: DeliveryConfig,
    ) -> DeliveryResult: ...


class SyncResponseTier:
    name = "sync"

    def __init__(self, store: PendingSyncStore) -> None:
        self._store = store

    def applies(self, config: DeliveryConfig) -> bool:
        return True

    def deliver(self, recipient_id: str, message: OutboundMessage, config: DeliveryConfig) -> DeliveryResult:
        handle = self._store.take(recipient_id)
        if handle is None:
            return CONTINUE
        if handle.resolve(200, message.to_payload()):
            return DELIVERED
        return DeliveryResult(delivered=False, detail="sync response already closed")


class FirstPartyApiTier:
    name = "first_party_api"

    def __init__(self, client: WeComApiClient, timeout_seconds: float = 15.0) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    def applies(self, config: DeliveryConfig) -> bool:
        return config.has_first_party

    def _send_media(self, recipient_id: str, message: OutboundMessage, config: DeliveryConfig) -> None:
        media_url = message.media_url or ""
        data = fetch_media(media_url, timeout_seconds=self._timeout_seconds)
        kind, filename = detect_media_type(media_url)
        media_id = self._client.upload_media(config.corp_id, config.corp_secret, kind, data, filename)
        self._client.send_message(
            config.corp_id,
            config.corp_secret,
            media_payload(config.agent_id, recipient_id, kind, media_id),
        )
        if message.text:
            self._client.send_message(
                config.corp_id,
                config.corp_secret,
                text_payload(config.agent_id, recipient_id, message.text),
            )

    def deliver(self, recipient_id: str, message: OutboundMessage, config: DeliveryConfig) -> DeliveryResult:
        text = message.text or ""
        if message.media_url:
            try:
                self._send_media(recipient_id, message, config)
                return DeliveryResult(delivered=True, detail="media")
            except (BridgeError, ValueError) as exc:
                incr_metric("delivery.media.fallback", tier=self.name)
                log_event(
                    "delivery_media_fallback",
                    level=logging.WARNING,
                    recipient_id=recipient_id,
                    media_url=message.media_url,
                    error=str(exc),
                )
                text = message.text_with_link()

        self._client.send_message(
            config.corp_id,
            config.corp_secret,
            text_payload(config.agent_id, recipient_id, text),
        )
        return DELIVERED


class LegacyApiTier:
    name = "legacy_api"

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout_seconds = timeout_seconds

    def applies(self, config: DeliveryConfig) -> bool:
        return config.has_legacy_api

    def deliver(self, recipient_id: str, message: OutboundMessage, config: DeliveryConfig) -> DeliveryResult:
        wework_client.send_text(
            token=config.wework_token,
            code=config.wework_code,
            text=message.text_with_link(),
            recipient_id=recipient_id,
            api_url=config.wework_api_url,
            namespace=config.wework_namespace,
            timeout_seconds=self._timeout_seconds,
        )
        return DELIVERED


class WebhookTier:
    name = "webhook"

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout_seconds = timeout_seconds

    def applies(self, config: DeliveryConfig) -> bool:
        return config.has_webhook

    def deliver(self, recipient_id: str, message: OutboundMessage, config: DeliveryConfig) -> DeliveryResult:
        webhook_client.post_message(
            url=config.webhook_url,
            recipient_id=recipient_id,
            message=message.to_payload(),
            bearer_token=config.webhook_token,
            timeout_seconds=self._timeout_seconds,
        )
        return DELIVERED


def build_default_tiers(
    store: PendingSyncStore,
    client: WeComApiClient,
    timeout_seconds: float = 15.0,
) -> list[DeliveryTier]:
    return [
        SyncResponseTier(store),
        FirstPartyApiTier(client, timeout_seconds),
        LegacyApiTier(timeout_seconds),
        WebhookTier(timeout_seconds),
    ]
