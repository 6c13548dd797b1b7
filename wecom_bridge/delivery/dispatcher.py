from __future__ import annotations

import logging
import threading
from typing import Any

from wecom_bridge.config import DeliveryConfig
from wecom_bridge.delivery.messages import BROADCAST_RECIPIENT, DeliveryContext, OutboundMessage
from wecom_bridge.delivery.sync import KeyedLocks, PendingSyncStore, ResponseHandle
from wecom_bridge.delivery.tiers import DeliveryTier, build_default_tiers
from wecom_bridge.domain.errors import error_detail
from wecom_bridge.observability import incr_metric, log_event, truncate
from wecom_bridge.providers.wecom.client import WeComApiClient
from wecom_bridge.providers.wecom.token_cache import AccessTokenCache


QUEUE_TIER = "queue"


class OutboundQueue:
    """In-memory per-recipient FIFO of undelivered message payloads."""

    def __init__(self, locks: KeyedLocks | None = None) -> None:
        self._locks = locks or KeyedLocks()
        self._queues: dict[str, list[dict[str, Any]]] = {}

    def append(self, recipient_id: str, payload: dict[str, Any]) -> int:
        with self._locks(recipient_id):
            queue = self._queues.setdefault(recipient_id, [])
            queue.append(payload)
            return len(queue)

    def drain(self, recipient_id: str) -> list[dict[str, Any]]:
        with self._locks(recipient_id):
            return self._queues.pop(recipient_id, [])


class OutboundDispatcher:
    """Delivers replies through an ordered fallback chain ending in the queue.

    ``send`` never raises: each tier's failure falls through to the next
    and the queue always accepts.
    """

    def __init__(
        self,
        *,
        tiers: list[DeliveryTier] | None = None,
        sync_store: PendingSyncStore | None = None,
        queue: OutboundQueue | None = None,
        api_client: WeComApiClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        locks = KeyedLocks()
        self.sync_store = sync_store or PendingSyncStore(locks=locks)
        self.queue = queue or OutboundQueue(locks=locks)
        if tiers is None:
            client = api_client or WeComApiClient(AccessTokenCache())
            tiers = build_default_tiers(self.sync_store, client, timeout_seconds)
        self.tiers = tiers
        self._last_recipient: str | None = None
        self._last_recipient_lock = threading.Lock()

    @property
    def last_recipient(self) -> str | None:
        with self._last_recipient_lock:
            return self._last_recipient

    def record_recipient(self, recipient_id: str) -> None:
        if not recipient_id or recipient_id == BROADCAST_RECIPIENT:
            return
        with self._last_recipient_lock:
            self._last_recipient = recipient_id

    def register_sync(self, recipient_id: str, handle: ResponseHandle, timeout_seconds: float = 30.0) -> None:
        self.sync_store.register(recipient_id, handle, timeout_seconds)
        incr_metric("delivery.sync.registered")

    def drain_queue(self, recipient_id: str) -> list[dict[str, Any]]:
        messages = self.queue.drain(recipient_id)
        if messages:
            incr_metric("delivery.queue.drained", value=len(messages))
        return messages

    def resolve_recipient(self, target: str, context: DeliveryContext | None = None) -> str:
        if target != BROADCAST_RECIPIENT:
            return target
        if context is not None and context.recipient_hint:
            return context.recipient_hint
        last = self.last_recipient
        if last:
            log_event("broadcast_recipient_fallback", recipient_id=last)
            return last
        log_event(
            "broadcast_recipient_unresolved",
            level=logging.WARNING,
            request_id=context.request_id if context else None,
        )
        return target

    def deliver(
        self,
        target: str,
        message: OutboundMessage,
        config: DeliveryConfig,
        context: DeliveryContext | None = None,
    ) -> str:
        recipient_id = self.resolve_recipient(target, context)
        return self.send(recipient_id, message, config, context=context)

    def send(
        self,
        recipient_id: str,
        message: OutboundMessage,
        config: DeliveryConfig,
        *,
        context: DeliveryContext | None = None,
    ) -> str:
        request_id = context.request_id if context else None
        account_id = context.account_id if context else None
        self.record_recipient(recipient_id)
        log_event(
            "delivery_started",
            request_id=request_id,
            account_id=account_id,
            recipient_id=recipient_id,
            text=truncate(message.text, 50),
            media_url=message.media_url,
        )

        for tier in self.tiers:
            if not tier.applies(config):
                continue
            incr_metric("delivery.tier.attempted", tier=tier.name)
            try:
                result = tier.deliver(recipient_id, message, config)
            except Exception as exc:
                incr_metric("delivery.tier.failed", tier=tier.name)
                log_event(
                    "delivery_tier_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    account_id=account_id,
                    recipient_id=recipient_id,
                    **error_detail(tier=tier.name, exc=exc),
                )
                continue
            if result.delivered:
                incr_metric("delivery.tier.succeeded", tier=tier.name)
                log_event(
                    "delivery_succeeded",
                    request_id=request_id,
                    account_id=account_id,
                    recipient_id=recipient_id,
                    tier=tier.name,
                    detail=result.detail,
                )
                return tier.name

        depth = self.queue.append(recipient_id, message.to_payload())
        incr_metric("delivery.queue.appended")
        log_event(
            "delivery_queued",
            request_id=request_id,
            account_id=account_id,
            recipient_id=recipient_id,
            queue_depth=depth,
        )
        return QUEUE_TIER
