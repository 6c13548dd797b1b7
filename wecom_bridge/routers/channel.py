from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from wecom_bridge.config import AccountConfig, ChannelVariant, resolve_account
from wecom_bridge.delivery.dispatcher import QUEUE_TIER
from wecom_bridge.delivery.messages import DeliveryContext
from wecom_bridge.delivery.sync import SyncResponseHandle
from wecom_bridge.dependencies import get_dispatcher, get_settings, require_backend_token
from wecom_bridge.domain.cipher import decrypt_message
from wecom_bridge.domain.envelope import EventMessage, decode_message, extract_encrypted_field
from wecom_bridge.domain.errors import DecodeError, DecryptError
from wecom_bridge.domain.multipart import extract_boundary, parse_multipart
from wecom_bridge.domain.signature import verify_signature
from wecom_bridge.models.messages import (
    LegacyMessageRequest,
    MessageAcceptedResponse,
    OutboundSendRequest,
    OutboundSendResponse,
    PollResponse,
)
from wecom_bridge.observability import incr_metric, log_event, truncate
from wecom_bridge.reply import LegacyInbound, ReplyPipeline


_SUCCESS = "success"
# Held-open sync requests run outside the request's task; keep them referenced.
_sync_tasks: set[asyncio.Task[Any]] = set()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _reject(channel_id: str, status_code: int, detail: str, *, reason: str, request_id: str | None) -> HTTPException:
    incr_metric("webhook.rejected", channel=channel_id, reason=reason)
    log_event(
        "webhook_rejected",
        level=logging.WARNING,
        request_id=request_id,
        channel=channel_id,
        reason=reason,
        status_code=status_code,
    )
    return HTTPException(status_code=status_code, detail=detail)


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")


def build_channel_router(variant: ChannelVariant) -> APIRouter:
    """Routes for one channel variant; variants differ only by prefix and capabilities."""
    router = APIRouter(prefix=variant.route_prefix, tags=[variant.label])

    def _account(request: Request, account_id: str | None) -> AccountConfig:
        account = resolve_account(get_settings(request), account_id)
        if not account.enabled:
            raise _reject(
                variant.id,
                status.HTTP_404_NOT_FOUND,
                "Account disabled",
                reason="account_disabled",
                request_id=_request_id(request),
            )
        return account

    def _pipeline(request: Request) -> ReplyPipeline:
        return request.app.state.pipelines[variant.id]

    @router.get("/message", response_class=PlainTextResponse)
    async def verify_callback_url(
        request: Request,
        msg_signature: str | None = None,
        timestamp: str | None = None,
        nonce: str | None = None,
        echostr: str | None = None,
        account: str | None = None,
    ):
        if not variant.accepts_encrypted:
            raise _not_found()
        request_id = _request_id(request)
        account_config = _account(request, account)

        if not account_config.token:
            raise _reject(variant.id, 500, "WeCom token not configured", reason="missing_token", request_id=request_id)
        if not (msg_signature and timestamp and nonce and echostr):
            raise _reject(variant.id, 400, "Missing query parameters", reason="missing_params", request_id=request_id)
        if not verify_signature(account_config.token, timestamp, nonce, echostr, msg_signature):
            incr_metric("webhook.handshake", channel=variant.id, result="invalid_signature")
            raise _reject(variant.id, 403, "Invalid signature", reason="invalid_signature", request_id=request_id)
        if not account_config.encoding_aes_key or not account_config.corp_id:
            raise _reject(
                variant.id,
                500,
                "WeCom encoding key or corp id not configured",
                reason="missing_cipher_config",
                request_id=request_id,
            )
        try:
            echo = decrypt_message(account_config.encoding_aes_key, echostr, account_config.corp_id)
        except DecryptError as exc:
            incr_metric("webhook.handshake", channel=variant.id, result="decrypt_failed")
            log_event("handshake_decrypt_failed", level=logging.ERROR, request_id=request_id, error=str(exc))
            raise HTTPException(status_code=500, detail="Decryption failed") from exc

        incr_metric("webhook.handshake", channel=variant.id, result="verified")
        log_event("handshake_verified", request_id=request_id, channel=variant.id, account_id=account_config.account_id)
        return PlainTextResponse(echo)

    async def _receive_encrypted(
        request: Request,
        background_tasks: BackgroundTasks,
        account_config: AccountConfig,
        *,
        msg_signature: str | None,
        timestamp: str | None,
        nonce: str | None,
    ) -> PlainTextResponse:
        request_id = _request_id(request)
        if not (account_config.token and account_config.encoding_aes_key and account_config.corp_id):
            raise _reject(variant.id, 500, "WeCom account not configured", reason="missing_config", request_id=request_id)
        if not (msg_signature and timestamp and nonce):
            raise _reject(variant.id, 400, "Missing query parameters", reason="missing_params", request_id=request_id)

        raw_body = (await request.body()).decode("utf-8", errors="replace")
        try:
            encrypted = extract_encrypted_field(raw_body)
        except DecodeError as exc:
            raise _reject(variant.id, 400, "Missing Encrypt field", reason="missing_encrypt", request_id=request_id) from exc
        if not verify_signature(account_config.token, timestamp, nonce, encrypted, msg_signature):
            raise _reject(variant.id, 403, "Invalid signature", reason="invalid_signature", request_id=request_id)

        try:
            xml_text = decrypt_message(account_config.encoding_aes_key, encrypted, account_config.corp_id)
        except DecryptError as exc:
            incr_metric("webhook.decode_failed", channel=variant.id, stage="decrypt")
            log_event("message_decrypt_failed", level=logging.ERROR, request_id=request_id, error=str(exc))
            raise HTTPException(status_code=500, detail="Decryption failed") from exc
        if account_config.verbose:
            log_event("message_decrypted", request_id=request_id, xml=xml_text)

        try:
            message = decode_message(xml_text)
        except DecodeError as exc:
            incr_metric("webhook.decode_failed", channel=variant.id, stage="decode")
            log_event("message_decode_failed", level=logging.ERROR, request_id=request_id, error=str(exc))
            raise HTTPException(status_code=500, detail="Invalid message") from exc

        if isinstance(message, EventMessage):
            incr_metric("webhook.event_skipped", channel=variant.id, event=message.name)
            log_event("event_skipped", request_id=request_id, event_name=message.name, sender_id=message.sender)
            return PlainTextResponse(_SUCCESS)

        incr_metric("webhook.accepted", channel=variant.id, kind=message.kind)
        log_event(
            "message_received",
            request_id=request_id,
            channel=variant.id,
            kind=message.kind,
            sender_id=message.sender,
            msg_id=message.msg_id,
        )
        background_tasks.add_task(_pipeline(request).handle_encrypted, message, account_config, request_id)
        return PlainTextResponse(_SUCCESS)

    async def _receive_legacy(
        request: Request,
        background_tasks: BackgroundTasks,
        account_config: AccountConfig,
    ):
        request_id = _request_id(request)
        content_type = request.headers.get("content-type", "")
        raw_body = await request.body()

        files = []
        if "multipart/form-data" in content_type.lower():
            boundary = extract_boundary(content_type)
            if not boundary:
                raise _reject(variant.id, 400, "Missing multipart boundary", reason="missing_boundary", request_id=request_id)
            parsed = parse_multipart(raw_body, boundary)
            fields: Any = parsed.fields
            files = parsed.files
        else:
            if not raw_body.strip():
                raise _reject(variant.id, 400, "Empty body", reason="empty_body", request_id=request_id)
            try:
                fields = json.loads(raw_body)
            except ValueError as exc:
                raise _reject(variant.id, 400, "Invalid JSON payload", reason="invalid_json", request_id=request_id) from exc
            if not isinstance(fields, dict):
                raise _reject(variant.id, 400, "Invalid JSON payload", reason="invalid_json", request_id=request_id)

        try:
            payload = LegacyMessageRequest.model_validate(fields)
        except ValidationError as exc:
            raise _reject(variant.id, 400, "Invalid message fields", reason="invalid_fields", request_id=request_id) from exc
        if not payload.email:
            raise _reject(variant.id, 400, "Missing email", reason="missing_email", request_id=request_id)

        inbound = LegacyInbound(
            sender_id=payload.email,
            text=payload.text,
            image_url=payload.image_url,
            files=files,
        )
        incr_metric("webhook.accepted", channel=variant.id, kind="legacy")
        log_event(
            "legacy_message_received",
            request_id=request_id,
            channel=variant.id,
            sender_id=payload.email,
            text=truncate(payload.text),
            file_count=len(files),
            sync=payload.sync,
        )
        pipeline = _pipeline(request)

        if not payload.sync:
            background_tasks.add_task(pipeline.handle_legacy, inbound, account_config, request_id)
            return MessageAcceptedResponse()

        handle = SyncResponseHandle(asyncio.get_running_loop())
        get_dispatcher(request).register_sync(
            payload.email,
            handle,
            get_settings(request).sync_timeout_seconds,
        )
        task = asyncio.create_task(run_in_threadpool(pipeline.handle_legacy, inbound, account_config, request_id))
        _sync_tasks.add(task)
        task.add_done_callback(_sync_tasks.discard)

        status_code, body = await handle.wait()
        incr_metric("webhook.sync_resolved", channel=variant.id, status_code=status_code)
        return JSONResponse(body, status_code=status_code)

    @router.post("/message")
    async def receive_message(
        request: Request,
        background_tasks: BackgroundTasks,
        msg_signature: str | None = None,
        timestamp: str | None = None,
        nonce: str | None = None,
        account: str | None = None,
    ):
        incr_metric("webhook.received", channel=variant.id)
        account_config = _account(request, account)
        content_type = request.headers.get("content-type", "").lower()
        if "xml" in content_type or msg_signature is not None:
            if not variant.accepts_encrypted:
                raise _not_found()
            return await _receive_encrypted(
                request,
                background_tasks,
                account_config,
                msg_signature=msg_signature,
                timestamp=timestamp,
                nonce=nonce,
            )
        if not variant.accepts_legacy:
            raise _not_found()
        return await _receive_legacy(request, background_tasks, account_config)

    @router.get("/messages", response_model=PollResponse)
    async def poll_messages(request: Request, email: str | None = None):
        if not email:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing email")
        messages = get_dispatcher(request).drain_queue(email)
        log_event("queue_polled", request_id=_request_id(request), recipient_id=email, count=len(messages))
        return PollResponse(messages=messages)

    @router.post(
        "/outbound",
        response_model=OutboundSendResponse,
        dependencies=[Depends(require_backend_token)],
    )
    def send_outbound(data: OutboundSendRequest, request: Request):
        request_id = _request_id(request)
        account_config = _account(request, data.account_id)
        tier = _pipeline(request).send_outbound(
            data.to,
            data.text,
            account_config,
            media_url=data.media_url,
            context=DeliveryContext(account_id=account_config.account_id, request_id=request_id),
        )
        return OutboundSendResponse(status="queued" if tier == QUEUE_TIER else "sent", tier=tier)

    return router
