"""Bridge between decoded inbound messages and the conversational backend.

The backend is reached through :class:`ReplyBackend`. It receives one
:class:`ReplyContext` per inbound message and calls ``deliver`` zero or
more times with replies; every reply goes out through the
:class:`OutboundDispatcher` carrying an explicit :class:`DeliveryContext`
whose recipient hint is the original sender.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx

from wecom_bridge.config import AccountConfig, AsrConfig
from wecom_bridge.delivery.dispatcher import OutboundDispatcher
from wecom_bridge.delivery.messages import DeliveryContext, OutboundMessage
from wecom_bridge.domain.envelope import InboundMessage, VoiceMessage, format_for_backend
from wecom_bridge.domain.errors import BridgeError, ConfigError, TransportError
from wecom_bridge.domain.media import find_markdown_media, find_media_reference
from wecom_bridge.domain.multipart import UploadedFile
from wecom_bridge.observability import incr_metric, log_event, truncate
from wecom_bridge.providers.tencent_asr.client import TencentAsrTranscriber
from wecom_bridge.providers.wecom.client import WeComApiClient


@dataclass(frozen=True)
class ReplyContext:
    sender_id: str
    body: str
    account_id: str
    session_key: str
    media_urls: list[str] | None = None
    system_prompt: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "From": self.sender_id,
            "Body": self.body,
            "AccountId": self.account_id,
            "SessionKey": self.session_key,
            "MediaUrls": self.media_urls,
            "GroupSystemPrompt": self.system_prompt,
        }


@dataclass(frozen=True)
class ReplyPayload:
    text: str | None = None
    media_url: str | None = None
    to: str | None = None


DeliverCallback = Callable[[ReplyPayload], None]
ErrorCallback = Callable[[Exception], None]


class ReplyBackend(Protocol):
    def dispatch_reply(self, ctx: ReplyContext, deliver: DeliverCallback, on_error: ErrorCallback) -> None: ...


class Transcriber(Protocol):
    def transcribe(self, audio: bytes, voice_format: str = "amr") -> str: ...


def _post_context(
    *,
    url: str,
    headers: dict[str, str],
    json_payload: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            return client.post(url, headers=headers, json=json_payload)
    except httpx.HTTPError as exc:
        raise TransportError(f"Reply backend connectivity error: {exc}") from exc


class HttpReplyBackend:
    """POSTs the reply context and delivers each entry of ``replies``."""

    def __init__(self, url: str | None, token: str | None = None, timeout_seconds: float = 120.0) -> None:
        self._url = url
        self._token = token
        self._timeout_seconds = timeout_seconds

    def dispatch_reply(self, ctx: ReplyContext, deliver: DeliverCallback, on_error: ErrorCallback) -> None:
        if not self._url:
            on_error(ConfigError("REPLY_BACKEND_URL is not configured"))
            return

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            response = _post_context(
                url=self._url,
                headers=headers,
                json_payload=ctx.to_payload(),
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            on_error(exc)
            return
        if not 200 <= response.status_code < 300:
            on_error(
                TransportError(
                    f"Reply backend returned HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            )
            return
        try:
            data = response.json()
        except ValueError:
            on_error(TransportError("Reply backend returned non-JSON response"))
            return

        replies = data.get("replies") if isinstance(data, dict) else None
        for item in replies or []:
            if not isinstance(item, dict):
                continue
            deliver(ReplyPayload(text=item.get("text"), media_url=item.get("mediaUrl"), to=item.get("to")))


@dataclass(frozen=True)
class SavedUpload:
    filename: str
    path: str
    mime_type: str


@dataclass
class LegacyInbound:
    sender_id: str
    text: str | None = None
    image_url: str | None = None
    files: list[UploadedFile] = field(default_factory=list)


class ReplyPipeline:
    def __init__(
        self,
        dispatcher: OutboundDispatcher,
        backend: ReplyBackend,
        api_client: WeComApiClient,
        *,
        channel_id: str = "wecom",
        transcriber_factory: Callable[[AsrConfig], Transcriber] = TencentAsrTranscriber,
        upload_dir: str | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.backend = backend
        self.api_client = api_client
        self.channel_id = channel_id
        self._transcriber_factory = transcriber_factory
        self._upload_dir = Path(upload_dir or tempfile.gettempdir())

    def _transcribe(self, message: VoiceMessage, account: AccountConfig, request_id: str | None) -> str | None:
        delivery = account.delivery
        if not account.asr.usable:
            log_event("voice_transcription_skipped", request_id=request_id, reason="asr_not_configured")
            return None
        if not delivery.corp_id or not delivery.corp_secret:
            log_event("voice_transcription_skipped", request_id=request_id, reason="missing_corp_credentials")
            return None
        try:
            audio = self.api_client.download_media(delivery.corp_id, delivery.corp_secret, message.media_id)
            transcript = self._transcriber_factory(account.asr).transcribe(audio, message.format or "amr")
        except (BridgeError, ValueError) as exc:
            incr_metric("voice.transcription.failed")
            log_event(
                "voice_transcription_failed",
                level=logging.WARNING,
                request_id=request_id,
                media_id=message.media_id,
                error=str(exc),
            )
            return None
        incr_metric("voice.transcription.succeeded")
        log_event("voice_transcribed", request_id=request_id, media_id=message.media_id, text=truncate(transcript))
        return transcript

    def dispatch(
        self,
        *,
        sender_id: str,
        body: str,
        media_urls: list[str],
        account: AccountConfig,
        request_id: str | None = None,
        detect_media: bool = False,
    ) -> None:
        self.dispatcher.record_recipient(sender_id)
        ctx = ReplyContext(
            sender_id=sender_id,
            body=body,
            account_id=account.account_id,
            session_key=f"{self.channel_id}:{account.account_id}:{sender_id}",
            media_urls=media_urls or None,
            system_prompt=account.system_prompt,
        )
        context = DeliveryContext(recipient_hint=sender_id, account_id=account.account_id, request_id=request_id)
        log_event(
            "reply_dispatch_started",
            request_id=request_id,
            sender_id=sender_id,
            body=body if account.verbose else truncate(body),
            media_count=len(media_urls),
        )

        def deliver(payload: ReplyPayload) -> None:
            media_url = payload.media_url
            if not media_url and detect_media:
                media_url = find_media_reference(payload.text)
            if account.verbose:
                log_event(
                    "reply_deliver_payload",
                    request_id=request_id,
                    text=payload.text,
                    media_url=media_url,
                    to=payload.to,
                )
            self.dispatcher.deliver(
                payload.to or sender_id,
                OutboundMessage(text=payload.text, media_url=media_url),
                account.delivery,
                context,
            )

        def on_error(exc: Exception) -> None:
            incr_metric("reply.dispatch.failed")
            log_event(
                "reply_dispatch_failed",
                level=logging.ERROR,
                request_id=request_id,
                sender_id=sender_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        self.backend.dispatch_reply(ctx, deliver, on_error)

    def handle_encrypted(self, message: InboundMessage, account: AccountConfig, request_id: str | None = None) -> None:
        """Background step of the encrypted path; never raises."""
        try:
            text, media_urls = format_for_backend(message)
            if isinstance(message, VoiceMessage):
                transcript = self._transcribe(message, account, request_id)
                if transcript:
                    text = f"[Voice content]\n{transcript}"
            self.dispatch(
                sender_id=message.sender,
                body=text,
                media_urls=media_urls,
                account=account,
                request_id=request_id,
                detect_media=True,
            )
        except Exception as exc:
            incr_metric("reply.background.failed", path="encrypted")
            log_event(
                "reply_background_failed",
                level=logging.ERROR,
                request_id=request_id,
                path="encrypted",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def save_uploads(self, files: list[UploadedFile]) -> list[SavedUpload]:
        saved: list[SavedUpload] = []
        for upload in files:
            safe_name = Path(upload.filename).name or "upload"
            path = self._upload_dir / f"wecom-{uuid.uuid4()}-{safe_name}"
            path.write_bytes(upload.data)
            saved.append(SavedUpload(filename=upload.filename, path=str(path), mime_type=upload.mime_type))
        return saved

    def handle_legacy(self, inbound: LegacyInbound, account: AccountConfig, request_id: str | None = None) -> None:
        """Background step of the JSON/multipart path; never raises."""
        try:
            saved = self.save_uploads(inbound.files)
            media_urls: list[str] = []
            if inbound.image_url:
                media_urls.append(inbound.image_url)
            media_urls.extend(f"file://{upload.path}" for upload in saved)

            body = inbound.text or ""
            if saved:
                body += "\n\n[Uploaded files]"
                for upload in saved:
                    body += f"\n- {upload.filename}: {upload.path}"
            body += f"\n\n[System note: when sending media files (images/video/audio), the recipient id is: {inbound.sender_id}]"

            self.dispatch(
                sender_id=inbound.sender_id,
                body=body,
                media_urls=media_urls,
                account=account,
                request_id=request_id,
            )
        except Exception as exc:
            incr_metric("reply.background.failed", path="legacy")
            log_event(
                "reply_background_failed",
                level=logging.ERROR,
                request_id=request_id,
                path="legacy",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def send_outbound(
        self,
        to: str,
        text: str | None,
        account: AccountConfig,
        *,
        media_url: str | None = None,
        context: DeliveryContext | None = None,
    ) -> str:
        """Proactive send initiated by the backend rather than by an inbound message."""
        if not media_url:
            media_url = find_markdown_media(text)
        return self.dispatcher.deliver(
            to,
            OutboundMessage(text=text, media_url=media_url),
            account.delivery,
            context,
        )
