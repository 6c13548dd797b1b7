from __future__ import annotations

import logging
from typing import Any

import httpx

from wecom_bridge.config import DEFAULT_WECOM_API_BASE
from wecom_bridge.domain.errors import ApiError, TransportError
from wecom_bridge.observability import incr_metric, log_event
from wecom_bridge.providers.wecom.token_cache import AccessTokenCache


_EP_MESSAGE_SEND = "/cgi-bin/message/send"
_EP_MEDIA_UPLOAD = "/cgi-bin/media/upload"
_EP_MEDIA_GET = "/cgi-bin/media/get"

MEDIA_KINDS = {"image", "voice", "video", "file"}


def _request(
    *,
    method: str,
    url: str,
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    files: dict[str, tuple[str, bytes]] | None = None,
) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            return client.request(
                method=method,
                url=url,
                params=params,
                json=json_payload,
                files=files,
            )
    except httpx.HTTPError as exc:
        raise TransportError(f"WeCom connectivity error: {exc}") from exc


def text_payload(agent_id: int, to_user: str, content: str) -> dict[str, Any]:
    return {
        "msgtype": "text",
        "agentid": agent_id,
        "touser": to_user,
        "text": {"content": content},
    }


def media_payload(agent_id: int, to_user: str, kind: str, media_id: str) -> dict[str, Any]:
    return {
        "msgtype": kind,
        "agentid": agent_id,
        "touser": to_user,
        kind: {"media_id": media_id},
    }


class WeComApiClient:
    """First-party API calls, each authenticated through the shared token cache."""

    def __init__(
        self,
        token_cache: AccessTokenCache,
        *,
        base_url: str = DEFAULT_WECOM_API_BASE,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.token_cache = token_cache
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def _check_result(self, corp_id: str, corp_secret: str, result: Any, operation: str) -> dict[str, Any]:
        if not isinstance(result, dict):
            raise TransportError(f"Unexpected WeCom {operation} response type")
        errcode = result.get("errcode") or 0
        if errcode != 0:
            error = ApiError(int(errcode), str(result.get("errmsg", "")))
            incr_metric("wecom.api.error", operation=operation, category=error.category)
            log_event(
                "wecom_api_error",
                level=logging.WARNING,
                operation=operation,
                code=error.code,
                message=error.message,
            )
            if error.token_invalid:
                self.token_cache.evict(corp_id, corp_secret)
            raise error
        return result

    def _json(self, response: httpx.Response, operation: str) -> Any:
        if response.status_code >= 400:
            raise TransportError(
                f"WeCom {operation} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"WeCom {operation} returned non-JSON response") from exc

    def send_message(self, corp_id: str, corp_secret: str, payload: dict[str, Any]) -> dict[str, Any]:
        access_token = self.token_cache.get_token(corp_id, corp_secret)
        response = _request(
            method="POST",
            url=f"{self._base_url}{_EP_MESSAGE_SEND}",
            timeout_seconds=self._timeout_seconds,
            params={"access_token": access_token},
            json_payload=payload,
        )
        result = self._check_result(corp_id, corp_secret, self._json(response, "send"), "send")
        log_event(
            "wecom_message_sent",
            msgtype=payload.get("msgtype"),
            touser=payload.get("touser"),
            invaliduser=result.get("invaliduser") or None,
        )
        return result

    def upload_media(
        self,
        corp_id: str,
        corp_secret: str,
        kind: str,
        data: bytes,
        filename: str,
    ) -> str:
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unsupported media kind: {kind}")
        access_token = self.token_cache.get_token(corp_id, corp_secret)
        response = _request(
            method="POST",
            url=f"{self._base_url}{_EP_MEDIA_UPLOAD}",
            timeout_seconds=self._timeout_seconds,
            params={"access_token": access_token, "type": kind},
            files={"media": (filename, data)},
        )
        result = self._check_result(corp_id, corp_secret, self._json(response, "upload"), "upload")
        media_id = result.get("media_id")
        if not media_id:
            raise TransportError("WeCom upload response has no media_id")
        log_event("wecom_media_uploaded", kind=kind, filename=filename, size=len(data))
        return str(media_id)

    def download_media(self, corp_id: str, corp_secret: str, media_id: str) -> bytes:
        access_token = self.token_cache.get_token(corp_id, corp_secret)
        response = _request(
            method="GET",
            url=f"{self._base_url}{_EP_MEDIA_GET}",
            timeout_seconds=self._timeout_seconds,
            params={"access_token": access_token, "media_id": media_id},
        )
        if response.status_code >= 400:
            raise TransportError(
                f"WeCom download returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        # Errors come back as JSON with a 200 status; media comes back as bytes.
        if "application/json" in response.headers.get("content-type", ""):
            self._check_result(corp_id, corp_secret, self._json(response, "download"), "download")
        log_event("wecom_media_downloaded", media_id=media_id, size=len(response.content))
        return response.content
