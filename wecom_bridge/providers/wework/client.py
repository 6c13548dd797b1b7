from __future__ import annotations

from typing import Any

import httpx

from wecom_bridge.config import DEFAULT_WEWORK_API_URL, DEFAULT_WEWORK_NAMESPACE
from wecom_bridge.domain.errors import TransportError


WEWORK_ACTION = "Common.MessageWechat"


def _request(*, url: str, json_payload: dict[str, Any], timeout_seconds: float) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            return client.post(url, json=json_payload, headers={"Content-Type": "application/json"})
    except httpx.HTTPError as exc:
        raise TransportError(f"Legacy API connectivity error: {exc}") from exc


def build_envelope(
    *,
    token: str,
    code: str,
    text: str,
    recipient_id: str,
    namespace: str | None = None,
) -> dict[str, Any]:
    return {
        "Action": WEWORK_ACTION,
        "Namespace": namespace or DEFAULT_WEWORK_NAMESPACE,
        "Token": token,
        "Code": code,
        "Data": {"Text": text},
        "ToEmails": [recipient_id],
    }


def send_text(
    *,
    token: str,
    code: str,
    text: str,
    recipient_id: str,
    api_url: str | None = None,
    namespace: str | None = None,
    timeout_seconds: float = 15.0,
) -> None:
    response = _request(
        url=api_url or DEFAULT_WEWORK_API_URL,
        json_payload=build_envelope(
            token=token,
            code=code,
            text=text,
            recipient_id=recipient_id,
            namespace=namespace,
        ),
        timeout_seconds=timeout_seconds,
    )
    if not 200 <= response.status_code < 300:
        raise TransportError(
            f"Legacy API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
