from __future__ import annotations

from typing import Any

import httpx

from wecom_bridge.domain.errors import TransportError


def _request(
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
        raise TransportError(f"Webhook connectivity error: {exc}") from exc


def post_message(
    *,
    url: str,
    recipient_id: str,
    message: dict[str, Any],
    bearer_token: str | None = None,
    timeout_seconds: float = 15.0,
) -> None:
    headers = {"Content-Type": "application/json"}
    if bearer_token:
        headers["Authorization"] = f"Bearer {bearer_token}"
    payload = {"recipientEmail": recipient_id, **message}
    response = _request(url=url, headers=headers, json_payload=payload, timeout_seconds=timeout_seconds)
    if not 200 <= response.status_code < 300:
        raise TransportError(
            f"Webhook returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
