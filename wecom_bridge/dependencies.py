from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from wecom_bridge.config import Settings
from wecom_bridge.delivery.dispatcher import OutboundDispatcher


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_dispatcher(request: Request) -> OutboundDispatcher:
    return request.app.state.dispatcher


def require_backend_token(
    request: Request,
    authorization: str | None = Header(None),
) -> None:
    """Guard proactive sends with the reply backend's bearer token.

    Without a configured token the route stays closed: it can read local
    media files and send them to any recipient.
    """
    expected = get_settings(request).reply_backend_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Outbound sends are disabled: REPLY_BACKEND_TOKEN is not configured",
        )
    if _extract_bearer_token(authorization) != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing bearer token",
        )
