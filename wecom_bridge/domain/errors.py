from __future__ import annotations

from typing import Any


TOKEN_INVALID_CODES = frozenset({40014, 42001})


class BridgeError(Exception):
    """Base class for every failure raised by the bridge."""


class ConfigError(BridgeError):
    """Required credentials are missing for the requested operation."""


class SignatureError(BridgeError):
    """Request signature does not match the configured token."""


class DecryptError(BridgeError):
    """Encrypted payload is structurally invalid or addressed to another tenant."""


class DecodeError(BridgeError):
    """Decrypted XML does not describe a known inbound message."""


class MediaError(BridgeError):
    """A media reference could not be fetched."""


class TokenFetchError(BridgeError):
    """The token endpoint refused to issue an access token."""

    def __init__(self, code: int | None, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"Access token fetch failed: {code} - {message}")


class ApiError(BridgeError):
    """Non-zero application error code returned by the first-party API."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"WeCom API error: {code} - {message}")

    @property
    def token_invalid(self) -> bool:
        return self.code in TOKEN_INVALID_CODES

    @property
    def category(self) -> str:
        if self.token_invalid:
            return "auth"
        if self.code == -1:
            return "transient"
        return "terminal"

    @property
    def retryable(self) -> bool:
        return self.category in {"auth", "transient"}


class TransportError(BridgeError):
    """Non-2xx status or network failure on an outbound HTTP call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def category(self) -> str:
        if self.status_code is None or self.status_code == 429 or self.status_code >= 500:
            return "transient"
        return "terminal"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def error_detail(*, tier: str, exc: Exception) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "tier": tier,
        "error_type": type(exc).__name__,
        "message": str(exc),
    }
    category = getattr(exc, "category", None)
    if category is not None:
        detail["category"] = category
    code = getattr(exc, "code", None)
    if code is not None:
        detail["code"] = code
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        detail["status_code"] = status_code
    retryable = getattr(exc, "retryable", None)
    if retryable is not None:
        detail["retryable"] = retryable
    return detail
