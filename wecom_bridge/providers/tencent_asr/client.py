from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from wecom_bridge.config import AsrConfig
from wecom_bridge.domain.errors import ApiError, TransportError


ASR_HOST = "asr.tencentcloudapi.com"
ASR_SERVICE = "asr"
ASR_ACTION = "SentenceRecognition"
ASR_VERSION = "2019-06-14"
_ALGORITHM = "TC3-HMAC-SHA256"
_SIGNED_HEADERS = "content-type;host"


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def build_authorization(
    *,
    secret_id: str,
    secret_key: str,
    payload: str,
    timestamp: int,
) -> str:
    date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
    hashed_payload = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    canonical_request = (
        f"POST\n/\n\ncontent-type:application/json\nhost:{ASR_HOST}\n\n"
        f"{_SIGNED_HEADERS}\n{hashed_payload}"
    )
    credential_scope = f"{date}/{ASR_SERVICE}/tc3_request"
    string_to_sign = (
        f"{_ALGORITHM}\n{timestamp}\n{credential_scope}\n"
        f"{hashlib.sha256(canonical_request.encode('utf-8')).hexdigest()}"
    )

    k_date = _hmac_sha256(f"TC3{secret_key}".encode("utf-8"), date)
    k_service = _hmac_sha256(k_date, ASR_SERVICE)
    k_signing = _hmac_sha256(k_service, "tc3_request")
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    return (
        f"{_ALGORITHM} Credential={secret_id}/{credential_scope}, "
        f"SignedHeaders={_SIGNED_HEADERS}, Signature={signature}"
    )


def _request(*, headers: dict[str, str], body: str, timeout_seconds: float) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            return client.post(f"https://{ASR_HOST}", headers=headers, content=body.encode("utf-8"))
    except httpx.HTTPError as exc:
        raise TransportError(f"ASR connectivity error: {exc}") from exc


class TencentAsrTranscriber:
    def __init__(self, config: AsrConfig, timeout_seconds: float = 30.0) -> None:
        if not config.secret_id or not config.secret_key:
            raise ValueError("Tencent ASR requires secret_id and secret_key")
        self._config = config
        self._timeout_seconds = timeout_seconds

    def transcribe(self, audio: bytes, voice_format: str = "amr") -> str:
        body = json.dumps(
            {
                "ProjectId": 0,
                "SubServiceType": 2,
                "EngSerViceType": self._config.engine_model_type,
                "SourceType": 1,
                "VoiceFormat": voice_format or "amr",
                "Data": base64.b64encode(audio).decode("ascii"),
                "DataLen": len(audio),
            }
        )
        timestamp = int(time.time())
        headers = {
            "Content-Type": "application/json",
            "Host": ASR_HOST,
            "X-TC-Action": ASR_ACTION,
            "X-TC-Version": ASR_VERSION,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Region": self._config.region,
            "Authorization": build_authorization(
                secret_id=self._config.secret_id,
                secret_key=self._config.secret_key,
                payload=body,
                timestamp=timestamp,
            ),
        }
        response = _request(headers=headers, body=body, timeout_seconds=self._timeout_seconds)
        if response.status_code >= 400:
            raise TransportError(
                f"ASR returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            result: Any = response.json()
        except ValueError as exc:
            raise TransportError("ASR returned non-JSON response") from exc

        data = result.get("Response", {}) if isinstance(result, dict) else {}
        error = data.get("Error")
        if error:
            raise ApiError(-1, f"{error.get('Code')}: {error.get('Message')}")
        text = data.get("Result")
        if not text:
            raise ApiError(-1, "No speech recognized")
        return str(text)
