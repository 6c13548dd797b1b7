from __future__ import annotations

import base64
import json

import pytest

from wecom_bridge.config import AsrConfig, DEFAULT_WEWORK_API_URL, DEFAULT_WEWORK_NAMESPACE
from wecom_bridge.domain.errors import ApiError, TransportError
from wecom_bridge.providers.tencent_asr import client as asr_client
from wecom_bridge.providers.webhook import client as webhook_client
from wecom_bridge.providers.wework import client as wework_client


class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_wework_send_text_posts_fixed_envelope(monkeypatch):
    calls: list[dict] = []

    def _fake_request(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(200, {"ok": True})

    monkeypatch.setattr(wework_client, "_request", _fake_request)
    wework_client.send_text(token="t", code="c", text="hello", recipient_id="u1@example.com")

    assert calls[0]["url"] == DEFAULT_WEWORK_API_URL
    assert calls[0]["json_payload"] == {
        "Action": "Common.MessageWechat",
        "Namespace": DEFAULT_WEWORK_NAMESPACE,
        "Token": "t",
        "Code": "c",
        "Data": {"Text": "hello"},
        "ToEmails": ["u1@example.com"],
    }


def test_wework_non_2xx_is_transport_error(monkeypatch):
    monkeypatch.setattr(wework_client, "_request", lambda **kwargs: _FakeResponse(503, {"error": "down"}))
    with pytest.raises(TransportError) as exc_info:
        wework_client.send_text(
            token="t",
            code="c",
            text="hello",
            recipient_id="u1",
            api_url="https://legacy.example/api",
        )
    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable is True


def test_webhook_post_message_merges_recipient_and_bearer(monkeypatch):
    calls: list[dict] = []

    def _fake_request(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(204)

    monkeypatch.setattr(webhook_client, "_request", _fake_request)
    webhook_client.post_message(
        url="https://hooks.example/in",
        recipient_id="u1",
        message={"text": "hi", "mediaUrl": "https://x/a.png"},
        bearer_token="secret",
    )

    assert calls[0]["json_payload"] == {"recipientEmail": "u1", "text": "hi", "mediaUrl": "https://x/a.png"}
    assert calls[0]["headers"]["Authorization"] == "Bearer secret"


def test_webhook_without_token_omits_authorization(monkeypatch):
    calls: list[dict] = []

    def _fake_request(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(400, {"error": "bad"})

    monkeypatch.setattr(webhook_client, "_request", _fake_request)
    with pytest.raises(TransportError) as exc_info:
        webhook_client.post_message(url="https://hooks.example/in", recipient_id="u1", message={"text": "hi"})

    assert "Authorization" not in calls[0]["headers"]
    assert exc_info.value.category == "terminal"


def test_asr_authorization_header_shape():
    header = asr_client.build_authorization(
        secret_id="AKID",
        secret_key="key",
        payload="{}",
        timestamp=1700000000,
    )
    assert header.startswith("TC3-HMAC-SHA256 Credential=AKID/2023-11-14/asr/tc3_request, ")
    assert "SignedHeaders=content-type;host" in header
    signature = header.rsplit("Signature=", 1)[1]
    assert len(signature) == 64


def test_asr_transcribe_sends_base64_audio(monkeypatch):
    calls: list[dict] = []

    def _fake_request(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(200, {"Response": {"Result": "你好", "RequestId": "r1"}})

    monkeypatch.setattr(asr_client, "_request", _fake_request)
    transcriber = asr_client.TencentAsrTranscriber(AsrConfig(enabled=True, secret_id="id", secret_key="key"))

    assert transcriber.transcribe(b"audio", "amr") == "你好"
    body = json.loads(calls[0]["body"])
    assert body["Data"] == base64.b64encode(b"audio").decode()
    assert body["DataLen"] == 5
    assert body["EngSerViceType"] == "16k_zh"
    assert calls[0]["headers"]["X-TC-Action"] == "SentenceRecognition"
    assert calls[0]["headers"]["X-TC-Region"] == "ap-guangzhou"


def test_asr_error_response_raises_api_error(monkeypatch):
    monkeypatch.setattr(
        asr_client,
        "_request",
        lambda **kwargs: _FakeResponse(200, {"Response": {"Error": {"Code": "AuthFailure", "Message": "bad"}}}),
    )
    transcriber = asr_client.TencentAsrTranscriber(AsrConfig(enabled=True, secret_id="id", secret_key="key"))
    with pytest.raises(ApiError, match="AuthFailure"):
        transcriber.transcribe(b"audio")


def test_asr_requires_credentials():
    with pytest.raises(ValueError):
        asr_client.TencentAsrTranscriber(AsrConfig(enabled=True))
