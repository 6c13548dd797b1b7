from __future__ import annotations

import base64

from fastapi.testclient import TestClient

from wecom_bridge.config import Settings
from wecom_bridge.domain.cipher import encrypt_message
from wecom_bridge.domain.signature import compute_signature
from wecom_bridge.main import create_app
from wecom_bridge.observability import metrics_snapshot, reset_metrics
from wecom_bridge.reply import ReplyPayload


AES_KEY = base64.b64encode(bytes(range(32))).decode("ascii").rstrip("=")
CORP_ID = "wx5823bf96d3bd56c7"
TOKEN = "callback-token"
TIMESTAMP = "1700000000"
NONCE = "nonce-1"


class _FakeBackend:
    def __init__(self, replies: list[ReplyPayload] | None = None) -> None:
        self.replies = replies or []
        self.contexts = []

    def dispatch_reply(self, ctx, deliver, on_error):
        self.contexts.append(ctx)
        for payload in self.replies:
            deliver(payload)


def _settings(**overrides) -> Settings:
    values = {
        "wecom_corp_id": CORP_ID,
        "wecom_token": TOKEN,
        "wecom_encoding_aes_key": AES_KEY,
        "enabled_channels": ["wecom", "simple-wecom"],
        "sync_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _client(backend: _FakeBackend, **overrides) -> tuple[TestClient, object]:
    app = create_app(source=_settings(**overrides), backend=backend)
    return TestClient(app), app


def _inbound_xml(msg_type: str, body: str) -> str:
    return (
        "<xml>"
        f"<ToUserName><![CDATA[{CORP_ID}]]></ToUserName>"
        "<FromUserName><![CDATA[zhangsan]]></FromUserName>"
        "<CreateTime>1700000000</CreateTime>"
        f"<MsgType><![CDATA[{msg_type}]]></MsgType>"
        "<AgentID>1000002</AgentID>"
        f"{body}"
        "</xml>"
    )


def _encrypted_request(plain_xml: str) -> tuple[dict, str]:
    encrypted = encrypt_message(AES_KEY, plain_xml, CORP_ID)
    params = {
        "msg_signature": compute_signature(TOKEN, TIMESTAMP, NONCE, encrypted),
        "timestamp": TIMESTAMP,
        "nonce": NONCE,
    }
    body = f"<xml><ToUserName><![CDATA[{CORP_ID}]]></ToUserName><Encrypt><![CDATA[{encrypted}]]></Encrypt></xml>"
    return params, body


def test_handshake_returns_decrypted_echo():
    client, _ = _client(_FakeBackend())
    echostr = encrypt_message(AES_KEY, "echo-123", CORP_ID)
    response = client.get(
        "/wecom/message",
        params={
            "msg_signature": compute_signature(TOKEN, TIMESTAMP, NONCE, echostr),
            "timestamp": TIMESTAMP,
            "nonce": NONCE,
            "echostr": echostr,
        },
    )
    assert response.status_code == 200
    assert response.text == "echo-123"
    assert response.headers["content-type"].startswith("text/plain")


def test_handshake_rejections():
    client, _ = _client(_FakeBackend())
    echostr = encrypt_message(AES_KEY, "echo-123", CORP_ID)

    missing = client.get("/wecom/message", params={"timestamp": TIMESTAMP, "nonce": NONCE})
    assert missing.status_code == 400

    forged = client.get(
        "/wecom/message",
        params={"msg_signature": "0" * 40, "timestamp": TIMESTAMP, "nonce": NONCE, "echostr": echostr},
    )
    assert forged.status_code == 403

    unconfigured, _ = _client(_FakeBackend(), wecom_token=None)
    assert unconfigured.get("/wecom/message", params={"echostr": echostr}).status_code == 500


def test_handshake_with_foreign_tenant_payload_fails():
    client, _ = _client(_FakeBackend())
    echostr = encrypt_message(AES_KEY, "echo-123", "wx-other")
    response = client.get(
        "/wecom/message",
        params={
            "msg_signature": compute_signature(TOKEN, TIMESTAMP, NONCE, echostr),
            "timestamp": TIMESTAMP,
            "nonce": NONCE,
            "echostr": echostr,
        },
    )
    assert response.status_code == 500


def test_encrypted_text_message_acknowledges_and_dispatches():
    backend = _FakeBackend()
    client, _ = _client(backend)
    params, body = _encrypted_request(_inbound_xml("text", "<Content><![CDATA[hello]]></Content><MsgId>1</MsgId>"))

    response = client.post("/wecom/message", params=params, content=body, headers={"Content-Type": "text/xml"})

    assert response.status_code == 200
    assert response.text == "success"
    assert len(backend.contexts) == 1
    assert backend.contexts[0].body == "hello"
    assert backend.contexts[0].sender_id == "zhangsan"
    assert backend.contexts[0].session_key == "wecom:default:zhangsan"


def test_encrypted_event_is_acknowledged_without_dispatch():
    backend = _FakeBackend()
    client, _ = _client(backend)
    params, body = _encrypted_request(_inbound_xml("event", "<Event><![CDATA[enter_agent]]></Event>"))

    response = client.post("/wecom/message", params=params, content=body, headers={"Content-Type": "text/xml"})

    assert response.status_code == 200
    assert response.text == "success"
    assert backend.contexts == []


def test_encrypted_message_rejections():
    reset_metrics()
    backend = _FakeBackend()
    client, _ = _client(backend)
    params, body = _encrypted_request(_inbound_xml("text", "<Content>hello</Content>"))

    forged = dict(params, msg_signature="0" * 40)
    assert client.post("/wecom/message", params=forged, content=body, headers={"Content-Type": "text/xml"}).status_code == 403

    no_encrypt = client.post(
        "/wecom/message",
        params=params,
        content="<xml><ToUserName>x</ToUserName></xml>",
        headers={"Content-Type": "text/xml"},
    )
    assert no_encrypt.status_code == 400

    undecodable_params, undecodable_body = _encrypted_request("<xml><MsgType>text</MsgType></xml>")
    undecodable = client.post(
        "/wecom/message",
        params=undecodable_params,
        content=undecodable_body,
        headers={"Content-Type": "text/xml"},
    )
    assert undecodable.status_code == 500
    assert backend.contexts == []
    assert metrics_snapshot()["webhook.rejected|channel=wecom,reason=invalid_signature"] == 1


def test_msg_signature_selects_encrypted_path_regardless_of_content_type():
    backend = _FakeBackend()
    client, _ = _client(backend)
    params, body = _encrypted_request(_inbound_xml("text", "<Content>hello</Content>"))

    response = client.post("/wecom/message", params=params, content=body, headers={"Content-Type": "text/plain"})

    assert response.status_code == 200
    assert backend.contexts[0].body == "hello"


def test_legacy_sync_request_is_resolved_by_reply():
    backend = _FakeBackend([ReplyPayload(text="reply")])
    client, app = _client(backend)

    response = client.post("/wecom/message", json={"email": "u1", "text": "hi", "sync": True})

    assert response.status_code == 200
    assert response.json() == {"text": "reply"}
    assert app.state.dispatcher.sync_store.has_pending("u1") is False
    assert backend.contexts[0].sender_id == "u1"


def test_legacy_sync_request_times_out_with_accepted():
    client, app = _client(_FakeBackend(), sync_timeout_seconds=0.2)

    response = client.post("/wecom/message", json={"email": "u2", "text": "hi", "sync": True})

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "message": "Processing continued, poll for results."}
    assert app.state.dispatcher.sync_store.has_pending("u2") is False


def test_legacy_async_reply_is_queued_and_polled_once():
    backend = _FakeBackend([ReplyPayload(text="queued reply")])
    client, _ = _client(backend)

    response = client.post("/wecom/message", json={"email": "u3", "text": "hi"})
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    first = client.get("/wecom/messages", params={"email": "u3"})
    assert first.json() == {"messages": [{"text": "queued reply"}]}
    second = client.get("/wecom/messages", params={"email": "u3"})
    assert second.json() == {"messages": []}


def test_legacy_input_validation():
    client, _ = _client(_FakeBackend())

    assert client.post("/wecom/message", content=b"", headers={"Content-Type": "application/json"}).status_code == 400
    missing_email = client.post("/wecom/message", json={"text": "hi"})
    assert missing_email.status_code == 400
    assert missing_email.json() == {"detail": "Missing email"}
    assert client.post(
        "/wecom/message",
        content=b"--x\r\n",
        headers={"Content-Type": "multipart/form-data"},
    ).status_code == 400
    assert client.get("/wecom/messages").status_code == 400


def test_legacy_multipart_upload_reaches_backend():
    backend = _FakeBackend()
    client, _ = _client(backend)

    response = client.post(
        "/wecom/message",
        data={"email": "u4", "text": "see attached"},
        files={"file": ("notes.txt", b"abc", "text/plain")},
    )

    assert response.status_code == 200
    ctx = backend.contexts[0]
    assert ctx.sender_id == "u4"
    assert "[Uploaded files]\n- notes.txt: " in ctx.body
    assert ctx.media_urls[0].startswith("file://")
    assert ctx.media_urls[0].endswith("-notes.txt")


def test_simple_variant_only_accepts_legacy_path():
    backend = _FakeBackend()
    client, _ = _client(backend)
    params, body = _encrypted_request(_inbound_xml("text", "<Content>hello</Content>"))

    encrypted = client.post("/simple-wecom/message", params=params, content=body, headers={"Content-Type": "text/xml"})
    assert encrypted.status_code == 404
    assert client.get("/simple-wecom/message", params=params).status_code == 404

    legacy = client.post("/simple-wecom/message", json={"email": "u5", "text": "hi"})
    assert legacy.status_code == 200
    assert backend.contexts[0].session_key == "simple-wecom:default:u5"


class _RecordingApiClient:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, bytes, str]] = []
        self.sent: list[dict] = []

    def upload_media(self, corp_id, corp_secret, kind, data, filename):
        self.uploads.append((kind, data, filename))
        return "media-1"

    def send_message(self, corp_id, corp_secret, payload):
        self.sent.append(payload)
        return {"errcode": 0}


def test_outbound_send_is_closed_without_configured_token(tmp_path):
    secret = tmp_path / "secret.png"
    secret.write_bytes(b"TOP-SECRET")
    api_client = _RecordingApiClient()
    source = _settings(wecom_corp_secret="corp-secret", wecom_agent_id=1000002)
    client = TestClient(create_app(source=source, backend=_FakeBackend(), api_client=api_client))

    for headers in ({}, {"Authorization": "Bearer anything"}):
        response = client.post(
            "/wecom/outbound",
            json={"to": "anyone", "text": "hi", "mediaUrl": str(secret)},
            headers=headers,
        )
        assert response.status_code == 503

    assert api_client.uploads == []
    assert api_client.sent == []
    assert client.get("/wecom/messages", params={"email": "anyone"}).json() == {"messages": []}


def test_outbound_send_requires_backend_token_when_configured():
    client, _ = _client(_FakeBackend(), reply_backend_token="bk-secret")

    denied = client.post("/wecom/outbound", json={"to": "u6", "text": "hi"})
    assert denied.status_code == 401

    sent = client.post(
        "/wecom/outbound",
        json={"to": "u6", "text": "hi"},
        headers={"Authorization": "Bearer bk-secret"},
    )
    assert sent.status_code == 200
    assert sent.json() == {"status": "queued", "tier": "queue"}
    assert client.get("/wecom/messages", params={"email": "u6"}).json() == {"messages": [{"text": "hi"}]}


def test_service_routes_and_request_id():
    client, _ = _client(_FakeBackend())

    health = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert health.json() == {"status": "healthy"}
    assert health.headers["X-Request-ID"] == "req-42"

    root = client.get("/")
    assert root.json()["channels"] == ["wecom", "simple-wecom"]

    paths = client.get("/openapi.json").json()["paths"]
    assert paths["/wecom/message"]["post"]["tags"] == ["WeCom (Enterprise WeChat)"]
    assert paths["/simple-wecom/message"]["post"]["tags"] == ["Simple WeCom"]

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "metrics" in metrics.json()
