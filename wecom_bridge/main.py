from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from wecom_bridge.config import Settings, enabled_variants, settings
from wecom_bridge.delivery.dispatcher import OutboundDispatcher
from wecom_bridge.observability import metrics_snapshot
from wecom_bridge.providers.wecom.client import WeComApiClient
from wecom_bridge.providers.wecom.token_cache import AccessTokenCache
from wecom_bridge.reply import HttpReplyBackend, ReplyBackend, ReplyPipeline
from wecom_bridge.routers.channel import build_channel_router


def create_app(
    *,
    source: Settings | None = None,
    dispatcher: OutboundDispatcher | None = None,
    backend: ReplyBackend | None = None,
    api_client: WeComApiClient | None = None,
) -> FastAPI:
    source = source or settings
    api_client = api_client or WeComApiClient(
        AccessTokenCache(base_url=source.wecom_api_base, timeout_seconds=source.http_timeout_seconds),
        base_url=source.wecom_api_base,
        timeout_seconds=source.http_timeout_seconds,
    )
    dispatcher = dispatcher or OutboundDispatcher(
        api_client=api_client,
        timeout_seconds=source.http_timeout_seconds,
    )
    backend = backend or HttpReplyBackend(
        source.reply_backend_url,
        source.reply_backend_token,
        source.reply_backend_timeout_seconds,
    )
    variants = enabled_variants(source)

    app = FastAPI(title="WeCom Bridge", version="0.1.0")
    app.state.settings = source
    app.state.dispatcher = dispatcher
    app.state.pipelines = {
        variant.id: ReplyPipeline(dispatcher, backend, api_client, channel_id=variant.id)
        for variant in variants
    }

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def attach_request_id(request: Request, call_next):
        request_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or str(uuid4())
        )
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    for variant in variants:
        app.include_router(build_channel_router(variant))

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "service": "wecom-bridge",
            "channels": [variant.id for variant in variants],
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/metrics")
    async def metrics():
        return {"metrics": metrics_snapshot()}

    return app


app = create_app()
