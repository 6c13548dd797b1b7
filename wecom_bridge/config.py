from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ACCOUNT_ID = "default"
DEFAULT_WEWORK_API_URL = "https://galaxy.ucloudadmin.com/"
DEFAULT_WEWORK_NAMESPACE = "企业智瞰"
DEFAULT_WECOM_API_BASE = "https://qyapi.weixin.qq.com"


class AccountOverrides(BaseModel):
    """Per-account values layered over the default account settings."""

    enabled: bool | None = None
    name: str | None = None
    corp_id: str | None = None
    corp_secret: str | None = None
    agent_id: int | None = None
    token: str | None = None
    encoding_aes_key: str | None = None
    wework_api_url: str | None = None
    wework_namespace: str | None = None
    wework_token: str | None = None
    wework_code: str | None = None
    webhook_url: str | None = None
    webhook_token: str | None = None
    system_prompt: str | None = None
    verbose: bool | None = None
    tencent_asr_enabled: bool | None = None
    tencent_asr_secret_id: str | None = None
    tencent_asr_secret_key: str | None = None
    tencent_asr_region: str | None = None
    tencent_asr_engine_model_type: str | None = None


class Settings(BaseSettings):
    wecom_corp_id: str | None = None
    wecom_corp_secret: str | None = None
    wecom_agent_id: int | None = None
    wecom_token: str | None = None
    wecom_encoding_aes_key: str | None = None
    wecom_api_base: str = DEFAULT_WECOM_API_BASE

    wework_api_url: str | None = None
    wework_namespace: str | None = None
    wework_token: str | None = None
    wework_code: str | None = None

    webhook_url: str | None = None
    webhook_token: str | None = None

    system_prompt: str | None = None
    verbose: bool = False

    tencent_asr_enabled: bool = False
    tencent_asr_secret_id: str | None = None
    tencent_asr_secret_key: str | None = None
    tencent_asr_region: str = "ap-guangzhou"
    tencent_asr_engine_model_type: str = "16k_zh"

    accounts: dict[str, AccountOverrides] = {}

    reply_backend_url: str | None = None
    reply_backend_token: str | None = None
    reply_backend_timeout_seconds: float = 120.0

    sync_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 15.0
    enabled_channels: list[str] = ["wecom"]

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


class DeliveryConfig(BaseModel):
    """Credentials for each outbound tier. Any subset may be present."""

    corp_id: str | None = None
    corp_secret: str | None = None
    agent_id: int | None = None
    wework_api_url: str | None = None
    wework_namespace: str | None = None
    wework_token: str | None = None
    wework_code: str | None = None
    webhook_url: str | None = None
    webhook_token: str | None = None

    @property
    def has_first_party(self) -> bool:
        return bool(self.corp_id and self.corp_secret and self.agent_id)

    @property
    def has_legacy_api(self) -> bool:
        return bool(self.wework_token and self.wework_code)

    @property
    def has_webhook(self) -> bool:
        return bool(self.webhook_url)


class AsrConfig(BaseModel):
    enabled: bool = False
    secret_id: str | None = None
    secret_key: str | None = None
    region: str = "ap-guangzhou"
    engine_model_type: str = "16k_zh"

    @property
    def usable(self) -> bool:
        return bool(self.enabled and self.secret_id and self.secret_key)


class AccountConfig(BaseModel):
    account_id: str = DEFAULT_ACCOUNT_ID
    name: str = DEFAULT_ACCOUNT_ID
    enabled: bool = True
    token: str | None = None
    encoding_aes_key: str | None = None
    system_prompt: str | None = None
    verbose: bool = False
    delivery: DeliveryConfig = DeliveryConfig()
    asr: AsrConfig = AsrConfig()

    @property
    def corp_id(self) -> str | None:
        return self.delivery.corp_id


@dataclass(frozen=True)
class ChannelVariant:
    id: str
    route_prefix: str
    label: str
    accepts_encrypted: bool = True
    accepts_legacy: bool = True


CHANNEL_VARIANTS: dict[str, ChannelVariant] = {
    "wecom": ChannelVariant(
        id="wecom",
        route_prefix="/wecom",
        label="WeCom (Enterprise WeChat)",
    ),
    "simple-wecom": ChannelVariant(
        id="simple-wecom",
        route_prefix="/simple-wecom",
        label="Simple WeCom",
        accepts_encrypted=False,
    ),
}


def _default_values(source: Settings) -> dict[str, Any]:
    return {
        "corp_id": source.wecom_corp_id,
        "corp_secret": source.wecom_corp_secret,
        "agent_id": source.wecom_agent_id,
        "token": source.wecom_token,
        "encoding_aes_key": source.wecom_encoding_aes_key,
        "wework_api_url": source.wework_api_url,
        "wework_namespace": source.wework_namespace,
        "wework_token": source.wework_token,
        "wework_code": source.wework_code,
        "webhook_url": source.webhook_url,
        "webhook_token": source.webhook_token,
        "system_prompt": source.system_prompt,
        "verbose": source.verbose,
        "tencent_asr_enabled": source.tencent_asr_enabled,
        "tencent_asr_secret_id": source.tencent_asr_secret_id,
        "tencent_asr_secret_key": source.tencent_asr_secret_key,
        "tencent_asr_region": source.tencent_asr_region,
        "tencent_asr_engine_model_type": source.tencent_asr_engine_model_type,
        "enabled": True,
        "name": None,
    }


def resolve_account(source: Settings, account_id: str | None = None) -> AccountConfig:
    resolved_id = account_id or DEFAULT_ACCOUNT_ID
    values = _default_values(source)
    overrides = source.accounts.get(resolved_id)
    if overrides is not None:
        for key, value in overrides.model_dump(exclude_none=True).items():
            values[key] = value

    system_prompt = (values["system_prompt"] or "").strip() or None
    return AccountConfig(
        account_id=resolved_id,
        name=values["name"] or resolved_id,
        enabled=values["enabled"],
        token=values["token"],
        encoding_aes_key=values["encoding_aes_key"],
        system_prompt=system_prompt,
        verbose=bool(values["verbose"]),
        delivery=DeliveryConfig(
            corp_id=values["corp_id"],
            corp_secret=values["corp_secret"],
            agent_id=values["agent_id"],
            wework_api_url=values["wework_api_url"],
            wework_namespace=values["wework_namespace"],
            wework_token=values["wework_token"],
            wework_code=values["wework_code"],
            webhook_url=values["webhook_url"],
            webhook_token=values["webhook_token"],
        ),
        asr=AsrConfig(
            enabled=bool(values["tencent_asr_enabled"]),
            secret_id=values["tencent_asr_secret_id"],
            secret_key=values["tencent_asr_secret_key"],
            region=values["tencent_asr_region"] or "ap-guangzhou",
            engine_model_type=values["tencent_asr_engine_model_type"] or "16k_zh",
        ),
    )


def enabled_variants(source: Settings) -> list[ChannelVariant]:
    variants: list[ChannelVariant] = []
    for channel_id in source.enabled_channels:
        variant = CHANNEL_VARIANTS.get(channel_id.strip())
        if variant is not None and variant not in variants:
            variants.append(variant)
    return variants


settings = Settings()
