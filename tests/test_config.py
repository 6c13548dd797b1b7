from __future__ import annotations

from wecom_bridge.config import (
    AccountOverrides,
    CHANNEL_VARIANTS,
    Settings,
    enabled_variants,
    resolve_account,
)


def _settings(**overrides) -> Settings:
    values = {
        "wecom_corp_id": "corp",
        "wecom_corp_secret": "secret",
        "wecom_agent_id": 1000002,
        "wecom_token": "tok",
        "wecom_encoding_aes_key": "k" * 43,
        "webhook_url": "https://hooks.example/in",
        "system_prompt": "  be brief  ",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_default_account_uses_top_level_settings():
    account = resolve_account(_settings())
    assert account.account_id == "default"
    assert account.corp_id == "corp"
    assert account.system_prompt == "be brief"
    assert account.delivery.has_first_party is True
    assert account.delivery.has_legacy_api is False
    assert account.delivery.has_webhook is True
    assert account.asr.usable is False


def test_named_account_overlays_non_null_values():
    source = _settings(
        accounts={
            "sales": AccountOverrides(corp_id="corp-sales", wework_token="wt", wework_code="wc", verbose=True),
        }
    )
    account = resolve_account(source, "sales")
    assert account.account_id == "sales"
    assert account.corp_id == "corp-sales"
    assert account.token == "tok"
    assert account.verbose is True
    assert account.delivery.has_legacy_api is True

    fallback = resolve_account(source, "unknown")
    assert fallback.corp_id == "corp"


def test_named_account_disabled_flag_is_kept():
    account = resolve_account(_settings(accounts={"ops": AccountOverrides(enabled=False)}), "ops")
    assert account.enabled is False
    assert account.token == "tok"


def test_asr_usable_needs_flag_and_both_secrets():
    account = resolve_account(
        _settings(tencent_asr_enabled=True, tencent_asr_secret_id="id", tencent_asr_secret_key="key")
    )
    assert account.asr.usable is True
    assert account.asr.region == "ap-guangzhou"


def test_enabled_variants_filters_unknown_and_duplicates():
    variants = enabled_variants(_settings(enabled_channels=["wecom", "simple-wecom", "wecom", "nope"]))
    assert [variant.id for variant in variants] == ["wecom", "simple-wecom"]
    assert CHANNEL_VARIANTS["simple-wecom"].accepts_encrypted is False
    assert CHANNEL_VARIANTS["simple-wecom"].route_prefix == "/simple-wecom"
