from pathlib import Path

import pytest

from credential_orchestrator.models import AcquisitionStrategy, ProviderDescriptor
from credential_orchestrator.provider_config import BUILTIN_PROVIDERS, StrategyRegistry

S = AcquisitionStrategy


def test_builtin_registry_lists_known_providers() -> None:
    registry = StrategyRegistry()

    assert "qwen" in registry.provider_ids()
    assert registry.supports("qwen", S.DEVICE_CODE)
    assert not registry.supports("openai", S.DEVICE_CODE)
    assert registry.provider_ids() == sorted(registry.provider_ids())


def test_unknown_provider_supports_nothing() -> None:
    registry = StrategyRegistry()

    assert registry.strategies_for("does-not-exist") == frozenset()
    assert registry.get("does-not-exist") is None
    assert registry.default_path_for("does-not-exist") is None


def test_every_builtin_strategy_has_its_flow_config() -> None:
    for provider in BUILTIN_PROVIDERS:
        if S.DEVICE_CODE in provider.strategies:
            assert provider.device_flow is not None, provider.id
        if S.AUTHORIZATION_CODE_CALLBACK in provider.strategies:
            assert provider.callback_flow is not None, provider.id
        if S.AUTOMATED_BROWSER in provider.strategies:
            assert provider.automation is not None, provider.id


def test_default_path_expands_home() -> None:
    registry = StrategyRegistry()

    path = registry.default_path_for("qwen")

    assert path == Path("~/.qwen/oauth_creds.json").expanduser()
    assert "~" not in str(path)


def test_duplicate_provider_ids_are_rejected() -> None:
    provider = ProviderDescriptor(id="dup", label="Dup", strategies=frozenset({S.PASTED_SECRET}))

    with pytest.raises(ValueError):
        StrategyRegistry([provider, provider])


def test_client_overrides_from_env() -> None:
    env = {"IFLOW_CLIENT_ID": "custom-id", "IFLOW_CLIENT_SECRET": "custom-secret"}

    registry = StrategyRegistry.from_env(env)
    iflow = registry.get("iflow")

    assert iflow.callback_flow.client_id == "custom-id"
    assert iflow.callback_flow.client_secret == "custom-secret"
    # Providers without overrides keep their built-in values
    assert registry.get("qwen").device_flow.client_id == "f0304373b74a44d2b584a3fb70ca9e56"


def test_client_id_override_reaches_device_and_automation_configs() -> None:
    registry = StrategyRegistry.from_env({"KIRO_CLIENT_ID": "kiro-id"})
    kiro = registry.get("kiro")

    assert kiro.device_flow.client_id == "kiro-id"
    assert kiro.automation.oauth.client_id == "kiro-id"
