# src/credential_orchestrator/provider_config.py
"""
Strategy registry for credential acquisition.

This module handles:
- Which acquisition strategies each provider supports
- Per-provider flow parameters (device endpoints, consent URLs, callback ports)
- Default locations of credential files written by provider CLIs
- Client id / secret overrides from environment variables
"""

import os
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from .models import (
    AcquisitionStrategy,
    AutomationConfig,
    CallbackFlowConfig,
    DeviceFlowConfig,
    ProviderDescriptor,
)

lib_logger = logging.getLogger("credential_orchestrator")

S = AcquisitionStrategy

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_BASE_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

# =============================================================================
# Built-in providers
#
# Client ids marked REPLACE_WITH_* must be supplied through the provider's
# <ENV_PREFIX>_CLIENT_ID / <ENV_PREFIX>_CLIENT_SECRET environment variables.
# =============================================================================

BUILTIN_PROVIDERS: List[ProviderDescriptor] = [
    ProviderDescriptor(
        id="kiro",
        label="Kiro (AWS)",
        strategies=frozenset({S.DEVICE_CODE, S.AUTOMATED_BROWSER, S.LOCAL_FILE_IMPORT, S.PASTED_SECRET}),
        default_credential_path="~/.aws/sso/cache/kiro-auth-token.json",
        env_prefix="KIRO",
        device_flow=DeviceFlowConfig(
            device_authorization_url="https://oidc.us-east-1.amazonaws.com/device_authorization",
            token_url="https://oidc.us-east-1.amazonaws.com/token",
            client_id="REPLACE_WITH_KIRO_CLIENT_ID",
            scope="codewhisperer:completions codewhisperer:analysis codewhisperer:conversations",
        ),
        automation=AutomationConfig(
            completion_url="http://localhost:3128/oauth/callback",
            oauth=CallbackFlowConfig(
                authorization_url="https://prod.us-east-1.auth.desktop.kiro.dev/login",
                token_url="https://prod.us-east-1.auth.desktop.kiro.dev/oauth/token",
                client_id="REPLACE_WITH_KIRO_CLIENT_ID",
                use_pkce=True,
                callback_path="/oauth/callback",
                callback_port=3128,
            ),
        ),
    ),
    ProviderDescriptor(
        id="gemini",
        label="Gemini (Google)",
        strategies=frozenset({S.AUTHORIZATION_CODE_CALLBACK, S.LOCAL_FILE_IMPORT}),
        default_credential_path="~/.gemini/oauth_creds.json",
        requires_project_id=True,
        env_prefix="GEMINI_CLI",
        callback_flow=CallbackFlowConfig(
            authorization_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            client_id="REPLACE_WITH_GEMINI_CLI_OAUTH_CLIENT_ID",
            client_secret="REPLACE_WITH_GEMINI_CLI_OAUTH_CLIENT_SECRET",
            scope=" ".join(GOOGLE_BASE_SCOPES),
            callback_port=8085,
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
    ),
    ProviderDescriptor(
        id="qwen",
        label="Qwen Code",
        strategies=frozenset({S.DEVICE_CODE, S.LOCAL_FILE_IMPORT, S.PASTED_SECRET}),
        default_credential_path="~/.qwen/oauth_creds.json",
        env_prefix="QWEN_CODE",
        default_base_url="https://portal.qwen.ai/v1",
        device_flow=DeviceFlowConfig(
            device_authorization_url="https://chat.qwen.ai/api/v1/oauth2/device/code",
            token_url="https://chat.qwen.ai/api/v1/oauth2/token",
            client_id="f0304373b74a44d2b584a3fb70ca9e56",
            scope="openid profile email model.completion",
            use_pkce=True,
        ),
    ),
    ProviderDescriptor(
        id="antigravity",
        label="Antigravity (Gemini 3 Pro)",
        strategies=frozenset({S.AUTHORIZATION_CODE_CALLBACK, S.LOCAL_FILE_IMPORT}),
        default_credential_path="~/.antigravity/oauth_creds.json",
        env_prefix="ANTIGRAVITY",
        callback_flow=CallbackFlowConfig(
            authorization_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            client_id="REPLACE_WITH_ANTIGRAVITY_OAUTH_CLIENT_ID",
            client_secret="REPLACE_WITH_ANTIGRAVITY_OAUTH_CLIENT_SECRET",
            scope=" ".join(
                GOOGLE_BASE_SCOPES
                + [
                    "https://www.googleapis.com/auth/cclog",
                    "https://www.googleapis.com/auth/experimentsandconfigs",
                ]
            ),
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
    ),
    ProviderDescriptor(
        id="codex",
        label="Codex (OpenAI OAuth)",
        strategies=frozenset({S.AUTHORIZATION_CODE_CALLBACK, S.LOCAL_FILE_IMPORT}),
        default_credential_path="~/.codex/oauth.json",
        env_prefix="CODEX",
        callback_flow=CallbackFlowConfig(
            authorization_url="https://auth.openai.com/oauth/authorize",
            token_url="https://auth.openai.com/oauth/token",
            client_id="REPLACE_WITH_CODEX_CLIENT_ID",
            scope="openid profile email offline_access",
            use_pkce=True,
            callback_path="/auth/callback",
            callback_port=1455,
        ),
    ),
    ProviderDescriptor(
        id="claude_oauth",
        label="Claude OAuth",
        strategies=frozenset({S.AUTHORIZATION_CODE_CALLBACK, S.LOCAL_FILE_IMPORT}),
        default_credential_path="~/.claude/oauth.json",
        env_prefix="CLAUDE_OAUTH",
        callback_flow=CallbackFlowConfig(
            authorization_url="https://claude.ai/oauth/authorize",
            token_url="https://console.anthropic.com/v1/oauth/token",
            client_id="REPLACE_WITH_CLAUDE_OAUTH_CLIENT_ID",
            scope="org:create_api_key user:profile user:inference",
            use_pkce=True,
            callback_path="/callback",
        ),
    ),
    ProviderDescriptor(
        id="iflow",
        label="iFlow",
        strategies=frozenset({S.AUTHORIZATION_CODE_CALLBACK, S.AUTOMATED_BROWSER, S.LOCAL_FILE_IMPORT, S.PASTED_SECRET}),
        default_credential_path="~/.iflow/oauth_creds.json",
        env_prefix="IFLOW",
        default_base_url="https://apis.iflow.cn/v1",
        callback_flow=CallbackFlowConfig(
            authorization_url="https://iflow.cn/oauth",
            token_url="https://iflow.cn/oauth/token",
            client_id="10009311001",
            client_secret="REPLACE_WITH_IFLOW_CLIENT_SECRET",
            callback_port=11451,
            redirect_param="redirect",
            token_basic_auth=True,
            extra_auth_params={"loginMethod": "phone", "type": "phone"},
        ),
        automation=AutomationConfig(
            start_url="https://platform.iflow.cn/login",
            completion_url="https://platform.iflow.cn/profile",
            capture_cookies=frozenset({"BXAuth"}),
        ),
    ),
    ProviderDescriptor(
        id="openai",
        label="OpenAI",
        strategies=frozenset({S.PASTED_SECRET}),
        env_prefix="OPENAI",
        default_base_url="https://api.openai.com/v1",
    ),
    ProviderDescriptor(
        id="claude",
        label="Claude (Anthropic)",
        strategies=frozenset({S.PASTED_SECRET}),
        env_prefix="ANTHROPIC",
        default_base_url="https://api.anthropic.com",
    ),
]


def _with_client_overrides(provider: ProviderDescriptor, env: Mapping[str, str]) -> ProviderDescriptor:
    """Applies <ENV_PREFIX>_CLIENT_ID / _CLIENT_SECRET overrides to every flow config."""
    if not provider.env_prefix:
        return provider
    client_id = env.get(f"{provider.env_prefix}_CLIENT_ID")
    client_secret = env.get(f"{provider.env_prefix}_CLIENT_SECRET")
    if not client_id and not client_secret:
        return provider

    changes = {}
    if client_id:
        changes["client_id"] = client_id
    secret_changes = dict(changes)
    if client_secret:
        secret_changes["client_secret"] = client_secret

    updates = {}
    if provider.device_flow and client_id:
        updates["device_flow"] = replace(provider.device_flow, **changes)
    if provider.callback_flow:
        updates["callback_flow"] = replace(provider.callback_flow, **secret_changes)
    if provider.automation and provider.automation.oauth:
        updates["automation"] = replace(
            provider.automation,
            oauth=replace(provider.automation.oauth, **secret_changes),
        )
    lib_logger.debug(f"Applied client credential overrides for provider '{provider.id}'")
    return replace(provider, **updates)


class StrategyRegistry:
    """
    Read-only lookup of providers and the acquisition strategies they support.
    Unknown providers support nothing.
    """

    def __init__(self, providers: Optional[Iterable[ProviderDescriptor]] = None):
        providers = BUILTIN_PROVIDERS if providers is None else providers
        self._providers: Dict[str, ProviderDescriptor] = {}
        for provider in providers:
            if provider.id in self._providers:
                raise ValueError(f"Duplicate provider id '{provider.id}'")
            self._providers[provider.id] = provider

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 providers: Optional[Iterable[ProviderDescriptor]] = None) -> "StrategyRegistry":
        env = os.environ if env is None else env
        providers = BUILTIN_PROVIDERS if providers is None else providers
        return cls(_with_client_overrides(p, env) for p in providers)

    def get(self, provider_id: str) -> Optional[ProviderDescriptor]:
        return self._providers.get(provider_id)

    def provider_ids(self) -> List[str]:
        return sorted(self._providers)

    def providers(self) -> List[ProviderDescriptor]:
        return [self._providers[p] for p in self.provider_ids()]

    def strategies_for(self, provider_id: str) -> FrozenSet[AcquisitionStrategy]:
        provider = self._providers.get(provider_id)
        return provider.strategies if provider else frozenset()

    def supports(self, provider_id: str, strategy: AcquisitionStrategy) -> bool:
        return strategy in self.strategies_for(provider_id)

    def default_path_for(self, provider_id: str) -> Optional[Path]:
        provider = self._providers.get(provider_id)
        if not provider or not provider.default_credential_path:
            return None
        return Path(provider.default_credential_path).expanduser()
