import asyncio
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from credential_orchestrator.availability import AvailabilityProber, AvailabilityStatus
from credential_orchestrator.credential_store import InMemoryCredentialStore
from credential_orchestrator.flows import default_engines, device_code
from credential_orchestrator.flows.automated_browser import BrowserDriver, CompletionResult
from credential_orchestrator.models import (
    AcquisitionStrategy,
    AutomationConfig,
    CallbackFlowConfig,
    DeviceFlowConfig,
    ProviderDescriptor,
    SessionState,
)
from credential_orchestrator.provider_config import StrategyRegistry
from credential_orchestrator.session_supervisor import SessionSupervisor
from credential_orchestrator.settings import OrchestratorSettings

S = AcquisitionStrategy

AUTH_HOST = "https://auth.example.test"
DEVICE_URL = f"{AUTH_HOST}/device"
TOKEN_URL = f"{AUTH_HOST}/token"
AUTOMATION_COMPLETION_URL = "http://localhost:3128/oauth/callback"

TEST_PROVIDER = ProviderDescriptor(
    id="P",
    label="Test Provider",
    strategies=frozenset(S),
    env_prefix="TESTPROV",
    default_base_url="https://api.example.test/v1",
    device_flow=DeviceFlowConfig(
        device_authorization_url=DEVICE_URL,
        token_url=TOKEN_URL,
        client_id="test-client",
        scope="openid",
    ),
    callback_flow=CallbackFlowConfig(
        authorization_url=f"{AUTH_HOST}/authorize",
        token_url=TOKEN_URL,
        client_id="test-client",
        client_secret="test-secret",
        use_pkce=True,
    ),
    automation=AutomationConfig(
        completion_url=AUTOMATION_COMPLETION_URL,
        oauth=CallbackFlowConfig(
            authorization_url=f"{AUTH_HOST}/authorize",
            token_url=TOKEN_URL,
            client_id="test-client",
            callback_path="/oauth/callback",
            callback_port=3128,
        ),
    ),
)

COOKIE_PROVIDER = ProviderDescriptor(
    id="cookieprov",
    label="Cookie Provider",
    strategies=frozenset({S.AUTOMATED_BROWSER}),
    automation=AutomationConfig(
        start_url="https://platform.example.test/login",
        completion_url="https://platform.example.test/profile",
        capture_cookies=frozenset({"SESSION"}),
    ),
)

API_KEY_PROVIDER = ProviderDescriptor(
    id="keyonly",
    label="Key Only",
    strategies=frozenset({S.PASTED_SECRET}),
)

PROJECT_PROVIDER = ProviderDescriptor(
    id="needsproject",
    label="Needs Project",
    strategies=frozenset({S.LOCAL_FILE_IMPORT}),
    requires_project_id=True,
)


def device_grant(interval=0.01, expires_in=30, **extra):
    body = {
        "device_code": "dev-code-1",
        "user_code": "ABCD-1234",
        "verification_uri": f"{AUTH_HOST}/activate",
        "expires_in": expires_in,
        "interval": interval,
    }
    body.update(extra)
    return httpx.Response(200, json=body)


def token_success(access_token="access-token-123456", **extra):
    body = {"access_token": access_token, "refresh_token": "refresh-token-abcdef", "expires_in": 3600}
    body.update(extra)
    return httpx.Response(200, json=body)


def oauth_error(code, status=400):
    return httpx.Response(status, json={"error": code})


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class RecordingStore(InMemoryCredentialStore):
    """Counts save() calls; optionally fails them."""

    def __init__(self, fail_with: Optional[Exception] = None):
        super().__init__()
        self.save_calls = 0
        self.fail_with = fail_with

    async def save(self, record):
        self.save_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return await super().save(record)


class StaticProber(AvailabilityProber):
    def __init__(self, available: bool, reason: Optional[str] = None):
        super().__init__()
        self.status = AvailabilityStatus(
            available=available,
            reason=reason,
            browser_path="/opt/fake/chrome" if available else None,
            browser_source="system" if available else None,
        )
        self.probes = 0

    def is_automated_browser_available(self) -> AvailabilityStatus:
        self.probes += 1
        return self.status


class FakeDriver(BrowserDriver):
    """
    Stands in for the browser. ``respond(start_url, completion_url)`` returns the
    completion result, raises, or is None to wait until closed.
    """

    def __init__(self, respond: Optional[Callable] = None):
        self.respond = respond
        self.opened: Optional[tuple] = None
        self.closed = False
        self._closed_event = asyncio.Event()

    async def open(self, start_url, completion_url):
        self.opened = (start_url, completion_url)

    async def wait_for_completion(self) -> CompletionResult:
        if self.respond is None:
            await self._closed_event.wait()
            raise AssertionError("driver closed while waiting")
        return self.respond(*self.opened)

    async def close(self):
        self.closed = True
        self._closed_event.set()


def oauth_completion(start_url, completion_url):
    state = query_of(start_url)["state"]
    return CompletionResult(url=f"{completion_url}?code=auto-code&state={state}")


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    monkeypatch.setattr(device_code, "MIN_POLL_INTERVAL_SECONDS", 0.0)


@pytest.fixture
def settings(tmp_path) -> OrchestratorSettings:
    return OrchestratorSettings(
        max_session_seconds=10,
        callback_timeout_seconds=5,
        automation_timeout_seconds=5,
        http_timeout_seconds=5,
        max_poll_interval_seconds=0.05,
        cancel_grace_seconds=2,
        failure_log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def registry() -> StrategyRegistry:
    return StrategyRegistry([TEST_PROVIDER, COOKIE_PROVIDER, API_KEY_PROVIDER, PROJECT_PROVIDER])


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def make_supervisor(registry, settings, store):
    """Builds a supervisor whose HTTP traffic goes to ``handler`` through httpx.MockTransport."""
    def _make(handler=None, prober=None, driver_factory=None, engines=None, **overrides):
        factory = None
        if handler is not None:
            transport = httpx.MockTransport(handler)

            def factory(**kwargs):
                return httpx.AsyncClient(transport=transport, **kwargs)

        if engines is None:
            engines = default_engines(prober=prober or StaticProber(True), driver_factory=driver_factory)
        supervisor = SessionSupervisor(
            store=overrides.get("store", store),
            registry=overrides.get("registry", registry),
            settings=overrides.get("settings", settings),
            engines=engines,
            http_client_factory=factory,
        )
        return supervisor

    return _make


async def wait_for_state(supervisor: SessionSupervisor, session_id: str, state: SessionState, timeout=5.0):
    """Consumes the subscription until ``state`` is seen and returns that event."""

    async def _watch():
        async for event in supervisor.subscribe(session_id):
            if event.state == state:
                return event
        raise AssertionError(f"session ended without reaching {state.value}")

    return await asyncio.wait_for(_watch(), timeout=timeout)
