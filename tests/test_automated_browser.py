from dataclasses import replace
from types import SimpleNamespace
from urllib.parse import parse_qs

import pytest

from conftest import (
    AUTOMATION_COMPLETION_URL,
    FakeDriver,
    StaticProber,
    oauth_completion,
    query_of,
    token_success,
    wait_for_state,
)
from credential_orchestrator.error_handler import (
    AutomationUnavailableError,
    BrowserClosedError,
    ErrorKind,
)
from credential_orchestrator.flows.automated_browser import CompletionResult, PlaywrightBrowserDriver
from credential_orchestrator.models import AcquisitionStrategy, AuthMethod, CredentialSource, SessionState

S = AcquisitionStrategy


class DriverRecorder:
    """Driver factory that hands out FakeDrivers and remembers them."""

    def __init__(self, respond=None):
        self.respond = respond
        self.drivers = []
        self.statuses = []

    def __call__(self, status, settings):
        self.statuses.append(status)
        driver = FakeDriver(self.respond)
        self.drivers.append(driver)
        return driver


def _token_handler(exchanges):
    def handler(request):
        exchanges.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return token_success()

    return handler


@pytest.mark.asyncio
async def test_unavailable_engine_fails_before_a_session_exists(make_supervisor) -> None:
    prober = StaticProber(False, "The 'playwright' package is not installed")
    factory = DriverRecorder(oauth_completion)

    async with make_supervisor(_token_handler([]), prober=prober, driver_factory=factory) as supervisor:
        with pytest.raises(AutomationUnavailableError) as excinfo:
            await supervisor.start("P", S.AUTOMATED_BROWSER)

        assert supervisor.list_sessions() == []
        assert supervisor.active_session_for("P", S.AUTOMATED_BROWSER) is None

    classified = excinfo.value.classified
    assert classified is not None
    assert classified.kind == ErrorKind.AUTOMATION_UNAVAILABLE
    assert "playwright" in classified.human_message
    assert factory.drivers == []


@pytest.mark.asyncio
async def test_oauth_completion_is_exchanged_and_browser_closed(make_supervisor, store) -> None:
    exchanges = []
    factory = DriverRecorder(oauth_completion)

    async with make_supervisor(_token_handler(exchanges), driver_factory=factory) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER, "automated")
        events = [event async for event in supervisor.subscribe(session_id)]

    assert [e.state for e in events] == [SessionState.CREATED, SessionState.DRIVING, SessionState.SUCCEEDED]

    driver = factory.drivers[0]
    assert driver.closed is True
    start_url, completion_url = driver.opened
    assert completion_url == AUTOMATION_COMPLETION_URL
    assert events[1].verification_uri == start_url
    assert query_of(start_url)["redirect_uri"] == AUTOMATION_COMPLETION_URL
    assert factory.statuses[0].browser_path == "/opt/fake/chrome"

    assert exchanges[0]["code"] == "auto-code"
    assert exchanges[0]["redirect_uri"] == AUTOMATION_COMPLETION_URL

    record = store.records[events[-1].stored_id]
    assert record.auth_method == AuthMethod.OAUTH
    assert record.source == CredentialSource.AUTOMATED_BROWSER
    assert record.display_name == "automated"


@pytest.mark.asyncio
async def test_completion_with_wrong_state_is_rejected(make_supervisor, store) -> None:
    def forged(start_url, completion_url):
        return CompletionResult(url=f"{completion_url}?code=auto-code&state=forged")

    factory = DriverRecorder(forged)

    async with make_supervisor(_token_handler([]), driver_factory=factory) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.error.kind == ErrorKind.INVALID_RESPONSE
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_closing_the_window_is_a_quiet_failure(make_supervisor, store) -> None:
    def closed(start_url, completion_url):
        raise BrowserClosedError("The automated browser window was closed")

    factory = DriverRecorder(closed)

    async with make_supervisor(_token_handler([]), driver_factory=factory) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.state == SessionState.FAILED
    assert snapshot.error.kind == ErrorKind.BROWSER_CLOSED
    assert snapshot.error.surfaced is False
    assert factory.drivers[0].closed is True
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_cookie_capture_produces_a_cookie_credential(make_supervisor, store) -> None:
    def logged_in(start_url, completion_url):
        return CompletionResult(url=completion_url, cookies={"SESSION": "cookie-value", "tracking": "x"})

    factory = DriverRecorder(logged_in)

    async with make_supervisor(driver_factory=factory) as supervisor:
        session_id = await supervisor.start("cookieprov", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.state == SessionState.SUCCEEDED
    assert factory.drivers[0].opened == (
        "https://platform.example.test/login",
        "https://platform.example.test/profile",
    )
    record = store.records[snapshot.stored_id]
    assert record.secret_material == {"cookies": {"SESSION": "cookie-value"}}
    assert record.metadata["credential_type"] == "cookie"
    assert record.source == CredentialSource.AUTOMATED_BROWSER


@pytest.mark.asyncio
async def test_missing_cookie_fails_the_session(make_supervisor, store) -> None:
    def logged_out(start_url, completion_url):
        return CompletionResult(url=completion_url, cookies={"tracking": "x"})

    async with make_supervisor(driver_factory=DriverRecorder(logged_out)) as supervisor:
        session_id = await supervisor.start("cookieprov", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.error.kind == ErrorKind.INVALID_RESPONSE
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_cancel_closes_the_browser(make_supervisor, store) -> None:
    factory = DriverRecorder()

    async with make_supervisor(_token_handler([]), driver_factory=factory) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER)
        await wait_for_state(supervisor, session_id, SessionState.DRIVING)

        await supervisor.cancel(session_id)

        assert supervisor.status(session_id).state == SessionState.CANCELLED

    assert factory.drivers[0].closed is True
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_completion_page_never_reached_times_out(make_supervisor, settings, store) -> None:
    factory = DriverRecorder()
    short = replace(settings, automation_timeout_seconds=0.2)

    async with make_supervisor(_token_handler([]), driver_factory=factory, settings=short) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.state == SessionState.FAILED
    assert snapshot.error.kind == ErrorKind.TIMEOUT
    assert factory.drivers[0].closed is True
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_engine_becoming_unavailable_after_start_fails_the_session(make_supervisor, store) -> None:
    class FlakyProber(StaticProber):
        def is_automated_browser_available(self):
            status = super().is_automated_browser_available()
            if self.probes > 1:
                return replace(status, available=False, reason="Chromium was removed")
            return status

    factory = DriverRecorder(oauth_completion)

    async with make_supervisor(_token_handler([]), prober=FlakyProber(True), driver_factory=factory) as supervisor:
        session_id = await supervisor.start("P", S.AUTOMATED_BROWSER)
        snapshot = await supervisor.wait(session_id, timeout=5)

    assert snapshot.error.kind == ErrorKind.AUTOMATION_UNAVAILABLE
    assert factory.drivers == []
    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_navigation_after_close_is_ignored() -> None:
    driver = PlaywrightBrowserDriver()
    await driver.close()

    driver._on_frame_navigated(SimpleNamespace(url="http://localhost:8085/done?code=late"))
    await driver._finish("http://localhost:8085/done?code=late")
