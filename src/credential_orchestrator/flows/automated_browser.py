# src/credential_orchestrator/flows/automated_browser.py

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from ..availability import AvailabilityProber, AvailabilityStatus
from ..error_handler import (
    AutomationUnavailableError,
    BrowserClosedError,
    InvalidResponseError,
)
from ..models import (
    AcquisitionStrategy,
    AuthMethod,
    AutomationConfig,
    CredentialRecord,
    CredentialSource,
    SessionState,
)
from ..settings import OrchestratorSettings
from .base import FlowContext, FlowEngine
from .oauth_common import (
    build_consent_url,
    exchange_code_for_tokens,
    generate_pkce_pair,
    generate_state,
    parse_callback_url,
    url_matches,
)

lib_logger = logging.getLogger('credential_orchestrator')

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-infobars",
    "--disable-extensions",
    "--disable-default-apps",
]
VIEWPORT = {"width": 1280, "height": 900}
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
COMPLETION_PAGE = (
    "<html><body><h1>Authentication successful!</h1>"
    "<p>This window will close automatically.</p></body></html>"
)
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


@dataclass
class CompletionResult:
    """The completion marker as observed by the driver."""
    url: str
    cookies: Dict[str, str] = field(default_factory=dict)


class BrowserDriver(ABC):
    """
    One automated browser instance, owned by a single session.

    ``close`` must terminate the browser process and be safe to call at any
    point, including before ``open`` finished.
    """

    @abstractmethod
    async def open(self, start_url: str, completion_url: str) -> None:
        pass

    @abstractmethod
    async def wait_for_completion(self) -> CompletionResult:
        """Resolves at the completion marker; raises BrowserClosedError if the user closes the window."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class PlaywrightBrowserDriver(BrowserDriver):
    """
    Chromium driven through Playwright's async API.

    Loopback completion URLs are intercepted with a route, so no local listener
    needs to exist. Remote completion URLs are detected on main-frame navigation.
    """

    def __init__(self, executable_path: Optional[str] = None, headless: bool = False):
        self.executable_path = executable_path
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._completion_url: Optional[str] = None
        self._completion: Optional[asyncio.Future] = None
        self._closing = False

    async def open(self, start_url: str, completion_url: str) -> None:
        from playwright.async_api import async_playwright

        self._completion_url = completion_url
        self._completion = asyncio.get_running_loop().create_future()

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            executable_path=self.executable_path,
            args=LAUNCH_ARGS,
        )
        self._browser.on("disconnected", lambda _: self._fail("The automated browser was closed"))
        self._context = await self._browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
        self._page = await self._context.new_page()
        self._page.on("close", lambda _: self._fail("The automated browser window was closed"))

        if urlparse(completion_url).hostname in LOOPBACK_HOSTS:
            await self._context.route(lambda url: url_matches(url, completion_url), self._on_completion_route)
        else:
            self._page.on("framenavigated", self._on_frame_navigated)

        lib_logger.debug(f"Automated browser launched (headless={self.headless}), opening start page")
        await self._page.goto(start_url)

    async def _on_completion_route(self, route) -> None:
        url = route.request.url
        await route.fulfill(status=200, content_type="text/html", body=COMPLETION_PAGE)
        await self._finish(url)

    def _on_frame_navigated(self, frame) -> None:
        if self._closing or self._page is None:
            return
        if frame == self._page.main_frame and url_matches(frame.url, self._completion_url):
            asyncio.ensure_future(self._finish(frame.url))

    async def _finish(self, url: str) -> None:
        if self._closing or self._completion is None or self._completion.done():
            return
        try:
            cookies = {c["name"]: c["value"] for c in await self._context.cookies()}
        except Exception as e:
            if not self._completion.done():
                self._completion.set_exception(e)
            return
        if not self._completion.done():
            self._completion.set_result(CompletionResult(url=url, cookies=cookies))

    def _fail(self, message: str) -> None:
        if self._closing or self._completion is None or self._completion.done():
            return
        lib_logger.info(message)
        self._completion.set_exception(BrowserClosedError(message))

    async def wait_for_completion(self) -> CompletionResult:
        return await asyncio.shield(self._completion)

    async def close(self) -> None:
        self._closing = True
        browser, playwright = self._browser, self._playwright
        self._browser = self._context = self._page = self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                lib_logger.debug(f"Error while closing automated browser: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                lib_logger.debug(f"Error while stopping Playwright: {e}")
        if self._completion is not None and not self._completion.done():
            self._completion.cancel()
        lib_logger.debug("Automated browser closed")


DriverFactory = Callable[[AvailabilityStatus, OrchestratorSettings], BrowserDriver]


def default_driver_factory(status: AvailabilityStatus, settings: OrchestratorSettings) -> BrowserDriver:
    return PlaywrightBrowserDriver(
        executable_path=status.browser_path,
        headless=settings.automation_headless,
    )


class AutomatedBrowserFlow(FlowEngine):
    """
    Drives a dedicated browser through the provider's login UI.

    The session goes CREATED -> DRIVING -> terminal. Completion is the browser
    reaching the provider's completion URL; the credential is then either the
    OAuth code from that URL (exchanged for tokens) or the configured cookies.
    """

    strategy = AcquisitionStrategy.AUTOMATED_BROWSER

    def __init__(self, prober: Optional[AvailabilityProber] = None,
                 driver_factory: Optional[DriverFactory] = None):
        self.prober = prober or AvailabilityProber()
        self.driver_factory = driver_factory or default_driver_factory

    async def preflight(self, provider, params) -> None:
        if provider.automation is None:
            raise InvalidResponseError(f"Provider '{provider.id}' has no automated browser flow configured")
        status = self.prober.is_automated_browser_available()
        if not status.available:
            raise AutomationUnavailableError(status.reason or "Automated browser is unavailable")

    async def run(self, ctx: FlowContext) -> CredentialRecord:
        automation: AutomationConfig = ctx.provider.automation
        status = self.prober.is_automated_browser_available()
        if not status.available:
            raise AutomationUnavailableError(status.reason or "Automated browser is unavailable")

        state = code_verifier = None
        if automation.oauth is not None:
            state = generate_state()
            code_verifier, code_challenge = (
                generate_pkce_pair() if automation.oauth.use_pkce else (None, None)
            )
            start_url = build_consent_url(automation.oauth, automation.completion_url, state, code_challenge)
        else:
            start_url = automation.start_url or automation.completion_url

        driver = self.driver_factory(status, ctx.settings)
        ctx.transition(SessionState.DRIVING, verification_uri=start_url)
        try:
            result = await ctx.token.wait_for(
                self._drive(driver, start_url, automation.completion_url),
                timeout=ctx.settings.automation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError(
                f"Completion page not reached within {ctx.settings.automation_timeout_seconds:g}s"
            )
        finally:
            # The browser process never outlives the session
            await driver.close()

        if automation.oauth is None:
            return self._cookie_record(ctx, automation, result)

        code = parse_callback_url(result.url, state)
        async with ctx.http_client() as client:
            secret_material, expiry = await exchange_code_for_tokens(
                client, automation.oauth, code, automation.completion_url, ctx.token, code_verifier
            )
        lib_logger.info(f"Automated browser flow for session {ctx.session.id} completed.")
        return CredentialRecord(
            provider_id=ctx.provider.id,
            auth_method=AuthMethod.OAUTH,
            secret_material=secret_material,
            source=CredentialSource.AUTOMATED_BROWSER,
            expiry=expiry,
            display_name=ctx.session.display_name,
        )

    @staticmethod
    async def _drive(driver: BrowserDriver, start_url: str, completion_url: str) -> CompletionResult:
        await driver.open(start_url, completion_url)
        return await driver.wait_for_completion()

    @staticmethod
    def _cookie_record(ctx: FlowContext, automation: AutomationConfig,
                       result: CompletionResult) -> CredentialRecord:
        cookies = {name: result.cookies[name] for name in automation.capture_cookies if result.cookies.get(name)}
        missing = sorted(set(automation.capture_cookies) - set(cookies))
        if missing:
            raise InvalidResponseError(f"Completion page reached but cookies are missing: {', '.join(missing)}")
        lib_logger.info(f"Captured {len(cookies)} session cookie(s) for session {ctx.session.id}.")
        return CredentialRecord(
            provider_id=ctx.provider.id,
            auth_method=AuthMethod.OAUTH,
            secret_material={"cookies": cookies},
            source=CredentialSource.AUTOMATED_BROWSER,
            display_name=ctx.session.display_name,
            metadata={"credential_type": "cookie"},
        )
