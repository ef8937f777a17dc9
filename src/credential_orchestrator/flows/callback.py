# src/credential_orchestrator/flows/callback.py

import os
import socket
import asyncio
import logging
from typing import Optional

from aiohttp import web

from ..error_handler import (
    CallbackTimeoutError,
    InvalidResponseError,
    ProviderError,
    UserDeniedError,
)
from ..models import (
    AcquisitionStrategy,
    AuthMethod,
    CallbackFlowConfig,
    CredentialRecord,
    CredentialSource,
    SessionState,
)
from .base import FlowContext, FlowEngine
from .oauth_common import (
    build_consent_url,
    exchange_code_for_tokens,
    generate_pkce_pair,
    generate_state,
)

lib_logger = logging.getLogger('credential_orchestrator')

SUCCESS_PAGE = (
    "<html><body><h1>Authentication successful!</h1>"
    "<p>You can close this window.</p></body></html>"
)
FAILURE_PAGE = (
    "<html><body><h1>Authentication Failed</h1>"
    "<p>Error: {error}. Please try again.</p></body></html>"
)


class OAuthCallbackServer:
    """
    Minimal loopback HTTP server for one OAuth redirect.

    Binds ``host:port`` (port 0 picks an ephemeral port), serves a single GET
    route and resolves ``result_future`` with the authorization code. Requests
    carrying the wrong ``state`` are rejected and the server keeps waiting.
    """

    def __init__(self, host: str = "127.0.0.1", port: Optional[int] = None,
                 path: str = "/oauth2callback"):
        self.host = host
        self.requested_port = port or 0
        self.path = path
        self.port: Optional[int] = None
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.SockSite] = None
        self.result_future: Optional[asyncio.Future] = None
        self.expected_state: Optional[str] = None

    @property
    def redirect_uri(self) -> str:
        host = "localhost" if self.host in ("127.0.0.1", "localhost") else self.host
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.port}{self.path}"

    @property
    def is_running(self) -> bool:
        return self.runner is not None

    def _bind_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.requested_port))
        except OSError as e:
            sock.close()
            if self.requested_port:
                raise OSError(e.errno, f"Port {self.requested_port} is already in use") from e
            raise
        return sock

    async def start(self, expected_state: str):
        """Binds the listener and starts serving the callback route."""
        sock = self._bind_socket()
        self.expected_state = expected_state
        self.result_future = asyncio.get_running_loop().create_future()
        self.app.router.add_get(self.path, self._handle_callback)

        self.runner = web.AppRunner(self.app, access_log=None)
        try:
            await self.runner.setup()
            self.site = web.SockSite(self.runner, sock)
            await self.site.start()
        except BaseException:
            await self.stop()
            sock.close()
            raise

        self.port = sock.getsockname()[1]
        lib_logger.debug(f"OAuth callback server listening on {self.host}:{self.port}{self.path}")

    async def stop(self):
        """Stops the server and releases the port. Safe to call more than once."""
        runner, self.runner, self.site = self.runner, None, None
        if runner is not None:
            await runner.cleanup()
            lib_logger.debug(f"OAuth callback server on port {self.port} stopped")
        if self.result_future is not None and not self.result_future.done():
            self.result_future.cancel()

    async def __aenter__(self) -> "OAuthCallbackServer":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query

        state = query.get('state', '')
        if state != self.expected_state:
            # Not ours; a forged or stale redirect must not end the session
            lib_logger.warning("OAuth callback with mismatched state ignored")
            return web.Response(status=400, text="State parameter mismatch")

        if 'error' in query:
            error = query.get('error') or 'unknown_error'
            lib_logger.error(f"OAuth callback received error: {error}")
            if error == 'access_denied':
                failure = UserDeniedError(query.get('error_description') or "The user denied access")
            else:
                failure = ProviderError(error, query.get('error_description'))
            self._resolve(exception=failure)
            return web.Response(status=200, content_type='text/html',
                                text=FAILURE_PAGE.format(error=error))

        code = query.get('code')
        if not code:
            lib_logger.error("OAuth callback missing authorization code")
            self._resolve(exception=InvalidResponseError("OAuth redirect is missing the authorization code"))
            return web.Response(status=200, content_type='text/html',
                                text=FAILURE_PAGE.format(error="missing authorization code"))

        self._resolve(result=code)
        return web.Response(status=200, content_type='text/html', text=SUCCESS_PAGE)

    def _resolve(self, result: Optional[str] = None, exception: Optional[BaseException] = None):
        if self.result_future is None or self.result_future.done():
            return
        if exception is not None:
            self.result_future.set_exception(exception)
        else:
            self.result_future.set_result(result)

    async def wait_for_callback(self) -> str:
        """Waits for the redirect and returns the authorization code."""
        return await asyncio.shield(self.result_future)


class AuthorizationCodeCallbackFlow(FlowEngine):
    """
    Authorization-code grant with a loopback redirect.

    The listener lives exactly as long as ``run``: it is stopped on success,
    timeout, cancellation and exchange failure alike.
    """

    strategy = AcquisitionStrategy.AUTHORIZATION_CODE_CALLBACK

    async def preflight(self, provider, params) -> None:
        if provider.callback_flow is None:
            raise InvalidResponseError(f"Provider '{provider.id}' has no callback flow configured")

    async def run(self, ctx: FlowContext) -> CredentialRecord:
        config: CallbackFlowConfig = ctx.provider.callback_flow
        state = generate_state()
        code_verifier, code_challenge = generate_pkce_pair() if config.use_pkce else (None, None)

        server = OAuthCallbackServer(
            host=ctx.settings.callback_host,
            port=config.callback_port,
            path=config.callback_path,
        )
        async with server:
            await server.start(state)
            redirect_uri = server.redirect_uri
            consent_url = build_consent_url(config, redirect_uri, state, code_challenge)

            ctx.transition(
                SessionState.AWAITING_USER_ACTION,
                verification_uri=consent_url,
                redirect_uri=redirect_uri,
            )
            ctx.transition(SessionState.LISTENING)

            try:
                code = await ctx.token.wait_for(
                    server.wait_for_callback(),
                    timeout=ctx.settings.callback_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise CallbackTimeoutError(
                    f"No OAuth callback within {ctx.settings.callback_timeout_seconds:g}s"
                )

        # Listener is released before the token exchange
        lib_logger.debug(f"Authorization code received for session {ctx.session.id}, exchanging for tokens")
        async with ctx.http_client() as client:
            secret_material, expiry = await exchange_code_for_tokens(
                client, config, code, redirect_uri, ctx.token, code_verifier
            )

        lib_logger.info(f"Authorization code flow for session {ctx.session.id} completed.")
        return CredentialRecord(
            provider_id=ctx.provider.id,
            auth_method=AuthMethod.OAUTH,
            secret_material=secret_material,
            source=CredentialSource.BROWSER_CALLBACK,
            expiry=expiry,
            display_name=ctx.session.display_name,
        )
