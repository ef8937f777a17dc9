# src/credential_orchestrator/flows/device_code.py

import time
import logging
from typing import Any, Dict

import httpx

from ..error_handler import (
    DeviceCodeExpiredError,
    InvalidResponseError,
    get_retry_after,
)
from ..models import (
    AcquisitionStrategy,
    AuthMethod,
    CredentialRecord,
    CredentialSource,
    DeviceFlowConfig,
    SessionState,
)
from .base import FlowContext, FlowEngine
from .oauth_common import (
    FORM_HEADERS,
    decode_json,
    generate_pkce_pair,
    parse_token_response,
    raise_for_oauth_error,
)

lib_logger = logging.getLogger('credential_orchestrator')

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

# Poll outcomes
PENDING = "authorization_pending"
SLOW_DOWN = "slow_down"
EXPIRED = "expired_token"

# Floor for provider-declared poll intervals
MIN_POLL_INTERVAL_SECONDS = 1.0


class DeviceCodeFlow(FlowEngine):
    """
    RFC 8628 device authorization grant.

    Requests a user code, reports it, then polls the token endpoint every
    ``interval`` seconds until the user approves, denies, or the code expires.
    Poll responses are interpreted by their OAuth error code only.
    """

    strategy = AcquisitionStrategy.DEVICE_CODE

    async def preflight(self, provider, params) -> None:
        if provider.device_flow is None:
            raise InvalidResponseError(f"Provider '{provider.id}' has no device flow configured")

    async def run(self, ctx: FlowContext) -> CredentialRecord:
        config: DeviceFlowConfig = ctx.provider.device_flow
        code_verifier = None
        request_data = {"client_id": config.client_id}
        if config.scope:
            request_data["scope"] = config.scope
        if config.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
            request_data["code_challenge"] = code_challenge
            request_data["code_challenge_method"] = "S256"

        async with ctx.http_client() as client:
            grant = await self._request_device_code(ctx, client, config, request_data)

            interval = float(grant["interval"])
            expires_at = time.time() + float(grant["expires_in"])
            ctx.transition(
                SessionState.AWAITING_USER_ACTION,
                user_facing_code=grant["user_code"],
                verification_uri=grant["verification_uri"],
                expires_at=expires_at,
                poll_interval=interval,
            )
            ctx.transition(SessionState.POLLING)

            poll_data = {
                "grant_type": DEVICE_GRANT_TYPE,
                "device_code": grant["device_code"],
                "client_id": config.client_id,
            }
            if code_verifier:
                poll_data["code_verifier"] = code_verifier

            while True:
                remaining = expires_at - time.time()
                if remaining < interval:
                    # The next poll would land after expiry
                    await ctx.token.sleep(max(0.0, remaining))
                    raise DeviceCodeExpiredError("Device code expired before authorization completed")
                await ctx.token.sleep(interval)
                now = time.time()

                # Bound each poll so a silent provider can't push us past expiry + one interval
                response = await ctx.token.wait_for(
                    client.post(config.token_url, headers=FORM_HEADERS, data=poll_data),
                    timeout=max(0.1, expires_at + interval - now),
                )
                outcome = self._interpret_poll(response)

                if isinstance(outcome, dict):
                    secret_material, expiry = parse_token_response(outcome)
                    lib_logger.info(f"Device authorization for session {ctx.session.id} completed.")
                    return CredentialRecord(
                        provider_id=ctx.provider.id,
                        auth_method=AuthMethod.DEVICE,
                        secret_material=secret_material,
                        source=CredentialSource.DEVICE_CODE,
                        expiry=expiry,
                        display_name=ctx.session.display_name,
                    )
                if outcome == PENDING:
                    lib_logger.debug(f"Polling status: {outcome}, waiting {interval}s")
                elif outcome == SLOW_DOWN:
                    retry_after = get_retry_after(
                        httpx.HTTPStatusError("slow_down", request=response.request, response=response)
                    )
                    interval = min(
                        max(interval + config.slow_down_increment, retry_after or 0),
                        ctx.settings.max_poll_interval_seconds,
                    )
                    ctx.session.poll_interval = interval
                    lib_logger.warning(f"Provider asked to slow down, polling every {interval}s")
                elif outcome == EXPIRED:
                    raise DeviceCodeExpiredError("Provider reported the device code as expired")
                else:
                    raise InvalidResponseError(f"Unexpected poll outcome {outcome!r}")

    async def _request_device_code(self, ctx: FlowContext, client: httpx.AsyncClient,
                                   config: DeviceFlowConfig, request_data: Dict[str, Any]) -> Dict[str, Any]:
        response = await ctx.token.wait_for(
            client.post(config.device_authorization_url, headers=FORM_HEADERS, data=request_data)
        )
        if response.status_code != 200:
            lib_logger.error(f"Device code request failed with status {response.status_code}")
            response.raise_for_status()
            raise InvalidResponseError(f"Unexpected HTTP {response.status_code} from device authorization endpoint")

        dev_data = decode_json(response)
        if not isinstance(dev_data, dict):
            raise InvalidResponseError("Device authorization response is not a JSON object")
        raise_for_oauth_error(dev_data)

        missing = [k for k in ("device_code", "user_code") if not dev_data.get(k)]
        verification_uri = dev_data.get("verification_uri_complete") or dev_data.get("verification_uri")
        if not verification_uri:
            missing.append("verification_uri")
        if missing:
            raise InvalidResponseError(f"Device authorization response is missing {', '.join(missing)}")

        try:
            interval = float(dev_data.get("interval") or config.default_interval)
            expires_in = float(dev_data.get("expires_in") or config.default_expires_in)
        except (TypeError, ValueError):
            raise InvalidResponseError("Device authorization response has a non-numeric interval or expires_in")

        lib_logger.debug(f"Device authorization granted, expires in {expires_in}s, interval {interval}s")
        return {
            "device_code": dev_data["device_code"],
            "user_code": dev_data["user_code"],
            "verification_uri": verification_uri,
            "interval": max(interval, MIN_POLL_INTERVAL_SECONDS),
            "expires_in": min(expires_in, ctx.settings.max_session_seconds),
        }

    def _interpret_poll(self, response: httpx.Response):
        """
        Returns the token payload on success, or one of PENDING / SLOW_DOWN / EXPIRED.
        Raises for denial, unknown error codes and unexpected statuses.
        """
        if response.status_code == 200:
            payload = decode_json(response)
            if not isinstance(payload, dict):
                raise InvalidResponseError("Token response is not a JSON object")
            if payload.get("error"):
                return self._interpret_error(payload)
            return payload
        if response.status_code == 429:
            return SLOW_DOWN
        if 400 <= response.status_code < 500:
            payload = decode_json(response)
            if isinstance(payload, dict) and payload.get("error"):
                return self._interpret_error(payload)
        response.raise_for_status()
        raise InvalidResponseError(f"Unexpected HTTP {response.status_code} while polling for token")

    @staticmethod
    def _interpret_error(payload: Dict[str, Any]) -> str:
        error_code = payload.get("error")
        if error_code in (PENDING, SLOW_DOWN, EXPIRED):
            return error_code
        raise_for_oauth_error(payload)
        raise InvalidResponseError(f"Unexpected poll response error '{error_code}'")

