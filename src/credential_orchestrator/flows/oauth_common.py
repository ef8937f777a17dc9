# src/credential_orchestrator/flows/oauth_common.py
"""
OAuth helpers shared by the device-code, callback and automated-browser flows.
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from ..cancellation import CancellationToken
from ..error_handler import InvalidResponseError, ProviderError, UserDeniedError
from ..models import CallbackFlowConfig

lib_logger = logging.getLogger('credential_orchestrator')

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}

# Token response fields carried into the credential record
TOKEN_FIELDS = ("access_token", "refresh_token", "id_token", "token_type", "scope", "resource_url")


def generate_pkce_pair() -> Tuple[str, str]:
    """Returns (code_verifier, code_challenge) for the S256 method."""
    code_verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode('utf-8').rstrip('=')
    code_challenge = base64.urlsafe_b64encode(
        hashlib.sha256(code_verifier.encode('utf-8')).digest()
    ).decode('utf-8').rstrip('=')
    return code_verifier, code_challenge


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def build_consent_url(
    config: CallbackFlowConfig,
    redirect_uri: str,
    state: str,
    code_challenge: Optional[str] = None,
) -> str:
    params = {
        "client_id": config.client_id,
        config.redirect_param: redirect_uri,
        "response_type": "code",
        "state": state,
    }
    if config.scope:
        params["scope"] = config.scope
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    params.update(config.extra_auth_params)
    separator = "&" if "?" in config.authorization_url else "?"
    return f"{config.authorization_url}{separator}{urlencode(params)}"


def parse_callback_url(url: str, expected_state: Optional[str]) -> str:
    """
    Extracts the authorization code from a redirect URL.

    Raises UserDeniedError for access_denied, ProviderError for other OAuth errors
    and InvalidResponseError when the code or a matching state is missing.
    """
    query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items() if v}
    if expected_state is not None and query.get("state") != expected_state:
        raise InvalidResponseError("State parameter mismatch in OAuth redirect")
    raise_for_oauth_error(query)
    code = query.get("code")
    if not code:
        raise InvalidResponseError("OAuth redirect is missing the authorization code")
    return code


def raise_for_oauth_error(payload: Dict[str, Any]) -> None:
    error = payload.get("error")
    if not error:
        return
    description = payload.get("error_description")
    if error == "access_denied":
        raise UserDeniedError(description or "The user denied access")
    raise ProviderError(str(error), description)


def url_matches(url: str, target: str) -> bool:
    """True when ``url`` has the same scheme, host, port and path as ``target``."""
    try:
        parsed, expected = urlparse(url), urlparse(target)
        return (
            parsed.scheme == expected.scheme
            and parsed.hostname == expected.hostname
            and parsed.port == expected.port
            and parsed.path.rstrip("/") == expected.path.rstrip("/")
        )
    except ValueError:
        return False


def parse_token_response(token_data: Any) -> Tuple[Dict[str, Any], Optional[datetime]]:
    """Normalizes a token endpoint response into (secret_material, expiry)."""
    if not isinstance(token_data, dict):
        raise InvalidResponseError("Token response is not a JSON object")
    access_token = token_data.get("access_token")
    if not access_token:
        raise InvalidResponseError("Missing access_token in token response")

    secret_material = {k: token_data[k] for k in TOKEN_FIELDS if token_data.get(k) is not None}

    expiry = None
    expires_in = token_data.get("expires_in")
    if expires_in is not None:
        try:
            expiry = datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))
        except (TypeError, ValueError):
            raise InvalidResponseError(f"Invalid expires_in in token response: {expires_in!r}")
    return secret_material, expiry


def decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        raise InvalidResponseError(
            f"Provider returned non-JSON response (HTTP {response.status_code})"
        )


async def exchange_code_for_tokens(
    client: httpx.AsyncClient,
    config: CallbackFlowConfig,
    code: str,
    redirect_uri: str,
    token: CancellationToken,
    code_verifier: Optional[str] = None,
) -> Tuple[Dict[str, Any], Optional[datetime]]:
    """
    Exchanges an authorization code for tokens.
    Uses Basic Auth with client credentials when the provider asks for it.
    """
    headers = dict(FORM_HEADERS)
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": config.client_id,
    }
    if config.client_secret:
        data["client_secret"] = config.client_secret
        if config.token_basic_auth:
            auth_string = f"{config.client_id}:{config.client_secret}"
            headers["Authorization"] = f"Basic {base64.b64encode(auth_string.encode()).decode()}"
    if code_verifier:
        data["code_verifier"] = code_verifier

    response = await token.wait_for(client.post(config.token_url, headers=headers, data=data))
    if response.status_code >= 400:
        lib_logger.error(f"Token exchange failed: HTTP {response.status_code}")
        if response.status_code < 500 and response.status_code != 429:
            payload = decode_json(response)
            if isinstance(payload, dict) and payload.get("error"):
                raise_for_oauth_error(payload)
        response.raise_for_status()

    return parse_token_response(decode_json(response))
