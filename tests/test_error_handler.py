import asyncio
import json

import httpx
import pytest

from credential_orchestrator.error_handler import (
    AutomationUnavailableError,
    BrowserClosedError,
    CallbackTimeoutError,
    CredentialStoreError,
    DeviceCodeExpiredError,
    ERROR_INFO,
    ErrorKind,
    InvalidInputError,
    InvalidResponseError,
    ProviderError,
    UserDeniedError,
    classify_error,
    get_retry_after,
    mask_credential,
)

REQUEST = httpx.Request("POST", "https://auth.example.test/token")


def _status_error(status, headers=None, text=""):
    response = httpx.Response(status, request=REQUEST, headers=headers, text=text)
    return httpx.HTTPStatusError(f"HTTP {status}", request=REQUEST, response=response)


@pytest.mark.parametrize(
    "error, kind",
    [
        (UserDeniedError("denied"), ErrorKind.USER_CANCELLED),
        (BrowserClosedError("closed"), ErrorKind.BROWSER_CLOSED),
        (DeviceCodeExpiredError("expired"), ErrorKind.TIMEOUT),
        (CallbackTimeoutError("no callback"), ErrorKind.TIMEOUT),
        (AutomationUnavailableError("missing"), ErrorKind.AUTOMATION_UNAVAILABLE),
        (InvalidResponseError("garbage"), ErrorKind.INVALID_RESPONSE),
        (ProviderError("invalid_grant"), ErrorKind.INVALID_RESPONSE),
        (InvalidInputError("bad file"), ErrorKind.INVALID_INPUT),
        (CredentialStoreError("disk full"), ErrorKind.STORAGE_FAILED),
        (_status_error(503), ErrorKind.NETWORK_ERROR),
        (_status_error(429), ErrorKind.NETWORK_ERROR),
        (_status_error(401), ErrorKind.INVALID_RESPONSE),
        (httpx.ReadTimeout("read timed out", request=REQUEST), ErrorKind.TIMEOUT),
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (httpx.ConnectError("connection refused", request=REQUEST), ErrorKind.NETWORK_ERROR),
        (ConnectionResetError("reset by peer"), ErrorKind.NETWORK_ERROR),
        (json.JSONDecodeError("Expecting value", "", 0), ErrorKind.INVALID_RESPONSE),
        (KeyError("access_token"), ErrorKind.INVALID_RESPONSE),
        (RuntimeError("Executable doesn't exist at /ms-playwright/chromium-1140"), ErrorKind.AUTOMATION_UNAVAILABLE),
        (RuntimeError("Target page, context or browser has been closed"), ErrorKind.BROWSER_CLOSED),
        (RuntimeError("Timeout 30000ms exceeded."), ErrorKind.TIMEOUT),
        (RuntimeError("net::ERR_NAME_NOT_RESOLVED at https://auth.example.test"), ErrorKind.NETWORK_ERROR),
        (OSError(98, "Port 8085 is already in use"), ErrorKind.NETWORK_ERROR),
        (ZeroDivisionError("boom"), ErrorKind.UNKNOWN),
    ],
)
def test_classify_error_maps_raw_failures(error, kind) -> None:
    classified = classify_error(error)

    assert classified.kind == kind
    assert classified.original_cause is error
    assert classified.human_message
    assert classified.remediation_suggestions


def test_every_kind_has_message_and_suggestions() -> None:
    for kind in ErrorKind:
        info = ERROR_INFO[kind]
        assert info["message"]
        assert info["suggestions"]
        assert isinstance(info["retryable"], bool)


def test_user_actions_are_not_surfaced() -> None:
    assert classify_error(UserDeniedError()).surfaced is False
    assert classify_error(BrowserClosedError()).surfaced is False
    assert classify_error(CallbackTimeoutError()).surfaced is True
    assert classify_error(AutomationUnavailableError()).surfaced is True


def test_retryability_comes_from_the_table() -> None:
    assert classify_error(_status_error(503)).retryable is True
    assert classify_error(AutomationUnavailableError()).retryable is False
    assert classify_error(InvalidInputError()).retryable is False


def test_rate_limit_carries_retry_after_and_status() -> None:
    classified = classify_error(_status_error(429, headers={"Retry-After": "7"}))

    assert classified.status_code == 429
    assert classified.retry_after == 7


def test_get_retry_after_reads_body_hint() -> None:
    error = _status_error(429, text='{"error": "rate limited, retry after: 12"}')

    assert get_retry_after(error) == 12


def test_get_retry_after_returns_none_without_hint() -> None:
    assert get_retry_after(_status_error(429)) is None


def test_provider_error_detail_includes_code() -> None:
    classified = classify_error(ProviderError("invalid_client", "bad secret"))

    assert "invalid_client" in classified.human_message


def test_mask_credential_keeps_only_the_tail() -> None:
    assert mask_credential("sk-abcdefghijklmnop") == "...klmnop"
    assert mask_credential("abc") == "...***"
    assert mask_credential(None) == "<empty>"
