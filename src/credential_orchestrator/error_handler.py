# src/credential_orchestrator/error_handler.py

import re
import json
import asyncio
from enum import Enum
from typing import Optional, Dict, Any, List

import httpx


class ErrorKind(str, Enum):
    USER_CANCELLED = "user_cancelled"
    BROWSER_CLOSED = "browser_closed"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    AUTOMATION_UNAVAILABLE = "automation_unavailable"
    INVALID_RESPONSE = "invalid_response"
    INVALID_INPUT = "invalid_input"
    STORAGE_FAILED = "storage_failed"
    UNKNOWN = "unknown"


# Kinds that stand for a voluntary user action. They still end the session as
# FAILED but are not shown as an error banner.
SILENT_KINDS = frozenset({ErrorKind.USER_CANCELLED, ErrorKind.BROWSER_CLOSED})


class AcquisitionError(Exception):
    """Base class for failures raised by acquisition engines."""

    # Set by SessionSupervisor.start() when a preflight check rejects the session
    classified: Optional["ClassifiedError"] = None


class UserDeniedError(AcquisitionError):
    """The user declined or aborted authorization on the provider side."""
    pass


class DeviceCodeExpiredError(AcquisitionError):
    """The device code expired before the user completed authorization."""
    pass


class CallbackTimeoutError(AcquisitionError):
    """No OAuth callback arrived within the allowed time."""
    pass


class BrowserClosedError(AcquisitionError):
    """The automated browser window was closed before reaching the completion marker."""
    pass


class AutomationUnavailableError(AcquisitionError):
    """The automated browser engine is not installed or cannot be started."""
    pass


class InvalidResponseError(AcquisitionError):
    """The provider returned something we could not interpret."""
    pass


class ProviderError(InvalidResponseError):
    """The provider answered with an OAuth error code we do not handle."""

    def __init__(self, error_code: str, description: Optional[str] = None):
        self.error_code = error_code
        self.description = description
        message = f"Provider returned error '{error_code}'"
        if description:
            message += f": {description}"
        super().__init__(message)


class InvalidInputError(AcquisitionError):
    """A local credential file or pasted secret was missing or malformed."""
    pass


class CredentialStoreError(AcquisitionError):
    """The credential store rejected the finished record."""
    pass


class InvalidStrategyError(ValueError):
    """Raised to the caller when a provider does not support the requested strategy."""
    pass


class SessionNotFoundError(KeyError):
    """Raised to the caller for a session id the supervisor does not hold."""
    pass


class ConfigurationError(ValueError):
    """Invalid orchestrator configuration."""
    pass


ERROR_INFO: Dict[ErrorKind, Dict[str, Any]] = {
    ErrorKind.USER_CANCELLED: {
        "message": "Sign-in was cancelled.",
        "suggestions": ["Start the sign-in again when you are ready."],
        "retryable": True,
    },
    ErrorKind.BROWSER_CLOSED: {
        "message": "The browser window was closed before sign-in finished.",
        "suggestions": [
            "Start the sign-in again and complete authorization in the browser window.",
            "The window closes by itself once authorization succeeds.",
        ],
        "retryable": True,
    },
    ErrorKind.TIMEOUT: {
        "message": "Sign-in timed out before authorization was completed.",
        "suggestions": [
            "Start the sign-in again and finish it within the time limit.",
            "Make sure your network connection is stable.",
            "If the page loads slowly, check your network or proxy settings.",
        ],
        "retryable": True,
    },
    ErrorKind.NETWORK_ERROR: {
        "message": "A network problem prevented sign-in from completing.",
        "suggestions": [
            "Check that your internet connection is working.",
            "If you use a proxy, make sure it is configured correctly.",
            "Try disabling VPN or proxy software and retry.",
        ],
        "retryable": True,
    },
    ErrorKind.AUTOMATION_UNAVAILABLE: {
        "message": "The automated browser is not installed or cannot be started.",
        "suggestions": [
            "Install it by running: playwright install chromium",
            "Alternatively install Google Chrome and check availability again.",
            "Or sign in with the system browser instead.",
        ],
        "retryable": False,
    },
    ErrorKind.INVALID_RESPONSE: {
        "message": "The provider returned an unexpected response.",
        "suggestions": [
            "Retry the sign-in.",
            "If the problem persists, try a different sign-in method.",
        ],
        "retryable": True,
    },
    ErrorKind.INVALID_INPUT: {
        "message": "The supplied credential could not be used.",
        "suggestions": [
            "Check the file path or pasted value and try again.",
            "Credential files must be JSON objects containing an access or refresh token.",
        ],
        "retryable": False,
    },
    ErrorKind.STORAGE_FAILED: {
        "message": "Sign-in succeeded but the credential could not be saved.",
        "suggestions": [
            "Check that the credential storage location is writable.",
            "Retry the sign-in.",
        ],
        "retryable": True,
    },
    ErrorKind.UNKNOWN: {
        "message": "Sign-in failed for an unknown reason.",
        "suggestions": [
            "Retry the sign-in.",
            "If the problem persists, try a different sign-in method.",
            "Restart the application and retry.",
        ],
        "retryable": True,
    },
}


class ClassifiedError:
    """A structured representation of a classified acquisition failure."""

    def __init__(
        self,
        kind: ErrorKind,
        human_message: str,
        remediation_suggestions: List[str],
        retryable: bool,
        original_cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        self.kind = kind
        self.human_message = human_message
        self.remediation_suggestions = remediation_suggestions
        self.retryable = retryable
        self.original_cause = original_cause
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def surfaced(self) -> bool:
        """False for kinds that represent the user's own choice."""
        return self.kind not in SILENT_KINDS

    def __str__(self):
        return f"ClassifiedError(kind={self.kind.value}, status={self.status_code}, retryable={self.retryable}, original_exc={self.original_cause!r})"

    __repr__ = __str__


def mask_credential(value: Optional[str]) -> str:
    """Masks a secret for logging, keeping only the last 6 characters."""
    if not value:
        return "<empty>"
    value = str(value)
    if len(value) <= 6:
        return "..." + "*" * len(value)
    return f"...{value[-6:]}"


def get_retry_after(error: Exception) -> Optional[int]:
    """
    Extracts the 'retry-after' duration in seconds from an exception.
    Checks the response header first, then common patterns in the body/message.
    """
    response = getattr(error, "response", None)
    if response is not None:
        header = response.headers.get("Retry-After")
        if header and header.strip().isdigit():
            return int(header.strip())

    error_str = str(error).lower()
    if response is not None:
        try:
            error_str += " " + response.text.lower()
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            pass

    patterns = [
        r'retry after:?\s*(\d+)',
        r'retry_after"?:?\s*(\d+)',
        r'retry in\s*(\d+)\s*seconds',
        r'wait for\s*(\d+)\s*seconds',
    ]

    for pattern in patterns:
        match = re.search(pattern, error_str)
        if match:
            try:
                return int(match.group(1))
            except (ValueError, IndexError):
                continue

    value = getattr(error, 'retry_after', None)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)

    return None


# Message fragments reported by the automation engine (Playwright driver and the
# browser process). Checked in order, first match wins.
AUTOMATION_MESSAGE_PATTERNS = [
    (re.compile(r"executable doesn't exist|playwright install|browser.*not.*installed|no module named 'playwright'", re.I), ErrorKind.AUTOMATION_UNAVAILABLE),
    (re.compile(r"browser has been closed|target (page, context or browser )?(has been )?closed|page closed|browser.*closed", re.I), ErrorKind.BROWSER_CLOSED),
    (re.compile(r"timeout \d+ms exceeded|timed out", re.I), ErrorKind.TIMEOUT),
    (re.compile(r"net::err_|connection (refused|reset)|network", re.I), ErrorKind.NETWORK_ERROR),
    (re.compile(r"user.*cancel", re.I), ErrorKind.USER_CANCELLED),
]


def _build(kind: ErrorKind, cause: Optional[BaseException], status_code: Optional[int] = None,
           retry_after: Optional[int] = None, detail: Optional[str] = None) -> ClassifiedError:
    info = ERROR_INFO[kind]
    message = info["message"]
    if detail:
        message = f"{message} ({detail})"
    return ClassifiedError(
        kind=kind,
        human_message=message,
        remediation_suggestions=list(info["suggestions"]),
        retryable=info["retryable"],
        original_cause=cause,
        status_code=status_code,
        retry_after=retry_after,
    )


def classify_error(e: BaseException) -> ClassifiedError:
    """
    Classifies any raw failure into a ClassifiedError.
    Handles the engines' own exceptions, httpx errors and automation process errors.
    """
    if isinstance(e, UserDeniedError):
        return _build(ErrorKind.USER_CANCELLED, e)
    if isinstance(e, BrowserClosedError):
        return _build(ErrorKind.BROWSER_CLOSED, e)
    if isinstance(e, (DeviceCodeExpiredError, CallbackTimeoutError)):
        return _build(ErrorKind.TIMEOUT, e)
    if isinstance(e, AutomationUnavailableError):
        return _build(ErrorKind.AUTOMATION_UNAVAILABLE, e, detail=str(e) or None)
    if isinstance(e, ProviderError):
        return _build(ErrorKind.INVALID_RESPONSE, e, detail=e.error_code)
    if isinstance(e, InvalidResponseError):
        return _build(ErrorKind.INVALID_RESPONSE, e)
    if isinstance(e, InvalidInputError):
        return _build(ErrorKind.INVALID_INPUT, e, detail=str(e) or None)
    if isinstance(e, CredentialStoreError):
        return _build(ErrorKind.STORAGE_FAILED, e)

    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code
        if status_code == 429:
            return _build(ErrorKind.NETWORK_ERROR, e, status_code=status_code, retry_after=get_retry_after(e))
        if status_code >= 500:
            return _build(ErrorKind.NETWORK_ERROR, e, status_code=status_code)
        return _build(ErrorKind.INVALID_RESPONSE, e, status_code=status_code)

    if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return _build(ErrorKind.TIMEOUT, e)

    if isinstance(e, (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return _build(ErrorKind.NETWORK_ERROR, e)

    if isinstance(e, (json.JSONDecodeError, KeyError)):
        return _build(ErrorKind.INVALID_RESPONSE, e)

    message = str(e)
    for pattern, kind in AUTOMATION_MESSAGE_PATTERNS:
        if pattern.search(message):
            return _build(kind, e)

    if isinstance(e, OSError):
        return _build(ErrorKind.NETWORK_ERROR, e)

    # Fallback for any other unclassified errors
    return _build(ErrorKind.UNKNOWN, e)
