# src/credential_orchestrator/models.py
"""
Core data model for credential acquisition.

A session moves through a fixed state graph:

    CREATED -> AWAITING_USER_ACTION -> POLLING | LISTENING | DRIVING -> terminal
    CREATED -> DRIVING -> terminal              (automated browser)
    CREATED -> terminal                         (local file import, pasted secret)

Terminal states (SUCCEEDED, FAILED, CANCELLED) are final.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .error_handler import ClassifiedError


class AcquisitionStrategy(str, Enum):
    DEVICE_CODE = "device_code"
    AUTHORIZATION_CODE_CALLBACK = "authorization_code_callback"
    AUTOMATED_BROWSER = "automated_browser"
    LOCAL_FILE_IMPORT = "local_file_import"
    PASTED_SECRET = "pasted_secret"


class SessionState(str, Enum):
    CREATED = "created"
    AWAITING_USER_ACTION = "awaiting_user_action"
    POLLING = "polling"
    LISTENING = "listening"
    DRIVING = "driving"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.CANCELLED}
)

_TERMINALS = set(TERMINAL_STATES)

ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.CREATED: frozenset(
        {SessionState.AWAITING_USER_ACTION, SessionState.DRIVING} | _TERMINALS
    ),
    SessionState.AWAITING_USER_ACTION: frozenset(
        {SessionState.POLLING, SessionState.LISTENING, SessionState.DRIVING}
        | _TERMINALS
    ),
    SessionState.POLLING: frozenset(_TERMINALS),
    SessionState.LISTENING: frozenset(_TERMINALS),
    SessionState.DRIVING: frozenset(_TERMINALS),
    SessionState.SUCCEEDED: frozenset(),
    SessionState.FAILED: frozenset(),
    SessionState.CANCELLED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class AuthMethod(str, Enum):
    OAUTH = "oauth"
    DEVICE = "device"
    API_KEY = "api_key"
    IMPORTED_FILE = "imported_file"


class CredentialSource(str, Enum):
    """How a credential was obtained, kept on the record for auditing."""

    DEVICE_CODE = "device_code"
    BROWSER_CALLBACK = "browser_callback"
    AUTOMATED_BROWSER = "automated_browser"
    LOCAL_FILE = "local_file"
    PASTED = "pasted"


@dataclass(frozen=True)
class DeviceFlowConfig:
    device_authorization_url: str
    token_url: str
    client_id: str
    scope: str = ""
    use_pkce: bool = False
    # Seconds added to the poll interval on every slow_down response (RFC 8628 s3.5)
    slow_down_increment: int = 5
    default_interval: int = 5
    default_expires_in: int = 600


@dataclass(frozen=True)
class CallbackFlowConfig:
    authorization_url: str
    token_url: str
    client_id: str
    client_secret: Optional[str] = None
    scope: str = ""
    use_pkce: bool = False
    callback_path: str = "/oauth2callback"
    # None binds an ephemeral loopback port; providers with a registered redirect pin one
    callback_port: Optional[int] = None
    # iFlow names the redirect parameter "redirect" and wants client credentials as Basic auth
    redirect_param: str = "redirect_uri"
    token_basic_auth: bool = False
    extra_auth_params: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AutomationConfig:
    """
    Settings for driving the consent flow in an automated browser.

    ``completion_url`` is the redirect target the provider sends the browser to once
    consent is granted; reaching it is the completion marker. When ``capture_cookies``
    is set the named cookies are taken as the credential instead of exchanging a code.
    """

    completion_url: str
    oauth: Optional[CallbackFlowConfig] = None
    start_url: Optional[str] = None
    capture_cookies: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    label: str
    strategies: FrozenSet[AcquisitionStrategy]
    default_credential_path: Optional[str] = None
    requires_project_id: bool = False
    env_prefix: Optional[str] = None
    device_flow: Optional[DeviceFlowConfig] = None
    callback_flow: Optional[CallbackFlowConfig] = None
    automation: Optional[AutomationConfig] = None
    default_base_url: Optional[str] = None


@dataclass
class CredentialRecord:
    provider_id: str
    auth_method: AuthMethod
    secret_material: Dict[str, Any] = field(repr=False)
    source: CredentialSource
    expiry: Optional[datetime] = None
    display_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AcquisitionSession:
    """Mutable session state. Only the owning engine task and cancel() touch it."""

    id: str
    provider_id: str
    strategy: AcquisitionStrategy
    display_name: Optional[str] = None
    state: SessionState = SessionState.CREATED
    user_facing_code: Optional[str] = None
    verification_uri: Optional[str] = None
    redirect_uri: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    poll_interval: Optional[float] = None
    error: Optional["ClassifiedError"] = None
    stored_id: Optional[str] = None
    finished_at: Optional[float] = None

    @property
    def key(self):
        return (self.provider_id, self.strategy)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass(frozen=True)
class SessionEvent:
    """One state transition as delivered to subscribers."""

    session_id: str
    sequence: int
    state: SessionState
    user_facing_code: Optional[str] = None
    verification_uri: Optional[str] = None
    error: Optional["ClassifiedError"] = None
    stored_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    provider_id: str
    strategy: AcquisitionStrategy
    state: SessionState
    display_name: Optional[str]
    user_facing_code: Optional[str]
    verification_uri: Optional[str]
    created_at: float
    expires_at: Optional[float]
    poll_interval: Optional[float]
    error: Optional["ClassifiedError"]
    stored_id: Optional[str]

    @classmethod
    def of(cls, session: AcquisitionSession) -> "SessionSnapshot":
        return cls(
            id=session.id,
            provider_id=session.provider_id,
            strategy=session.strategy,
            state=session.state,
            display_name=session.display_name,
            user_facing_code=session.user_facing_code,
            verification_uri=session.verification_uri,
            created_at=session.created_at,
            expires_at=session.expires_at,
            poll_interval=session.poll_interval,
            error=session.error,
            stored_id=session.stored_id,
        )
