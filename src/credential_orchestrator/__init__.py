from typing import TYPE_CHECKING

from .models import (
    AcquisitionSession,
    AcquisitionStrategy,
    AuthMethod,
    CredentialRecord,
    CredentialSource,
    ProviderDescriptor,
    SessionEvent,
    SessionSnapshot,
    SessionState,
)
from .error_handler import ClassifiedError, ErrorKind, classify_error
from .provider_config import StrategyRegistry
from .settings import OrchestratorSettings
from .credential_store import CredentialStoreWriter, InMemoryCredentialStore

# The supervisor pulls in every engine (aiohttp, httpx); load it on first access
if TYPE_CHECKING:
    from .session_supervisor import SessionSupervisor
    from .availability import AvailabilityProber, AvailabilityStatus, InstallProgress

__all__ = [
    "AcquisitionSession",
    "AcquisitionStrategy",
    "AuthMethod",
    "CredentialRecord",
    "CredentialSource",
    "ProviderDescriptor",
    "SessionEvent",
    "SessionSnapshot",
    "SessionState",
    "ClassifiedError",
    "ErrorKind",
    "classify_error",
    "StrategyRegistry",
    "OrchestratorSettings",
    "CredentialStoreWriter",
    "InMemoryCredentialStore",
    "SessionSupervisor",
    "AvailabilityProber",
    "AvailabilityStatus",
    "InstallProgress",
]


def __getattr__(name):
    """Lazy-load the supervisor and the availability prober to speed up module import."""
    if name == "SessionSupervisor":
        from .session_supervisor import SessionSupervisor
        return SessionSupervisor
    if name in ("AvailabilityProber", "AvailabilityStatus", "InstallProgress"):
        from . import availability
        return getattr(availability, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
