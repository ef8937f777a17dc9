# src/credential_orchestrator/flows/base.py

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx

from ..cancellation import CancellationToken
from ..models import (
    AcquisitionSession,
    AcquisitionStrategy,
    CredentialRecord,
    ProviderDescriptor,
    SessionState,
)
from ..settings import OrchestratorSettings

HttpClientFactory = Callable[..., httpx.AsyncClient]
TransitionCallback = Callable[..., None]


class FlowContext:
    """
    Everything an engine needs to drive one session.

    Engines report progress only through ``transition``; the supervisor owns the
    session table and the event fan-out.
    """

    def __init__(
        self,
        session: AcquisitionSession,
        provider: ProviderDescriptor,
        settings: OrchestratorSettings,
        token: CancellationToken,
        transition: TransitionCallback,
        params: Optional[Dict[str, Any]] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
    ):
        self.session = session
        self.provider = provider
        self.settings = settings
        self.token = token
        self.params = params or {}
        self._transition = transition
        self._http_client_factory = http_client_factory or httpx.AsyncClient

    def transition(self, state: SessionState, **fields) -> None:
        self._transition(self.session, state, **fields)

    def http_client(self) -> httpx.AsyncClient:
        return self._http_client_factory(timeout=self.settings.http_timeout_seconds)


class FlowEngine(ABC):
    """
    An acquisition strategy. ``run`` drives a session from CREATED up to, but not
    including, its terminal state and returns the finished credential. Failures are
    raised as exceptions; the supervisor classifies them.
    """

    strategy: AcquisitionStrategy

    async def preflight(self, provider: ProviderDescriptor, params: Dict[str, Any]) -> None:
        """
        Fail-fast checks run by the supervisor before a session is created.
        Raising here aborts start() and no session exists afterwards.
        """
        return None

    @abstractmethod
    async def run(self, ctx: FlowContext) -> CredentialRecord:
        pass
