# src/credential_orchestrator/session_supervisor.py

import time
import uuid
import asyncio
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple, Union

from .cancellation import CancellationToken, SessionCancelled
from .credential_store import CredentialStoreWriter
from .error_handler import (
    AcquisitionError,
    CredentialStoreError,
    InvalidStrategyError,
    SessionNotFoundError,
    classify_error,
    mask_credential,
)
from .failure_logger import log_failure
from .flows import FlowContext, FlowEngine, default_engines
from .flows.base import HttpClientFactory
from .availability import AvailabilityProber
from .models import (
    AcquisitionSession,
    AcquisitionStrategy,
    ProviderDescriptor,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    can_transition,
)
from .provider_config import StrategyRegistry
from .settings import OrchestratorSettings

lib_logger = logging.getLogger('credential_orchestrator')

SessionKey = Tuple[str, AcquisitionStrategy]

# How many released session ids are remembered so a late cancel stays a no-op
RELEASED_ID_LIMIT = 4096


class SessionSupervisor:
    """
    Owns every acquisition session of the process.

    - At most one non-terminal session exists per (provider, strategy); starting a
      new one cancels the previous one and waits for it to finish first.
    - Each session runs in its own task. Only the supervisor moves a session into
      a terminal state, and it does so exactly once.
    - Subscribers receive every transition of a session, in order, ending with
      the terminal one.
    - The store's ``save`` is called once per succeeded session and never otherwise.

    Use as an async context manager, or call ``shutdown()`` explicitly.
    """

    def __init__(
        self,
        store: CredentialStoreWriter,
        registry: Optional[StrategyRegistry] = None,
        settings: Optional[OrchestratorSettings] = None,
        engines: Optional[Mapping[AcquisitionStrategy, FlowEngine]] = None,
        prober: Optional[AvailabilityProber] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
    ):
        self.store = store
        self.registry = registry or StrategyRegistry()
        self.settings = settings or OrchestratorSettings()
        self.engines: Dict[AcquisitionStrategy, FlowEngine] = dict(
            engines if engines is not None else default_engines(prober=prober)
        )
        self._http_client_factory = http_client_factory

        self._sessions: Dict[str, AcquisitionSession] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active: Dict[SessionKey, str] = {}
        self._history: Dict[str, List[SessionEvent]] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._released: "OrderedDict[str, None]" = OrderedDict()

        self._key_locks: Dict[SessionKey, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # Protects the locks dict from race conditions
        self._closed = False

    async def __aenter__(self) -> "SessionSupervisor":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    # =========================================================================
    # Public surface
    # =========================================================================

    async def start(
        self,
        provider_id: str,
        strategy: Union[AcquisitionStrategy, str],
        display_name: Optional[str] = None,
        strategy_params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Starts an acquisition session and returns its id.

        Raises InvalidStrategyError when the provider does not support the strategy.
        Engine preflight failures (e.g. AutomationUnavailableError) are raised
        before any session exists, with their ClassifiedError attached as
        ``classified``.
        """
        if self._closed:
            raise RuntimeError("SessionSupervisor has been shut down")

        try:
            strategy = AcquisitionStrategy(strategy)
        except ValueError:
            raise InvalidStrategyError(f"Unknown acquisition strategy '{strategy}'")

        provider = self.registry.get(provider_id)
        if provider is None or strategy not in provider.strategies:
            raise InvalidStrategyError(
                f"Provider '{provider_id}' does not support the '{strategy.value}' strategy"
            )
        engine = self.engines.get(strategy)
        if engine is None:
            raise InvalidStrategyError(f"No engine registered for the '{strategy.value}' strategy")

        params = dict(strategy_params or {})
        try:
            await engine.preflight(provider, params)
        except AcquisitionError as e:
            e.classified = classify_error(e)
            lib_logger.warning(
                f"Cannot start {strategy.value} session for '{provider_id}': {e.classified.human_message}"
            )
            raise

        key = (provider_id, strategy)
        lock = await self._get_key_lock(key)
        async with lock:
            previous_id = self._active.get(key)
            if previous_id is not None:
                lib_logger.info(f"Replacing active session {previous_id} for {provider_id}/{strategy.value}")
                await self._cancel_and_wait(previous_id)

            session = AcquisitionSession(
                id=uuid.uuid4().hex,
                provider_id=provider_id,
                strategy=strategy,
                display_name=display_name,
            )
            token = CancellationToken()
            self._sessions[session.id] = session
            self._tokens[session.id] = token
            self._history[session.id] = []
            self._subscribers[session.id] = []
            self._active[key] = session.id
            self._emit(session)

            self._tasks[session.id] = asyncio.create_task(
                self._drive(session, engine, provider, params, token),
                name=f"acquisition-{session.id}",
            )

        lib_logger.info(f"Started {strategy.value} session {session.id} for provider '{provider_id}'.")
        return session.id

    async def cancel(self, session_id: str) -> None:
        """
        Cancels a session and waits until it reaches a terminal state.
        Cancelling a terminal session is a no-op, including one already
        released by retention or ``forget``.
        """
        if session_id in self._released:
            return
        session = self._get(session_id)
        if session.is_terminal:
            return
        lock = await self._get_key_lock(session.key)
        async with lock:
            await self._cancel_and_wait(session_id)

    def status(self, session_id: str) -> SessionSnapshot:
        return SessionSnapshot.of(self._get(session_id))

    def list_sessions(self) -> List[SessionSnapshot]:
        return [SessionSnapshot.of(s) for s in sorted(self._sessions.values(), key=lambda s: s.created_at)]

    def active_session_for(self, provider_id: str, strategy: AcquisitionStrategy) -> Optional[str]:
        return self._active.get((provider_id, AcquisitionStrategy(strategy)))

    async def subscribe(self, session_id: str) -> AsyncIterator[SessionEvent]:
        """
        Yields every transition of the session, starting from CREATED, and stops
        after the terminal one. Late subscribers get the history replayed first.
        """
        self._get(session_id)
        history = list(self._history[session_id])
        queue: asyncio.Queue = asyncio.Queue()
        if not (history and history[-1].state.is_terminal):
            self._subscribers[session_id].append(queue)
        try:
            for event in history:
                yield event
                if event.state.is_terminal:
                    return
            while True:
                event = await queue.get()
                yield event
                if event.state.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(session_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> SessionSnapshot:
        """Waits for the session to finish and returns its final snapshot."""
        session = self._get(session_id)

        async def _until_terminal():
            async for _ in self.subscribe(session_id):
                pass

        await asyncio.wait_for(_until_terminal(), timeout=timeout)
        return SessionSnapshot.of(session)

    def forget(self, session_id: str) -> None:
        """Releases a terminal session. Active sessions must be cancelled first."""
        session = self._get(session_id)
        if not session.is_terminal:
            raise ValueError(f"Session {session_id} is still active; cancel it first")
        self._discard(session_id)

    async def shutdown(self) -> None:
        """Cancels every active session and waits for all engines to stop."""
        self._closed = True
        active = [s.id for s in self._sessions.values() if not s.is_terminal]
        if active:
            lib_logger.info(f"Shutting down, cancelling {len(active)} active session(s)")
            await asyncio.gather(*(self.cancel(session_id) for session_id in active))
        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            await asyncio.wait(pending)

    # =========================================================================
    # Session driving
    # =========================================================================

    async def _drive(self, session: AcquisitionSession, engine: FlowEngine,
                     provider: ProviderDescriptor, params: Dict[str, Any],
                     token: CancellationToken) -> None:
        ctx = FlowContext(
            session=session,
            provider=provider,
            settings=self.settings,
            token=token,
            transition=self._transition,
            params=params,
            http_client_factory=self._http_client_factory,
        )
        try:
            record = await asyncio.wait_for(engine.run(ctx), timeout=self.settings.max_session_seconds)
        except SessionCancelled:
            self._finish(session, SessionState.CANCELLED)
            return
        except asyncio.CancelledError:
            self._finish(session, SessionState.CANCELLED)
            if not token.cancelled:
                raise
            return
        except Exception as e:
            self._fail(session, e)
            return

        if token.cancelled:
            # Cancelled while the engine was finishing; the record is dropped unsaved
            self._finish(session, SessionState.CANCELLED)
            return

        try:
            stored_id = await self.store.save(record)
        except asyncio.CancelledError:
            self._finish(session, SessionState.CANCELLED)
            if not token.cancelled:
                raise
            return
        except Exception as e:
            failure = CredentialStoreError(f"Credential store rejected the record: {e}")
            failure.__cause__ = e
            self._fail(session, failure)
            return

        lib_logger.info(
            f"Session {session.id} succeeded; credential for '{session.provider_id}' stored as {stored_id}."
        )
        self._finish(session, SessionState.SUCCEEDED, stored_id=stored_id)

    def _fail(self, session: AcquisitionSession, error: BaseException) -> None:
        classified = classify_error(error)
        if session.is_terminal:
            lib_logger.debug(f"Ignoring late failure of finished session {session.id}: {classified.kind.value}")
            return
        if classified.surfaced:
            log_failure(session, classified, self.settings.failure_log_dir)
        else:
            lib_logger.info(f"Session {session.id} ended by user action: {classified.kind.value}")
        self._finish(session, SessionState.FAILED, error=classified)

    def _finish(self, session: AcquisitionSession, state: SessionState, **fields) -> None:
        if session.is_terminal:
            return
        self._transition(session, state, **fields)
        if state == SessionState.CANCELLED:
            lib_logger.info(f"Session {session.id} cancelled.")
        self._prune()

    def _transition(self, session: AcquisitionSession, state: SessionState, **fields) -> None:
        """The only writer of ``session.state``. Rejects moves outside the state graph."""
        if not can_transition(session.state, state):
            raise RuntimeError(
                f"Illegal transition {session.state.value} -> {state.value} for session {session.id}"
            )
        for name, value in fields.items():
            setattr(session, name, value)
        session.state = state

        if state.is_terminal:
            session.finished_at = time.time()
            if self._active.get(session.key) == session.id:
                del self._active[session.key]

        if state == SessionState.AWAITING_USER_ACTION and session.user_facing_code:
            lib_logger.debug(
                f"Session {session.id} awaiting user action (code {mask_credential(session.user_facing_code)})"
            )
        else:
            lib_logger.debug(f"Session {session.id} -> {state.value}")
        self._emit(session)

    def _emit(self, session: AcquisitionSession) -> None:
        history = self._history[session.id]
        event = SessionEvent(
            session_id=session.id,
            sequence=len(history) + 1,
            state=session.state,
            user_facing_code=session.user_facing_code,
            verification_uri=session.verification_uri,
            error=session.error,
            stored_id=session.stored_id,
        )
        history.append(event)
        for queue in list(self._subscribers.get(session.id, ())):
            queue.put_nowait(event)

    async def _cancel_and_wait(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return

        if self._tokens[session_id].cancel():
            lib_logger.debug(f"Cancellation requested for session {session_id}")

        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.settings.cancel_grace_seconds)
            if not done:
                lib_logger.warning(
                    f"Session {session_id} did not stop within {self.settings.cancel_grace_seconds:g}s, cancelling its task"
                )
                task.cancel()
                await asyncio.wait({task})

        # A task cancelled before it ever ran never reaches its own handlers
        self._finish(session, SessionState.CANCELLED)

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _get(self, session_id: str) -> AcquisitionSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _get_key_lock(self, key: SessionKey) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._key_locks:
                self._key_locks[key] = asyncio.Lock()
            return self._key_locks[key]

    def _prune(self) -> None:
        finished = [s for s in self._sessions.values() if s.is_terminal]
        excess = len(finished) - self.settings.session_retention
        if excess <= 0:
            return
        finished.sort(key=lambda s: s.finished_at or 0)
        for session in finished[:excess]:
            self._discard(session.id)

    def _discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._released[session_id] = None
        while len(self._released) > RELEASED_ID_LIMIT:
            self._released.popitem(last=False)
        self._tokens.pop(session_id, None)
        self._tasks.pop(session_id, None)
        self._history.pop(session_id, None)
        self._subscribers.pop(session_id, None)
