"""Lifecycle controller for one language server session.

This module provides the object an embedding editor talks to: it starts and
stops the server, recovers from crashes within the restart policy, and routes
feature requests to the server only while the session is running.
"""

import asyncio
import enum
import functools
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeAlias

from lsprotocol.types import (
    CLIENT_REGISTER_CAPABILITY,
    CLIENT_UNREGISTER_CAPABILITY,
    TEXT_DOCUMENT_COMPLETION,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS,
    TEXT_DOCUMENT_REFERENCES,
    WINDOW_LOG_MESSAGE,
    WINDOW_SHOW_MESSAGE,
    WINDOW_SHOW_MESSAGE_REQUEST,
    WINDOW_WORK_DONE_PROGRESS_CREATE,
    WORKSPACE_CONFIGURATION,
    MessageType,
)

from zinclsp.capabilities import Capabilities, CapabilityNegotiator
from zinclsp.config import ClientSettings
from zinclsp.documents import DocumentState, DocumentSynchronizer
from zinclsp.errors import (
    CapabilityNotSupported,
    ConnectionLost,
    NegotiationError,
    RequestTimeout,
    SessionClosed,
    SessionCrashed,
    SpawnError,
    UnsupportedDocument,
    ZincLspError,
)
from zinclsp.servers.base import LanguageServerSpec
from zinclsp.servers.supervisor import ProcessSupervisor, RestartPolicy, ServerProcess
from zinclsp.servers.zinc_server import ZincServerSpec
from zinclsp.transport.rpc import RpcSession
from zinclsp.utils.workspace import WorkspaceManager


class SessionState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    NEGOTIATING = "negotiating"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


TERMINAL_STATES = frozenset({SessionState.STOPPED, SessionState.CRASHED})
# States in which a server failure triggers the restart policy.
ACTIVE_STATES = frozenset({SessionState.STARTING, SessionState.NEGOTIATING, SessionState.RUNNING})

TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.NOT_STARTED: {SessionState.STARTING, SessionState.STOPPING, SessionState.CRASHED},
    SessionState.STARTING: {
        SessionState.NEGOTIATING,
        SessionState.RESTARTING,
        SessionState.STOPPING,
        SessionState.CRASHED,
    },
    SessionState.NEGOTIATING: {
        SessionState.RUNNING,
        SessionState.RESTARTING,
        SessionState.STOPPING,
        SessionState.CRASHED,
    },
    SessionState.RUNNING: {SessionState.RESTARTING, SessionState.STOPPING, SessionState.CRASHED},
    SessionState.RESTARTING: {SessionState.STARTING, SessionState.STOPPING, SessionState.CRASHED},
    SessionState.STOPPING: {SessionState.STOPPED, SessionState.CRASHED},
    SessionState.STOPPED: set(),
    SessionState.CRASHED: set(),
}

StateListener: TypeAlias = Callable[[SessionState, SessionState], None]
FailureListener: TypeAlias = Callable[[ZincLspError], None]

_LOG_LEVELS = {
    MessageType.Error: logging.ERROR,
    MessageType.Warning: logging.WARNING,
    MessageType.Info: logging.INFO,
    MessageType.Log: logging.DEBUG,
}


class LifecycleController:
    """Top-level state machine for one language server session.

    A controller is started once and stopped once; `Stopped` and `Crashed`
    are terminal, so starting again needs a new controller.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        server: Optional[LanguageServerSpec] = None,
        workspace_path: Optional[str] = None,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
        on_failure: Optional[FailureListener] = None,
    ):
        """Initialize the controller.

        Args:
            settings: Client settings; defaults are used when omitted.
            server: Server description; defaults to the Zinc server.
            workspace_path: Workspace directory announced to the server.
            supervisor: Process supervisor; one is created from the settings when omitted.
            on_failure: Called once with the user-visible error when the session crashes.
        """
        self.settings = settings or ClientSettings()
        self.server = server or ZincServerSpec(self.settings)
        self.workspace = WorkspaceManager(workspace_path) if workspace_path else None
        self.logger = logging.getLogger("zinclsp.service")

        self.supervisor = supervisor or ProcessSupervisor(
            RestartPolicy(
                crash_limit=self.settings.crash_limit,
                window=self.settings.crash_window,
                backoff_base=self.settings.backoff_base,
                backoff_max=self.settings.backoff_max,
            )
        )
        self.supervisor.on_crash = self._on_process_crash
        self.negotiator = CapabilityNegotiator(self.server, self.workspace)
        self.documents = DocumentSynchronizer(self.server.language)
        self.on_failure = on_failure

        self.capabilities: Optional[Capabilities] = None
        self.failure: Optional[ZincLspError] = None
        self.last_error: Optional[BaseException] = None

        self._state = SessionState.NOT_STARTED
        self._session: Optional[RpcSession] = None
        self._instance_id: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[StateListener] = [self._sync_documents]
        self._waiters: List[Tuple[Set[SessionState], asyncio.Future]] = []
        self._diagnostics: Dict[str, List[Dict[str, Any]]] = {}

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    # State machine

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback invoked with `(old, new)` on every transition.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_for_state(self, *states: SessionState, timeout: Optional[float] = None) -> SessionState:
        """Wait until the controller is in one of `states`.

        Returns:
            The state reached.

        Raises:
            asyncio.TimeoutError: If none was reached within `timeout`.
        """
        if self._state in states:
            return self._state
        waiter = (set(states), asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter[1], timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _transition(self, new: SessionState) -> None:
        old = self._state
        if new not in TRANSITIONS[old]:
            raise RuntimeError(f"Illegal session transition {old.value} -> {new.value}")
        self._state = new
        self.logger.info(f"Session state: {old.value} -> {new.value}")

        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                self.logger.exception(f"State listener failed on {old.value} -> {new.value}")

        for states, future in list(self._waiters):
            if new in states and not future.done():
                future.set_result(new)

    def _sync_documents(self, old: SessionState, new: SessionState) -> None:
        if new is SessionState.RUNNING:
            self.documents.on_session_ready(self._session, self.capabilities)
        elif old is SessionState.RUNNING:
            self.documents.on_session_lost()

    # Public lifecycle

    async def start(self) -> Capabilities:
        """Spawn the server and wait until the session is running.

        Returns:
            The negotiated capabilities.

        Raises:
            SpawnError: The server executable could not be started.
            SessionCrashed: The server failed more often than the restart policy allows.
            SessionClosed: The session was stopped while starting.
        """
        if self._state is not SessionState.NOT_STARTED:
            raise RuntimeError(f"Cannot start a session in state {self._state.value}; create a new controller")

        self._transition(SessionState.STARTING)
        self._task = asyncio.get_running_loop().create_task(self._launch(), name="zinclsp-launch")
        state = await self.wait_for_state(SessionState.RUNNING, *TERMINAL_STATES)
        if state is SessionState.CRASHED:
            raise self.failure
        if state is SessionState.STOPPED:
            raise SessionClosed("Session was stopped while starting")
        return self.capabilities

    async def stop(self) -> None:
        """Stop the session, shutting the server down gracefully when possible."""
        if self._state in TERMINAL_STATES:
            await self._await_background()
            return
        if self._state is SessionState.STOPPING:
            await self.wait_for_state(*TERMINAL_STATES)
            return

        was_running = self._state is SessionState.RUNNING
        session = self._session
        if session is not None:
            session.fail_pending(SessionClosed("Session is stopping"))
        self._transition(SessionState.STOPPING)
        await self._cancel_background()

        try:
            await self._teardown(session, graceful=was_running)
        except OSError as e:
            self.logger.error(f"Could not stop language server: {e}")
            self._enter_crashed(e)
            return
        self._transition(SessionState.STOPPED)

    async def restart(self) -> Capabilities:
        """Restart a running session without counting it as a crash.

        Returns:
            The capabilities negotiated with the new server.
        """
        if self._state is not SessionState.RUNNING:
            raise SessionClosed(f"Cannot restart a session in state {self._state.value}")
        session = self._session
        session.fail_pending(SessionClosed("Session is restarting"))
        self._transition(SessionState.RESTARTING)
        self._task = asyncio.get_running_loop().create_task(self._recover(session, 0, graceful=True))
        state = await self.wait_for_state(SessionState.RUNNING, *TERMINAL_STATES)
        if state is SessionState.CRASHED:
            raise self.failure
        if state is SessionState.STOPPED:
            raise SessionClosed("Session was stopped while restarting")
        return self.capabilities

    # Launch and recovery

    async def _launch(self) -> None:
        command = self.server.command()
        cwd = self.workspace.workspace_path if self.workspace else None
        try:
            connection = await self.supervisor.spawn(command[0], command[1:], cwd)
        except SpawnError as e:
            self.logger.error(f"Failed to start {self.server.language} language server: {e}")
            self._enter_crashed(e)
            return
        if self._state is not SessionState.STARTING:
            return

        self._instance_id = connection.instance_id
        session = RpcSession(
            connection.reader,
            connection.writer,
            default_timeout=self.settings.request_timeout,
            notify_cancel=self.settings.notify_cancel,
            on_failure=functools.partial(self._on_session_failure, connection.instance_id),
        )
        self._install_handlers(session)
        self._session = session
        session.start()
        self._transition(SessionState.NEGOTIATING)

        try:
            capabilities = await self.negotiator.negotiate(session, timeout=self.settings.initialize_timeout)
        except (NegotiationError, RequestTimeout) as e:
            self._begin_recovery(connection.instance_id, e)
            return
        if self._state is not SessionState.NEGOTIATING or self._session is not session:
            return

        self.capabilities = capabilities
        self._transition(SessionState.RUNNING)

    def _on_process_crash(self, server: ServerProcess) -> None:
        self._begin_recovery(
            server.instance_id, ConnectionLost(f"Language server exited unexpectedly with code {server.returncode}")
        )

    def _on_session_failure(self, instance_id: int, error: ZincLspError) -> None:
        self._begin_recovery(instance_id, error)

    def _begin_recovery(self, instance_id: int, error: BaseException) -> None:
        """Handle a crash, protocol error or failed negotiation of the current server."""
        if instance_id != self._instance_id or self._state not in ACTIVE_STATES:
            self.logger.debug(f"Ignoring failure of stale or inactive session: {error}")
            return

        self.last_error = error
        delay = self.supervisor.restart_policy.record_crash()
        if delay is None:
            self._enter_crashed(error)
            return

        session = self._session
        graceful = (
            self._state is SessionState.RUNNING
            and session is not None
            and session.is_open
            and self.supervisor.is_running
        )
        if session is not None:
            if graceful:
                session.fail_pending(SessionClosed(f"Session is restarting: {error}"))
            else:
                session.close(error)

        self.logger.warning(
            f"Language server failed ({error}); restarting in {delay:.2f}s "
            f"(crash {self.supervisor.restart_policy.recent_crashes} of {self.settings.crash_limit})"
        )
        self._transition(SessionState.RESTARTING)
        self._task = asyncio.get_running_loop().create_task(self._recover(session, delay, graceful))

    async def _recover(self, session: Optional[RpcSession], delay: float, graceful: bool) -> None:
        await self._teardown(session, graceful)
        if delay:
            await asyncio.sleep(delay)
        if self._state is not SessionState.RESTARTING:
            return
        self._transition(SessionState.STARTING)
        await self._launch()

    def _enter_crashed(self, error: BaseException) -> None:
        self.last_error = error
        if isinstance(error, SpawnError):
            self.failure = error
        else:
            self.failure = SessionCrashed(error)
            self.failure.__cause__ = error

        session = self._session
        if session is not None:
            session.close(error)
        self._transition(SessionState.CRASHED)
        self.logger.error(f"Language server session crashed: {self.failure}")
        if self.on_failure:
            try:
                self.on_failure(self.failure)
            except Exception:
                self.logger.exception("Failure listener raised")
        if self.supervisor.current is not None:
            self._task = asyncio.get_running_loop().create_task(self._teardown(None, graceful=False))

    async def _teardown(self, session: Optional[RpcSession], graceful: bool) -> None:
        if graceful:
            await self.supervisor.shutdown(session, self.settings.shutdown_grace_period)
        else:
            self.supervisor.mark_expected_exit()
        if session is not None:
            session.close(SessionClosed("Session ended"))
        self._diagnostics.clear()
        await self.supervisor.terminate(self.settings.shutdown_grace_period)

    async def _cancel_background(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _await_background(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    # Server-originated traffic

    def _install_handlers(self, session: RpcSession) -> None:
        session.subscribe(WINDOW_LOG_MESSAGE, self._on_log_message)
        session.subscribe(WINDOW_SHOW_MESSAGE, self._on_log_message)
        session.subscribe(TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS, self._on_diagnostics)
        session.on_request(WORKSPACE_CONFIGURATION, self._on_configuration)
        for method in (
            CLIENT_REGISTER_CAPABILITY,
            CLIENT_UNREGISTER_CAPABILITY,
            WINDOW_WORK_DONE_PROGRESS_CREATE,
            WINDOW_SHOW_MESSAGE_REQUEST,
        ):
            session.on_request(method, lambda params: None)

    def _on_log_message(self, params: Any) -> None:
        params = params or {}
        try:
            level = _LOG_LEVELS.get(MessageType(params.get("type", MessageType.Log)), logging.INFO)
        except ValueError:
            level = logging.INFO
        self.logger.log(level, f"LSP server: {params.get('message', '')}")

    def _on_diagnostics(self, params: Any) -> None:
        if not isinstance(params, dict) or "uri" not in params:
            self.logger.warning(f"Ignoring malformed diagnostics notification: {params!r}")
            return
        self._diagnostics[params["uri"]] = list(params.get("diagnostics") or [])

    def _on_configuration(self, params: Any) -> List[Any]:
        items = (params or {}).get("items") or []
        results = []
        for item in items:
            section = item.get("section")
            value: Any = self.settings.settings
            for key in section.split(".") if section else []:
                value = value.get(key) if isinstance(value, dict) else None
            results.append(value)
        return results

    def diagnostics(self, path_or_uri: str) -> List[Dict[str, Any]]:
        """Get the latest diagnostics the server published for a document."""
        return list(self._diagnostics.get(self._uri(path_or_uri), []))

    # Editor-originated traffic

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a feature request to the server.

        Args:
            method: The LSP method to call.
            params: Parameters for the method.
            timeout: Seconds to wait for the response.

        Returns:
            The result returned by the server.

        Raises:
            SessionClosed: The session is not running.
            CapabilityNotSupported: The negotiated capabilities exclude the method.
            RequestTimeout: No response arrived in time.
            ResponseError: The server answered with an error.
        """
        if self._state is not SessionState.RUNNING or self._session is None:
            raise SessionClosed(f"Session is {self._state.value}, not running")
        if not self.capabilities.supports_method(method):
            raise CapabilityNotSupported(f"{method} is not supported by the {self.server.language} server")
        session = self._session
        # Queued didOpen/didChange go out before the request.
        await self.documents.flush()
        if self._state is not SessionState.RUNNING or self._session is not session:
            raise SessionClosed(f"Session is {self._state.value}, not running")
        if timeout is None:
            timeout = self.settings.request_timeout
        return await session.call(method, params, timeout=timeout)

    def _uri(self, path_or_uri: str) -> str:
        if self.workspace is not None:
            return self.workspace.to_uri(path_or_uri)
        if "://" in path_or_uri:
            return path_or_uri
        return WorkspaceManager.path_to_uri(path_or_uri)

    def open_document(self, path_or_uri: str, text: Optional[str] = None) -> DocumentState:
        """Open a document, reading its text from disk when not given.

        Args:
            path_or_uri: File path or URI.
            text: Document text.

        Returns:
            The tracked document state.

        Raises:
            UnsupportedDocument: The file is not a source file of the server's language.
        """
        uri = self._uri(path_or_uri)
        path = WorkspaceManager.uri_to_path(uri)
        if uri.startswith("file:") and not self.server.handles_file(path):
            raise UnsupportedDocument(f"Not a {self.server.language} file: {path}")
        if text is None:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        return self.documents.open(uri, text, language_id=self.server.language)

    def change_document(self, path_or_uri: str, text: Optional[str] = None, **kwargs: Any) -> DocumentState:
        return self.documents.change(self._uri(path_or_uri), text, **kwargs)

    def close_document(self, path_or_uri: str) -> None:
        self.documents.close(self._uri(path_or_uri))

    def _position_params(self, path_or_uri: str, line: int, character: int) -> Dict[str, Any]:
        return {
            "textDocument": {"uri": self._uri(path_or_uri)},
            "position": {"line": line, "character": character},
        }

    async def completion(self, path_or_uri: str, line: int, character: int) -> List[Dict[str, Any]]:
        """Get completion items at the specified position.

        Args:
            path_or_uri: File path or URI.
            line: Line number (0-indexed).
            character: Character position (0-indexed).

        Returns:
            Completion items; an incomplete `CompletionList` is flattened.
        """
        result = await self.request(TEXT_DOCUMENT_COMPLETION, self._position_params(path_or_uri, line, character))
        if isinstance(result, dict):
            return list(result.get("items") or [])
        return list(result or [])

    async def hover(self, path_or_uri: str, line: int, character: int) -> Optional[Dict[str, Any]]:
        return await self.request(TEXT_DOCUMENT_HOVER, self._position_params(path_or_uri, line, character))

    async def definition(self, path_or_uri: str, line: int, character: int) -> Dict[str, Any]:
        """Get definition for the symbol at the specified position.

        Args:
            path_or_uri: File path or URI.
            line: Line number (0-indexed).
            character: Character position (0-indexed).

        Returns:
            Dictionary containing definition locations.
        """
        result = await self.request(TEXT_DOCUMENT_DEFINITION, self._position_params(path_or_uri, line, character))

        # Handle different response formats (single location or array of locations)
        if isinstance(result, dict):
            result = [result]
        locations = []
        for location in result or []:
            uri = location.get("uri") or location.get("targetUri", "")
            range_data = location.get("range") or location.get("targetSelectionRange", {})
            locations.append({"path": WorkspaceManager.uri_to_path(uri), "range": range_data})
        return {"locations": locations}

    async def references(self, path_or_uri: str, line: int, character: int) -> List[Dict[str, Any]]:
        """Get references for the symbol at the specified position.

        Args:
            path_or_uri: File path or URI.
            line: Line number (0-indexed).
            character: Character position (0-indexed).

        Returns:
            List of dictionaries containing reference information.
        """
        params = self._position_params(path_or_uri, line, character)
        params["context"] = {"includeDeclaration": True}
        result = await self.request(TEXT_DOCUMENT_REFERENCES, params)
        return [
            {"path": WorkspaceManager.uri_to_path(reference.get("uri", "")), "range": reference.get("range", {})}
            for reference in result or []
        ]
