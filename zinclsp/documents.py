"""Document synchronization with the language server."""

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from lsprotocol.types import (
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TextDocumentSyncKind,
)

from zinclsp.capabilities import Capabilities
from zinclsp.errors import DocumentAlreadyOpen, OutOfOrderEdit, SessionClosed, UnknownDocument
from zinclsp.transport.rpc import RpcSession
from zinclsp.utils.text_edits import apply_content_changes


class DocumentStatus(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    DIRTY = "dirty"


@dataclass
class DocumentState:
    """Client-side view of one open document.

    `acknowledged_version` is the last version the current server has been
    sent; it is reset whenever the session is replaced.
    """

    uri: str
    language_id: str
    version: int
    text: str
    status: DocumentStatus = DocumentStatus.DIRTY
    acknowledged_version: Optional[int] = None


@dataclass
class _Event:
    method: str
    uri: str
    version: Optional[int] = None
    text: Optional[str] = None
    language_id: Optional[str] = None
    changes: Optional[List[Dict[str, Any]]] = None
    state: Optional[DocumentState] = None


class DocumentSynchronizer:
    """Tracks open documents and forwards their state to the server.

    Editor calls (`open`, `change`, `close`) update the tracked state right
    away. While a session is ready, each call also queues a notification that
    a single flush task sends in order. While no session is ready nothing is
    sent; when one becomes ready every tracked document is re-opened with its
    current text, since a new server knows nothing about them.
    """

    def __init__(self, default_language_id: str = "zinc"):
        self.logger = logging.getLogger("zinclsp.documents")
        self.default_language_id = default_language_id
        self._documents: Dict[str, DocumentState] = {}
        self._queue: Deque[_Event] = deque()
        self._session: Optional[RpcSession] = None
        self._capabilities: Optional[Capabilities] = None
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def is_ready(self) -> bool:
        return self._session is not None and self._session.is_open

    @property
    def sync_kind(self) -> Optional[TextDocumentSyncKind]:
        return self._capabilities.sync_kind if self._capabilities else None

    def get(self, uri: str) -> Optional[DocumentState]:
        return self._documents.get(uri)

    def open_documents(self) -> List[DocumentState]:
        return list(self._documents.values())

    # Editor operations

    def open(self, uri: str, text: str, language_id: Optional[str] = None, version: int = 1) -> DocumentState:
        """Start tracking a document.

        Args:
            uri: Document URI.
            text: Full text at open time.
            language_id: Language id, defaults to the server's language.
            version: Initial version number.

        Returns:
            The new document state.

        Raises:
            DocumentAlreadyOpen: If the document is already open.
        """
        if uri in self._documents:
            raise DocumentAlreadyOpen(f"Document already open: {uri}")
        state = DocumentState(uri=uri, language_id=language_id or self.default_language_id, version=version, text=text)
        self._documents[uri] = state
        self.logger.debug(f"Opened {uri} at version {version}")
        if self.is_ready:
            self._enqueue(self._open_event(state))
        return state

    def change(
        self,
        uri: str,
        text: Optional[str] = None,
        *,
        changes: Optional[List[Dict[str, Any]]] = None,
        version: Optional[int] = None,
    ) -> DocumentState:
        """Apply an edit, given either as new full text or as content changes.

        Args:
            uri: Document URI.
            text: The complete new text.
            changes: LSP content change events, applied in order.
            version: New version; defaults to the current version plus one.

        Returns:
            The updated document state.

        Raises:
            UnknownDocument: If the document is not open.
            OutOfOrderEdit: If `version` is not greater than the current version.
        """
        if (text is None) == (changes is None):
            raise ValueError("Pass exactly one of text or changes")
        state = self._documents.get(uri)
        if state is None:
            raise UnknownDocument(f"Document is not open: {uri}")

        new_version = state.version + 1 if version is None else version
        if new_version <= state.version:
            raise OutOfOrderEdit(f"Edit for {uri} has version {new_version}, last accepted version is {state.version}")

        new_text = text if changes is None else apply_content_changes(state.text, changes)
        state.text = new_text
        state.version = new_version
        state.status = DocumentStatus.DIRTY
        if self.is_ready:
            self._enqueue(
                _Event(
                    TEXT_DOCUMENT_DID_CHANGE,
                    uri,
                    version=new_version,
                    text=new_text,
                    changes=list(changes) if changes is not None else None,
                    state=state,
                )
            )
        return state

    def close(self, uri: str) -> None:
        """Stop tracking a document. Closing an unknown document is a no-op."""
        state = self._documents.pop(uri, None)
        if state is None:
            self.logger.debug(f"Ignoring close of unknown document {uri}")
            return
        state.status = DocumentStatus.CLOSED
        if self.is_ready:
            self._enqueue(_Event(TEXT_DOCUMENT_DID_CLOSE, uri))

    # Lifecycle reactions

    def on_session_ready(self, session: RpcSession, capabilities: Capabilities) -> None:
        """Bind to a freshly negotiated session and re-open every tracked document."""
        self._cancel_flush()
        self._session = session
        self._capabilities = capabilities
        self._queue.clear()
        for state in self._documents.values():
            state.acknowledged_version = None
            state.status = DocumentStatus.DIRTY
            self._enqueue(self._open_event(state))
        self.logger.info(
            f"Session ready, re-opening {len(self._documents)} document(s) with {capabilities.sync_kind.name} sync"
        )
        self._schedule_flush()

    def on_session_lost(self) -> None:
        """Unbind from the session; pending notifications are dropped."""
        self._session = None
        self._capabilities = None
        self._queue.clear()
        for state in self._documents.values():
            state.acknowledged_version = None
            state.status = DocumentStatus.DIRTY
        self._cancel_flush()

    async def flush(self) -> None:
        """Wait until every queued notification has been sent."""
        while self._flush_task is not None and not self._flush_task.done():
            await asyncio.wait({self._flush_task})

    # Sending

    def _open_event(self, state: DocumentState) -> _Event:
        return _Event(
            TEXT_DOCUMENT_DID_OPEN,
            state.uri,
            version=state.version,
            text=state.text,
            language_id=state.language_id,
            state=state,
        )

    def _enqueue(self, event: _Event) -> None:
        self._queue.append(event)
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if not self._queue or (self._flush_task is not None and not self._flush_task.done()):
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._drain(), name="zinclsp-document-flush")

    async def _drain(self) -> None:
        session = self._session
        while self._queue and session is not None and session is self._session:
            event = self._queue[0]
            params = self._params_for(event)
            try:
                if params is not None:
                    await session.notify(event.method, params)
            except SessionClosed as e:
                self.logger.info(f"Stopped flushing document events: {e}")
                return
            if session is not self._session:
                return
            if self._queue and self._queue[0] is event:
                self._queue.popleft()
            self._acknowledge(event)

    def _params_for(self, event: _Event) -> Optional[Dict[str, Any]]:
        capabilities = self._capabilities
        if capabilities is None:
            return None

        if event.method == TEXT_DOCUMENT_DID_OPEN:
            if not capabilities.open_close:
                return None
            return {
                "textDocument": {
                    "uri": event.uri,
                    "languageId": event.language_id,
                    "version": event.version,
                    "text": event.text,
                }
            }

        if event.method == TEXT_DOCUMENT_DID_CLOSE:
            if not capabilities.open_close:
                return None
            return {"textDocument": {"uri": event.uri}}

        if capabilities.sync_kind == TextDocumentSyncKind.None_:
            return None
        if capabilities.sync_kind == TextDocumentSyncKind.Incremental and event.changes is not None:
            content_changes = event.changes
        else:
            content_changes = [{"text": event.text}]
        return {
            "textDocument": {"uri": event.uri, "version": event.version},
            "contentChanges": content_changes,
        }

    def _acknowledge(self, event: _Event) -> None:
        state = event.state
        if state is None or event.version is None or self._documents.get(event.uri) is not state:
            return
        state.acknowledged_version = event.version
        if state.acknowledged_version == state.version:
            state.status = DocumentStatus.OPEN

    def _cancel_flush(self) -> None:
        task = self._flush_task
        self._flush_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
