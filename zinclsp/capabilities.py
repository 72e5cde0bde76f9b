"""Capability negotiation with the language server."""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from lsprotocol.types import (
    INITIALIZE,
    INITIALIZED,
    TEXT_DOCUMENT_CODE_ACTION,
    TEXT_DOCUMENT_COMPLETION,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_DOCUMENT_SYMBOL,
    TEXT_DOCUMENT_FORMATTING,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_REFERENCES,
    TEXT_DOCUMENT_RENAME,
    TEXT_DOCUMENT_SIGNATURE_HELP,
    TextDocumentSyncKind,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zinclsp.errors import NegotiationError, ResponseError, SessionClosed
from zinclsp.servers.base import LanguageServerSpec
from zinclsp.transport.rpc import RpcSession
from zinclsp.utils.workspace import WorkspaceManager

# Server capability -> path of the matching client capability.
FEATURES: Dict[str, Tuple[str, ...]] = {
    "completionProvider": ("textDocument", "completion"),
    "hoverProvider": ("textDocument", "hover"),
    "signatureHelpProvider": ("textDocument", "signatureHelp"),
    "definitionProvider": ("textDocument", "definition"),
    "referencesProvider": ("textDocument", "references"),
    "documentSymbolProvider": ("textDocument", "documentSymbol"),
    "documentFormattingProvider": ("textDocument", "formatting"),
    "renameProvider": ("textDocument", "rename"),
    "codeActionProvider": ("textDocument", "codeAction"),
}

# Request method -> feature that must be negotiated before it is sent.
METHOD_FEATURES: Dict[str, str] = {
    TEXT_DOCUMENT_COMPLETION: "completionProvider",
    TEXT_DOCUMENT_HOVER: "hoverProvider",
    TEXT_DOCUMENT_SIGNATURE_HELP: "signatureHelpProvider",
    TEXT_DOCUMENT_DEFINITION: "definitionProvider",
    TEXT_DOCUMENT_REFERENCES: "referencesProvider",
    TEXT_DOCUMENT_DOCUMENT_SYMBOL: "documentSymbolProvider",
    TEXT_DOCUMENT_FORMATTING: "documentFormattingProvider",
    TEXT_DOCUMENT_RENAME: "renameProvider",
    TEXT_DOCUMENT_CODE_ACTION: "codeActionProvider",
}


class Capabilities(BaseModel):
    """Features usable in one session: the intersection of both sides.

    Immutable once negotiated.
    """

    model_config = ConfigDict(frozen=True)

    features: Dict[str, Any] = Field(default_factory=dict)
    sync_kind: TextDocumentSyncKind = TextDocumentSyncKind.Full
    open_close: bool = True
    server_name: Optional[str] = None
    server_version: Optional[str] = None

    def supports(self, feature: str) -> bool:
        return feature in self.features

    def get(self, feature: str) -> Any:
        return self.features.get(feature)

    def supports_method(self, method: str) -> bool:
        """Check whether a request method may be sent in this session.

        Methods without a gating capability are always allowed.
        """
        feature = METHOD_FEATURES.get(method)
        return feature is None or self.supports(feature)


def _client_declares(client: Mapping[str, Any], path: Tuple[str, ...]) -> bool:
    node: Any = client
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return False
        node = node[key]
    return node is not None and node is not False


def _parse_sync(value: Any) -> Tuple[TextDocumentSyncKind, bool]:
    if value is None:
        return TextDocumentSyncKind.None_, False
    if isinstance(value, bool):
        raise NegotiationError(f"Invalid textDocumentSync value: {value!r}")
    if isinstance(value, int):
        try:
            return TextDocumentSyncKind(value), True
        except ValueError as e:
            raise NegotiationError(f"Unknown textDocumentSync kind: {value!r}") from e
    if isinstance(value, dict):
        change = value.get("change", TextDocumentSyncKind.None_)
        try:
            kind = TextDocumentSyncKind(change)
        except ValueError as e:
            raise NegotiationError(f"Unknown textDocumentSync.change kind: {change!r}") from e
        return kind, bool(value.get("openClose", False))
    raise NegotiationError(f"Invalid textDocumentSync value: {value!r}")


def intersect(
    client: Mapping[str, Any],
    server: Mapping[str, Any],
    *,
    incremental_sync: bool = True,
    server_info: Optional[Mapping[str, Any]] = None,
) -> Capabilities:
    """Compute the capabilities both sides support.

    Args:
        client: Capabilities declared in `initialize`.
        server: The `capabilities` member of the initialize result.
        incremental_sync: Whether the client accepts incremental sync.
        server_info: The `serverInfo` member of the initialize result.

    Returns:
        The negotiated capabilities.

    Raises:
        NegotiationError: If the server capabilities are malformed.
    """
    features: Dict[str, Any] = {}
    for feature, client_path in FEATURES.items():
        value = server.get(feature)
        if value is None or value is False:
            continue
        if _client_declares(client, client_path):
            features[feature] = value

    sync_kind, open_close = _parse_sync(server.get("textDocumentSync"))
    if sync_kind == TextDocumentSyncKind.Incremental and not incremental_sync:
        sync_kind = TextDocumentSyncKind.Full

    info = server_info if isinstance(server_info, Mapping) else {}
    try:
        return Capabilities(
            features=features,
            sync_kind=sync_kind,
            open_close=open_close,
            server_name=info.get("name"),
            server_version=info.get("version"),
        )
    except ValidationError as e:
        raise NegotiationError(f"Invalid initialize result: {e}") from e


class CapabilityNegotiator:
    """Runs the initialize handshake on a fresh session."""

    def __init__(self, server: LanguageServerSpec, workspace: Optional[WorkspaceManager] = None):
        self.server = server
        self.workspace = workspace
        self.logger = logging.getLogger("zinclsp.capabilities")

    async def negotiate(self, session: RpcSession, timeout: Optional[float] = None) -> Capabilities:
        """Send `initialize`, compute the capability intersection, send `initialized`.

        Args:
            session: A session on which nothing has been requested yet.
            timeout: Seconds to wait for the initialize response.

        Returns:
            The negotiated capabilities.

        Raises:
            NegotiationError: The handshake failed or the result is unusable.
            RequestTimeout: The server did not answer in time.
        """
        if session.has_sent_requests:
            raise NegotiationError("initialize must be the first request on a connection")

        timeout = timeout or self.server.settings.initialize_timeout
        params = self.server.build_initialize_params(self.workspace)
        try:
            result = await session.call(INITIALIZE, params, timeout=timeout)
        except ResponseError as e:
            raise NegotiationError(f"Server rejected initialize: {e}") from e
        except SessionClosed as e:
            raise NegotiationError(f"Connection closed during initialize: {e}") from e

        if not isinstance(result, dict):
            raise NegotiationError(f"Initialize result is not an object: {result!r}")
        server_capabilities = result.get("capabilities")
        if not isinstance(server_capabilities, dict):
            raise NegotiationError("Initialize result is missing 'capabilities'")

        capabilities = intersect(
            params["capabilities"],
            server_capabilities,
            incremental_sync=self.server.settings.incremental_sync,
            server_info=result.get("serverInfo"),
        )

        try:
            await session.notify(INITIALIZED, {})
        except SessionClosed as e:
            raise NegotiationError(f"Connection closed after initialize: {e}") from e

        self.logger.info(
            f"Negotiated {self.server.language} capabilities: "
            f"sync={capabilities.sync_kind.name}, features={sorted(capabilities.features)}"
        )
        return capabilities
