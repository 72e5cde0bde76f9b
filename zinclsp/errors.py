"""Error types raised by the Zinc language client."""

from typing import Any, Dict, Optional


class ZincLspError(Exception):
    """Base class for all language client errors."""


class SpawnError(ZincLspError):
    """The server executable could not be started."""


class MalformedFrame(ZincLspError):
    """A frame on the wire could not be decoded. Fatal for the connection."""


class ProtocolError(ZincLspError):
    """The server sent a message that is neither a request, response nor notification."""


class ConnectionLost(ZincLspError):
    """The server closed its end of the connection."""


class NegotiationError(ZincLspError):
    """The initialize handshake failed or returned an unusable result."""


class RequestTimeout(ZincLspError):
    """No response arrived for a request before its deadline."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request {method!r} timed out after {timeout}s")


class SessionClosed(ZincLspError):
    """The session is not running, so the request cannot be served."""


class SessionCrashed(ZincLspError):
    """The server kept crashing and the session gave up.

    Attributes:
        reason: The last failure observed before giving up.
    """

    def __init__(self, reason: Optional[BaseException]):
        self.reason = reason
        super().__init__(f"Language server crashed: {reason}")


class OutOfOrderEdit(ZincLspError):
    """A document change carried a version not greater than the last accepted one."""


class UnknownDocument(ZincLspError, KeyError):
    """The document is not open."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class DocumentAlreadyOpen(ZincLspError):
    """The document was opened twice without being closed in between."""


class UnsupportedDocument(ZincLspError):
    """The file does not belong to the server's language."""


class CapabilityNotSupported(ZincLspError):
    """The negotiated capabilities do not include the requested feature."""


class ResponseError(ZincLspError):
    """Error payload returned by the server for a request.

    Attributes:
        code: JSON-RPC error code.
        message: Error message from the server.
        data: Optional additional data.
    """

    def __init__(self, error_payload: Dict[str, Any]):
        self.code = error_payload.get("code", "Unknown")
        self.message = error_payload.get("message", "Unknown error")
        self.data = error_payload.get("data")
        super().__init__(f"LSP Error Code {self.code}: {self.message}")
