"""Content-Length framing for JSON-RPC messages over a byte stream."""

import codecs
import json
from typing import Any, Dict, Iterator, Optional

from zinclsp.errors import MalformedFrame

HEADER_SEPARATOR = b"\r\n\r\n"
DEFAULT_CHARSET = "utf-8"
# Upper bound for a header block still missing its separator.
MAX_HEADER_SIZE = 8192


def encode_message(message: Dict[str, Any]) -> bytes:
    """Encode a message as one frame.

    Args:
        message: The JSON-RPC envelope.

    Returns:
        Header and UTF-8 payload bytes.
    """
    content = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode(DEFAULT_CHARSET)
    header = f"Content-Length: {len(content)}\r\n\r\n".encode("ascii")
    return header + content


def _parse_header(header_blob: bytes) -> Dict[str, str]:
    try:
        header_text = header_blob.decode("ascii")
    except UnicodeDecodeError as e:
        raise MalformedFrame(f"Header is not ASCII: {header_blob!r}") from e

    headers: Dict[str, str] = {}
    for line in header_text.split("\r\n"):
        if not line:
            continue
        if ":" not in line:
            raise MalformedFrame(f"Invalid header line: {line!r}")
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


def _charset_from(content_type: Optional[str]) -> str:
    if not content_type:
        return DEFAULT_CHARSET
    for part in content_type.split(";")[1:]:
        key, _, value = part.partition("=")
        if key.strip().lower() == "charset":
            charset = value.strip().strip('"')
            # Legacy alias.
            if charset.lower() == "utf8":
                return DEFAULT_CHARSET
            try:
                codecs.lookup(charset)
            except LookupError as e:
                raise MalformedFrame(f"Unknown charset in Content-Type: {charset!r}") from e
            return charset
    return DEFAULT_CHARSET


class MessageDecoder:
    """Incremental decoder for `Content-Length` framed messages.

    Bytes can arrive with arbitrary chunk boundaries; incomplete headers and
    payloads are kept until the rest of the frame shows up. After a
    `MalformedFrame` the decoder refuses further input.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._expected_length: Optional[int] = None
        self._charset = DEFAULT_CHARSET
        self._failed: Optional[MalformedFrame] = None

    @property
    def buffered(self) -> int:
        """Number of bytes held back waiting for the rest of a frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[Dict[str, Any]]:
        """Buffer bytes and return the messages that are now complete.

        The data is buffered immediately; frames are decoded lazily as the
        returned iterator is consumed.

        Args:
            data: The next chunk read from the stream.

        Returns:
            Iterator over decoded message envelopes, in stream order.

        Raises:
            MalformedFrame: If a header or payload cannot be decoded, raised
                while iterating, or right away once the decoder has failed.
        """
        if self._failed is not None:
            raise MalformedFrame("Decoder is unusable after a malformed frame") from self._failed
        if data:
            self._buffer.extend(data)
        return self._drain()

    def _drain(self) -> Iterator[Dict[str, Any]]:
        while True:
            if self._expected_length is None:
                header_end = self._buffer.find(HEADER_SEPARATOR)
                if header_end < 0:
                    if len(self._buffer) > MAX_HEADER_SIZE:
                        self._fail(MalformedFrame("Header block exceeds maximum size without terminator"))
                    return

                header_blob = bytes(self._buffer[:header_end])
                del self._buffer[: header_end + len(HEADER_SEPARATOR)]
                try:
                    headers = _parse_header(header_blob)
                    self._expected_length = self._content_length(headers)
                    self._charset = _charset_from(headers.get("content-type"))
                except MalformedFrame as e:
                    self._fail(e)

            if len(self._buffer) < self._expected_length:
                return

            content = bytes(self._buffer[: self._expected_length])
            del self._buffer[: self._expected_length]
            self._expected_length = None

            yield self._decode_payload(content)

    def _content_length(self, headers: Dict[str, str]) -> int:
        raw_length = headers.get("content-length")
        if raw_length is None:
            raise MalformedFrame("Missing Content-Length header")
        if not raw_length.isdigit():
            raise MalformedFrame(f"Invalid Content-Length value: {raw_length!r}")
        return int(raw_length)

    def _decode_payload(self, content: bytes) -> Dict[str, Any]:
        try:
            message = json.loads(content.decode(self._charset))
        except (UnicodeDecodeError, ValueError) as e:
            self._fail(MalformedFrame(f"Payload is not valid JSON: {e}"))
        if not isinstance(message, dict):
            self._fail(MalformedFrame(f"Payload is not a JSON object: {type(message).__name__}"))
        return message

    def _fail(self, error: MalformedFrame) -> None:
        self._failed = error
        self._buffer.clear()
        self._expected_length = None
        raise error
