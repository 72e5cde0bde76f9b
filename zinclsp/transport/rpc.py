"""JSON-RPC session over a framed duplex stream."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeAlias, Union

from lsprotocol.types import CANCEL_REQUEST, ErrorCodes

from zinclsp.errors import (
    ConnectionLost,
    MalformedFrame,
    ProtocolError,
    RequestTimeout,
    ResponseError,
    SessionClosed,
    ZincLspError,
)
from zinclsp.transport.framing import MessageDecoder, encode_message

NotificationHandler: TypeAlias = Callable[[Any], None]
RequestHandler: TypeAlias = Callable[[Any], Union[Any, Awaitable[Any]]]
FailureCallback: TypeAlias = Callable[[ZincLspError], None]

READ_CHUNK_SIZE = 65536
DEFAULT_REQUEST_TIMEOUT = 10.0


@dataclass
class PendingRequest:
    """A request waiting for its response."""

    request_id: int
    method: str
    params: Any
    future: asyncio.Future
    deadline: float
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def resolve(self, result: Any) -> None:
        if self.timer:
            self.timer.cancel()
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, error: BaseException) -> None:
        if self.timer:
            self.timer.cancel()
        if not self.future.done():
            self.future.set_exception(error)


class RpcSession:
    """Correlates requests and responses over one connection.

    A single reader task decodes incoming frames and dispatches them one at a
    time: responses resolve their pending request, notifications go to
    subscribers, and server requests go to the registered handler. Any
    session-level failure (malformed frame, protocol violation, lost
    connection) closes the session and is reported through `on_failure`.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        notify_cancel: bool = True,
        on_failure: Optional[FailureCallback] = None,
    ):
        """Initialize the session.

        Args:
            reader: Stream delivering the server's output.
            writer: Stream writer feeding the server's input.
            default_timeout: Timeout in seconds for calls that do not pass one.
            notify_cancel: Send `$/cancelRequest` when a call is cancelled.
            on_failure: Called once with the error that broke the session.
        """
        self.logger = logging.getLogger("zinclsp.rpc")
        self.default_timeout = default_timeout
        self.notify_cancel = notify_cancel
        self.on_failure = on_failure
        self.discarded_responses = 0

        self._reader = reader
        self._writer = writer
        self._decoder = MessageDecoder()
        self._next_request_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._subscribers: Dict[str, List[NotificationHandler]] = {}
        self._request_handlers: Dict[str, RequestHandler] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._close_reason: Optional[BaseException] = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def has_sent_requests(self) -> bool:
        return self._next_request_id > 1

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the reader task. Must be called from the event loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(), name="zinclsp-rpc-reader")

    # Outgoing traffic

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for its result.

        Args:
            method: The LSP method to call.
            params: Parameters for the method.
            timeout: Seconds to wait for the response.

        Returns:
            The `result` member of the response.

        Raises:
            ResponseError: The server answered with an error.
            RequestTimeout: No response arrived in time.
            SessionClosed: The session closed before a response arrived.
        """
        if self._closed:
            raise self._closed_error()

        loop = asyncio.get_running_loop()
        timeout = self.default_timeout if timeout is None else timeout
        request_id = self._next_request_id
        self._next_request_id += 1

        pending = PendingRequest(
            request_id=request_id,
            method=method,
            params=params,
            future=loop.create_future(),
            deadline=loop.time() + timeout,
        )
        pending.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = pending

        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        try:
            await self._send(request)
            return await pending.future
        except asyncio.CancelledError:
            self._abandon(request_id)
            raise
        except Exception:
            # Write or encoding failed, or the session closed while waiting.
            if self._pending.pop(request_id, None) is not None:
                if pending.timer:
                    pending.timer.cancel()
                pending.future.cancel()
            raise

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification. No response is expected.

        Raises:
            SessionClosed: The session is closed.
        """
        if self._closed:
            raise self._closed_error()
        notification: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            notification["params"] = params
        await self._send(notification)

    async def _send(self, message: Dict[str, Any]) -> None:
        self.logger.debug(f"Sending LSP message: {message}")
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except ConnectionError as e:
            raise SessionClosed(f"Cannot write to server: {e}") from e

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        self.logger.warning(f"Request {pending.method!r} (id {request_id}) timed out after {timeout}s")
        pending.fail(RequestTimeout(pending.method, timeout))

    def _abandon(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        if pending.timer:
            pending.timer.cancel()
        self.logger.debug(f"Request {pending.method!r} (id {request_id}) cancelled by caller")
        if self._closed or not self.notify_cancel:
            return
        # Best effort.
        message = {"jsonrpc": "2.0", "method": CANCEL_REQUEST, "params": {"id": request_id}}
        try:
            self._writer.write(encode_message(message))
        except ConnectionError as e:
            self.logger.debug(f"Could not send cancellation for id {request_id}: {e}")

    # Incoming traffic

    def subscribe(self, method: str, handler: NotificationHandler) -> Callable[[], None]:
        """Register a handler for a server notification.

        Args:
            method: Notification method name.
            handler: Called with the notification params.

        Returns:
            A function that removes the handler again.
        """
        handlers = self._subscribers.setdefault(method, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Register the handler answering a server-initiated request.

        The handler receives the params and returns the result, directly or
        as an awaitable. Raising `ResponseError` answers with that error.
        """
        self._request_handlers[method] = handler

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                data = await self._reader.read(READ_CHUNK_SIZE)
                if not data:
                    self._fail(ConnectionLost("Server closed the connection"))
                    return
                for message in self._decoder.feed(data):
                    self._dispatch(message)
                    if self._closed:
                        return
        except MalformedFrame as e:
            self._fail(e)
        except ConnectionError as e:
            self._fail(ConnectionLost(f"Connection error: {e}"))

    def _dispatch(self, message: Dict[str, Any]) -> None:
        self.logger.debug(f"Received LSP message: {message}")
        method = message.get("method")

        if method is None:
            if "id" in message and ("result" in message or "error" in message):
                self._handle_response(message)
            else:
                self._fail(ProtocolError(f"Message is neither request, response nor notification: {message}"))
            return

        if not isinstance(method, str):
            self._fail(ProtocolError(f"Invalid method name: {method!r}"))
            return

        if "id" in message:
            task = asyncio.get_running_loop().create_task(
                self._answer_request(message["id"], method, message.get("params"))
            )
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        else:
            self._handle_notification(method, message.get("params"))

    def _handle_response(self, message: Dict[str, Any]) -> None:
        request_id = message["id"]
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)

        # bool is an int subclass; `true` is not a request id.
        is_id = isinstance(request_id, int) and not isinstance(request_id, bool)
        pending = self._pending.pop(request_id, None) if is_id else None
        if pending is None:
            self.discarded_responses += 1
            self.logger.warning(f"UnexpectedResponse: no pending request with id {message['id']!r}, discarding")
            return

        error = message.get("error")
        if error is not None:
            payload = error if isinstance(error, dict) else {"message": str(error)}
            pending.fail(ResponseError(payload))
        else:
            pending.resolve(message.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        handlers = self._subscribers.get(method)
        if not handlers:
            self.logger.debug(f"No subscriber for notification {method!r}")
            return
        for handler in list(handlers):
            try:
                handler(params)
            except Exception:
                self.logger.exception(f"Notification handler for {method!r} failed")

    async def _answer_request(self, request_id: Any, method: str, params: Any) -> None:
        handler = self._request_handlers.get(method)
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if handler is None:
            self.logger.debug(f"No handler for server request {method!r}")
            response["error"] = {"code": ErrorCodes.MethodNotFound.value, "message": f"Unhandled method {method}"}
        else:
            try:
                result = handler(params)
                if inspect.isawaitable(result):
                    result = await result
                response["result"] = result
            except ResponseError as e:
                response["error"] = {"code": e.code, "message": e.message, "data": e.data}
            except Exception as e:
                self.logger.exception(f"Handler for server request {method!r} failed")
                response["error"] = {"code": ErrorCodes.InternalError.value, "message": str(e)}

        if self._closed:
            return
        try:
            await self._send(response)
        except SessionClosed as e:
            self.logger.debug(f"Could not answer server request {method!r}: {e}")

    # Shutdown

    def _fail(self, error: ZincLspError) -> None:
        if self._closed:
            return
        self.logger.warning(f"Session failed: {error}")
        self.close(error)
        if self.on_failure:
            self.on_failure(error)

    def fail_pending(self, error: BaseException) -> int:
        """Fail every outstanding request without closing the session.

        Late responses for these requests are discarded as unexpected.

        Returns:
            Number of requests failed.
        """
        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            pending.fail(error)
        return len(pending_requests)

    def close(self, reason: Optional[BaseException] = None) -> None:
        """Close the session and fail every pending request with `SessionClosed`.

        Idempotent. The underlying streams belong to the process supervisor
        and are left alone.
        """
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            pending.fail(self._closed_error())
        if pending_requests:
            self.logger.info(f"Failed {len(pending_requests)} pending request(s) on session close")

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._reader_task and self._reader_task is not current:
            self._reader_task.cancel()
        for task in list(self._handler_tasks):
            if task is not current:
                task.cancel()

    def _closed_error(self) -> SessionClosed:
        message = "Session is closed"
        if self._close_reason is not None:
            message = f"Session is closed: {self._close_reason}"
        error = SessionClosed(message)
        error.__cause__ = self._close_reason
        return error
