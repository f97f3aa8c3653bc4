"""
Correlation of inbound JSON-RPC requests with the responses their handlers send.

Each request registers a one-slot memory stream under its id before the handler
runs. The transport routes any outgoing response carrying that id into the
stream, and the waiting POST turns it into the HTTP response body. A handler
that outlives its request, because the wait timed out or the transport closed,
is cancelled.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectSendStream

from mcp_session_transport.exceptions import DuplicateRequestError, RequestTimeoutError
from mcp_session_transport.types import (
    METHOD_NOT_FOUND,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    dump_message,
    is_notification,
    is_request,
    response_id,
)
from mcp_session_transport.utilities.logging import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[JSONRPCMessage], Awaitable[None] | None]

# A waiter receives either the response payload or the exception that ended the request.
PendingResult = dict[str, Any] | BaseException


@dataclass
class _PendingRequest:
    """Waiter for one in-flight request and the scope its handler runs in."""

    send_stream: MemoryObjectSendStream[PendingResult]
    handler_scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)


def method_not_found(message: Any) -> dict[str, Any]:
    request_id = message.get("id", 0) if isinstance(message, dict) else 0
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"},
    }


class MessageBridge:
    """Runs inbound messages through a handler and waits for request responses.

    Args:
        task_group: task group the handlers are started in
        request_timeout: seconds to wait for a response; None waits forever
    """

    def __init__(self, task_group: TaskGroup, request_timeout: float | None = None):
        self._task_group = task_group
        self._request_timeout = request_timeout
        self._pending: dict[RequestId, _PendingRequest] = {}

    @property
    def pending_ids(self) -> list[RequestId]:
        return list(self._pending)

    async def process_message(self, message: Any, handler: MessageHandler | None) -> dict[str, Any] | None:
        """Hand `message` to `handler`.

        Returns the response payload for requests, None for notifications, and a
        "Method not found" error envelope for anything else.
        """
        if handler is None:
            return method_not_found(message)

        if is_notification(message):
            notification = JSONRPCNotification.model_validate(message)
            self._task_group.start_soon(self._run_notification, handler, notification)
            return None

        if not is_request(message):
            return method_not_found(message)

        request = JSONRPCRequest.model_validate(message)
        if request.id in self._pending:
            raise DuplicateRequestError(request.id)

        send_stream, receive_stream = anyio.create_memory_object_stream[PendingResult](1)
        pending = _PendingRequest(send_stream)
        self._pending[request.id] = pending
        try:
            self._task_group.start_soon(self._run_request, handler, request, pending.handler_scope)
            with anyio.fail_after(self._request_timeout):
                result = await receive_stream.receive()
        except TimeoutError:
            logger.warning(f"No response to request {request.id!r} ({request.method}) within {self._request_timeout}s")
            pending.handler_scope.cancel()
            raise RequestTimeoutError(request.id, self._request_timeout) from None
        finally:
            self._pending.pop(request.id, None)
            send_stream.close()
            receive_stream.close()

        if isinstance(result, BaseException):
            raise result
        return result

    def resolve(self, response: JSONRPCResponse | dict[str, Any]) -> bool:
        """Deliver `response` to the request waiting on its id.

        Returns False when no request with that id is waiting.
        """
        request_id = response_id(response)
        if request_id is None:
            return False
        return self._deliver(request_id, dump_message(response))

    def fail_all(self, exc: BaseException) -> None:
        """Fail every in-flight request with `exc` and cancel its handler."""
        for request_id, pending in list(self._pending.items()):
            pending.handler_scope.cancel()
            self._deliver(request_id, exc)

    def _deliver(self, request_id: RequestId, result: PendingResult) -> bool:
        pending = self._pending.get(request_id)
        if pending is None:
            return False
        try:
            pending.send_stream.send_nowait(result)
        except anyio.WouldBlock:
            logger.debug(f"Request {request_id!r} already has a response; ignoring duplicate")
            return False
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            return False
        return True

    async def _run_request(self, handler: MessageHandler, request: JSONRPCRequest, scope: anyio.CancelScope) -> None:
        with scope:
            try:
                await _invoke(handler, request)
            except Exception as exc:
                logger.exception(f"Handler error for request {request.id!r} ({request.method})")
                self._deliver(request.id, exc)
        if scope.cancelled_caught:
            logger.debug(f"Handler for request {request.id!r} ({request.method}) was cancelled")

    async def _run_notification(self, handler: MessageHandler, notification: JSONRPCNotification) -> None:
        try:
            await _invoke(handler, notification)
        except Exception:
            logger.exception(f"Notification handler error ({notification.method})")


async def _invoke(handler: MessageHandler, message: JSONRPCMessage) -> None:
    result = handler(message)
    if inspect.isawaitable(result):
        await result
