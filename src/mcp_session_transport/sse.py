"""
Server-Sent Events push channel for the session transport.

The SSE logic here only talks to a `PushChannel` (enqueue bytes, close, get told
about client cancellation), so it does not depend on any particular HTTP
framework's streaming response type. `MemoryPushChannel` is the implementation
used with Starlette: its `stream()` generator is handed to a `StreamingResponse`.

The heartbeat is driven by an injected `Scheduler` so that tests can fire ticks
deterministically.
"""

from collections.abc import AsyncIterator, Callable
from typing import Protocol

import anyio
from anyio.abc import TaskGroup
from sse_starlette import ServerSentEvent

from mcp_session_transport.utilities.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_BUFFER_SIZE = 100

CONNECTED_MESSAGE = "Connected to MCP server"
PING_EVENT = "ping"


class PushChannel(Protocol):
    """Minimal outbound byte stream an `SSEChannel` writes to."""

    def enqueue(self, chunk: bytes) -> None: ...

    def close(self) -> None: ...

    def on_cancel(self, callback: Callable[[], None]) -> None: ...


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback periodically until the returned handle is cancelled."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> Cancellable: ...


class TaskGroupScheduler:
    """Scheduler that runs each periodic callback as a task in an anyio task group."""

    def __init__(self, task_group: TaskGroup):
        self._task_group = task_group

    def call_every(self, interval: float, callback: Callable[[], None]) -> anyio.CancelScope:
        scope = anyio.CancelScope()

        async def run() -> None:
            with scope:
                while True:
                    await anyio.sleep(interval)
                    callback()

        self._task_group.start_soon(run)
        return scope


class MemoryPushChannel:
    """PushChannel backed by a bounded anyio memory stream.

    The HTTP layer drains it through `stream()`. If the consumer goes away
    before the channel was closed from our side (client disconnect), the
    registered cancel callbacks run.
    """

    def __init__(self, max_buffer_size: int = DEFAULT_BUFFER_SIZE):
        self._send_stream, self._receive_stream = anyio.create_memory_object_stream[bytes](max_buffer_size)
        self._cancel_callbacks: list[Callable[[], None]] = []
        self._closed = False

    def enqueue(self, chunk: bytes) -> None:
        # Raises anyio.WouldBlock when the client is not keeping up, and
        # ClosedResourceError / BrokenResourceError once either end is gone.
        self._send_stream.send_nowait(chunk)

    def close(self) -> None:
        self._closed = True
        self._send_stream.close()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        self._cancel_callbacks.append(callback)

    async def stream(self) -> AsyncIterator[bytes]:
        drained = False
        try:
            async with self._receive_stream:
                async for chunk in self._receive_stream:
                    yield chunk
            drained = True
        finally:
            if not drained and not self._closed:
                logger.debug("SSE stream cancelled by client")
                for callback in self._cancel_callbacks:
                    callback()


def encode_event(data: str, event: str | None = None) -> bytes:
    """Encode one SSE event as ``event: <event>\\n`` (when named) then ``data: <data>\\n\\n``."""
    return ServerSentEvent(data, event=event, sep="\n").encode()


class SSEChannel:
    """Outbound SSE stream of a single session.

    Args:
        channel: the push channel the encoded events are written to
        scheduler: drives the heartbeat
        heartbeat_interval: seconds between ``ping`` events
        on_cancel: invoked once when the client disconnects
    """

    def __init__(
        self,
        channel: PushChannel,
        scheduler: Scheduler,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        on_cancel: Callable[[], None] | None = None,
    ):
        self._channel = channel
        self._scheduler = scheduler
        self._heartbeat_interval = heartbeat_interval
        self._on_cancel = on_cancel
        self._heartbeat: Cancellable | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        self._channel.on_cancel(self._handle_cancel)
        self.send_message(CONNECTED_MESSAGE)
        self._heartbeat = self._scheduler.call_every(self._heartbeat_interval, self._ping)

    def send_message(self, data: str, event: str | None = None) -> None:
        if self._closed:
            return
        try:
            self._channel.enqueue(encode_event(data, event))
        except Exception:
            logger.exception("Error sending SSE message")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_heartbeat()
        try:
            self._channel.close()
        except Exception:
            logger.exception("Error closing SSE channel")

    def _ping(self) -> None:
        self.send_message(PING_EVENT, PING_EVENT)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def _handle_cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_heartbeat()
        if self._on_cancel is not None:
            self._on_cancel()
