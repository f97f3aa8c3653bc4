"""Tests for the session transport's POST and SSE endpoints."""

import json
import uuid
from collections.abc import AsyncIterator
from typing import Any, cast

import anyio
import pytest
from anyio.abc import TaskGroup
from starlette.responses import StreamingResponse

from mcp_session_transport.auth import AuthConfig
from mcp_session_transport.exceptions import TransportClosedError
from mcp_session_transport.transport import DEFAULT_MAX_BODY_BYTES, Transport, TransportState, generate_session_id
from mcp_session_transport.types import JSONRPCMessage, JSONRPCRequest
from tests.test_helpers import ManualScheduler, make_request

pytestmark = pytest.mark.anyio

SESSION_ID = "session-1"
AUTH = AuthConfig(required=True, api_key="abc123")

CONNECTED = b"data: Connected to MCP server\n\n"
PING = b"event: ping\ndata: ping\n\n"


def make_transport(tg: TaskGroup, scheduler: ManualScheduler, session_id: str | None = SESSION_ID, **kwargs: Any):
    return Transport(session_id, task_group=tg, scheduler=scheduler, **kwargs)


def answer_with(transport: Transport, result: Any):
    async def on_message(message: JSONRPCMessage) -> None:
        if isinstance(message, JSONRPCRequest):
            await transport.send({"jsonrpc": "2.0", "id": message.id, "result": result})

    return on_message


def open_stream(transport: Transport, **headers: str) -> AsyncIterator[bytes]:
    response = transport.handle_get_request(make_request("GET", headers=headers))
    assert isinstance(response, StreamingResponse)
    return cast(AsyncIterator[bytes], response.body_iterator)


async def test_post_request_returns_handler_response(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    transport.on_message = answer_with(transport, "ok")

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )

    assert response.status_code == 200
    assert json.loads(response.body) == {"jsonrpc": "2.0", "id": 1, "result": "ok"}
    assert response.headers["mcp-session-id"] == SESSION_ID
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
    assert response.headers["access-control-allow-headers"] == "Content-Type, mcp-session-id, Authorization"


async def test_post_without_session_id_omits_header(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, session_id=None)
    transport.on_message = answer_with(transport, {})

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )

    assert response.status_code == 200
    assert "mcp-session-id" not in response.headers


async def test_post_notification_returns_null(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    calls: list[JSONRPCMessage] = []
    handled = anyio.Event()

    def on_message(message: JSONRPCMessage) -> None:
        calls.append(message)
        handled.set()

    transport.on_message = on_message

    response = await transport.handle_post_request(make_request(json_body={"jsonrpc": "2.0", "method": "foo"}))
    with anyio.fail_after(1):
        await handled.wait()
    await anyio.sleep(0.01)

    assert response.status_code == 200
    assert response.body == b"null"
    assert len(calls) == 1


async def test_post_without_handler_returns_method_not_found(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 4})
    )

    assert response.status_code == 200
    assert json.loads(response.body) == {
        "jsonrpc": "2.0",
        "id": 4,
        "error": {"code": -32601, "message": "Method not found"},
    }


async def test_post_invalid_json_returns_internal_error(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    errors: list[Exception] = []
    transport.on_error = errors.append

    response = await transport.handle_post_request(make_request(body=b"{not json"))

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body["error"]["code"] == -32603
    assert body["id"] is None
    assert response.headers["access-control-allow-origin"] == "*"
    assert len(errors) == 1


async def test_post_handler_exception_returns_internal_error(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)

    async def on_message(message: JSONRPCMessage) -> None:
        raise RuntimeError("database unavailable")

    transport.on_message = on_message

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )

    assert response.status_code == 500
    assert json.loads(response.body)["error"] == {"code": -32603, "message": "database unavailable"}


async def test_post_unauthorized(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    transport.on_message = answer_with(transport, "ok")

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1}, headers={"Authorization": "Bearer no"}),
        AUTH,
    )

    assert response.status_code == 401
    assert json.loads(response.body)["error"]["code"] == -32600


async def test_post_authorized(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    transport.on_message = answer_with(transport, "ok")

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1}, headers={"Authorization": "abc123"}),
        AUTH,
    )

    assert response.status_code == 200


async def test_post_body_too_large(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, max_body_bytes=10)

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1, "params": {"x": "y" * 100}})
    )

    assert response.status_code == 413
    assert json.loads(response.body) == {
        "jsonrpc": "2.0",
        "error": {"code": -32600, "message": "Request body is larger than 10 bytes"},
        "id": None,
    }
    assert response.headers["access-control-allow-origin"] == "*"


async def test_post_declared_length_over_limit_is_refused_unread(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, max_body_bytes=10)
    calls: list[JSONRPCMessage] = []
    transport.on_message = calls.append

    response = await transport.handle_post_request(
        make_request(body_chunks=[b"{}"], headers={"content-length": "5000"})
    )

    assert response.status_code == 413
    assert calls == []


async def test_post_streamed_body_over_limit(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, max_body_bytes=20)
    body = json.dumps({"jsonrpc": "2.0", "method": "foo", "id": 1}).encode()

    response = await transport.handle_post_request(make_request(body_chunks=[body[:15], body[15:]]))

    assert response.status_code == 413


async def test_post_chunked_body_within_limit(tg: TaskGroup, scheduler: ManualScheduler):
    body = json.dumps({"jsonrpc": "2.0", "method": "foo", "id": 1}).encode()
    transport = make_transport(tg, scheduler, max_body_bytes=len(body))
    transport.on_message = answer_with(transport, "ok")

    response = await transport.handle_post_request(
        make_request(body_chunks=[body[:10], body[10:20], body[20:]], headers={"content-length": "not-a-number"})
    )

    assert response.status_code == 200
    assert json.loads(response.body)["result"] == "ok"


async def test_post_without_body_limit(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, max_body_bytes=None)
    transport.on_message = answer_with(transport, "ok")
    padding = "x" * (DEFAULT_MAX_BODY_BYTES + 1)

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1, "params": {"padding": padding}})
    )

    assert response.status_code == 200


async def test_non_positive_body_limit_is_rejected(tg: TaskGroup, scheduler: ManualScheduler):
    with pytest.raises(ValueError, match="max_body_bytes must be positive or None"):
        make_transport(tg, scheduler, max_body_bytes=0)


async def test_post_times_out_when_handler_never_responds(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, request_timeout=0.05)
    transport.on_message = lambda message: None

    with anyio.fail_after(2):
        response = await transport.handle_post_request(
            make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
        )

    assert response.status_code == 500
    assert "Timed out" in json.loads(response.body)["error"]["message"]


async def test_timed_out_handler_is_cancelled(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, request_timeout=0.05)
    cancelled = anyio.Event()

    async def on_message(message: JSONRPCMessage) -> None:
        try:
            await anyio.sleep_forever()
        except anyio.get_cancelled_exc_class():
            cancelled.set()
            raise

    transport.on_message = on_message

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )

    assert response.status_code == 500
    with anyio.fail_after(1):
        await cancelled.wait()


async def test_close_releases_in_flight_post(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    started = anyio.Event()

    def on_message(message: JSONRPCMessage) -> None:
        started.set()

    transport.on_message = on_message

    async def close_when_started() -> None:
        await started.wait()
        await transport.close()

    tg.start_soon(close_when_started)
    with anyio.fail_after(2):
        response = await transport.handle_post_request(
            make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
        )

    assert response.status_code == 500
    assert json.loads(response.body)["error"]["message"] == "Transport is closed"


async def test_post_after_close_returns_internal_error(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    await transport.close()

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )

    assert response.status_code == 500


async def test_get_without_session_id_returns_400(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler, session_id=None)

    response = transport.handle_get_request(make_request("GET"))

    assert response.status_code == 400
    assert response.body == b"Session ID required for SSE"
    assert scheduler.timers == []


async def test_get_unauthorized(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)

    response = transport.handle_get_request(make_request("GET"), AUTH)

    assert response.status_code == 401
    assert not transport.sse_connected


async def test_get_after_close_is_rejected(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    await transport.close()

    response = transport.handle_get_request(make_request("GET"))

    assert response.status_code == 400


async def test_get_opens_event_stream(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)

    response = transport.handle_get_request(make_request("GET", headers={"Authorization": "Bearer abc123"}), AUTH)

    assert isinstance(response, StreamingResponse)
    assert response.status_code == 200
    assert response.headers["content-type"] == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["mcp-session-id"] == SESSION_ID
    assert transport.sse_connected
    assert [timer.interval for timer in scheduler.active] == [30.0]

    await transport.close()


async def test_stream_carries_connected_message_and_ping_events(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    events = open_stream(transport)

    await transport.send({"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}})
    scheduler.tick()
    await transport.close()

    chunks = [chunk async for chunk in events]

    assert chunks == [
        CONNECTED,
        b'event: message\ndata: {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}\n\n',
        PING,
    ]


async def test_close_stops_heartbeat_and_events(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    events = open_stream(transport)

    await transport.close()
    scheduler.tick()

    assert scheduler.active == []
    assert [chunk async for chunk in events] == [CONNECTED]
    assert transport.state is TransportState.CLOSED


async def test_response_to_pending_request_is_not_pushed_on_stream(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    events = open_stream(transport)

    async def on_message(message: JSONRPCMessage) -> None:
        assert isinstance(message, JSONRPCRequest)
        await transport.send({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
        await transport.send({"jsonrpc": "2.0", "id": message.id, "result": {}})

    transport.on_message = on_message

    response = await transport.handle_post_request(
        make_request(json_body={"jsonrpc": "2.0", "method": "foo", "id": 1})
    )
    await transport.close()

    assert json.loads(response.body) == {"jsonrpc": "2.0", "id": 1, "result": {}}
    chunks = [chunk async for chunk in events]
    assert len(chunks) == 2
    assert b"notifications/message" in chunks[1]


async def test_new_stream_replaces_previous_one(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    first = open_stream(transport)
    second = open_stream(transport)

    await transport.send({"jsonrpc": "2.0", "method": "notify"})
    await transport.close()

    assert [chunk async for chunk in first] == [CONNECTED]
    assert len([chunk async for chunk in second]) == 2
    assert scheduler.active == []


async def test_client_disconnect_closes_transport(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    closes: list[None] = []
    transport.on_close = lambda: closes.append(None)
    events = open_stream(transport)

    assert await anext(events) == CONNECTED
    await events.aclose()  # type: ignore[attr-defined]

    assert transport.closed
    assert scheduler.active == []
    assert closes == [None]

    await transport.close()
    assert closes == [None]


async def test_send_without_stream_is_noop(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)

    await transport.send({"jsonrpc": "2.0", "method": "notify"})

    assert not transport.sse_connected


async def test_send_after_close_raises(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    await transport.close()

    with pytest.raises(TransportClosedError):
        await transport.send({"jsonrpc": "2.0", "method": "notify"})


async def test_close_is_idempotent_and_calls_back_once(tg: TaskGroup, scheduler: ManualScheduler):
    transport = make_transport(tg, scheduler)
    closes: list[None] = []
    transport.on_close = lambda: closes.append(None)

    await transport.close()
    await transport.close()

    assert closes == [None]
    assert transport.state is TransportState.CLOSED


async def test_close_callback_errors_are_logged(
    tg: TaskGroup, scheduler: ManualScheduler, caplog: pytest.LogCaptureFixture
):
    transport = make_transport(tg, scheduler)

    def on_close() -> None:
        raise RuntimeError("callback failed")

    transport.on_close = on_close
    await transport.close()

    assert transport.closed
    assert "Error in close callback" in caplog.text


async def test_default_scheduler_sends_heartbeat(tg: TaskGroup):
    transport = Transport(SESSION_ID, task_group=tg, heartbeat_interval=0.01)
    events = cast(AsyncIterator[bytes], transport.handle_get_request(make_request("GET")).body_iterator)  # type: ignore[attr-defined]

    with anyio.fail_after(1):
        assert await anext(events) == CONNECTED
        assert await anext(events) == PING

    await transport.close()


async def test_generate_session_id():
    ids = {generate_session_id() for _ in range(100)}

    assert len(ids) == 100
    for session_id in ids:
        assert str(uuid.UUID(session_id)) == session_id
    assert Transport.generate_session_id() not in ids
