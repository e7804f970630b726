# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any, Callable

import pytest

from gateway.backoff import BackoffPolicy
from gateway.client import GatewayClient
from gateway.connection_state import ConnectionState
from gateway.errors import (
    HandshakeRejected,
    NotConnected,
    RequestTimeout,
    TransportClosed,
    TransportUnavailable,
)
from gateway.turns import TurnTracker


class FakeSocket:
    """In-memory gateway socket that answers connect and chat.send."""

    def __init__(self, *, handshake_ok: bool = True) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._handshake_ok = handshake_ok
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        msg = json.loads(message)
        self.sent.append(msg)
        if msg["method"] == "connect":
            if self._handshake_ok:
                self.feed({"type": "res", "id": msg["id"], "ok": True, "payload": {}})
            else:
                self.feed({"type": "res", "id": msg["id"], "ok": False,
                           "error": {"message": "bad token"}})
        elif msg["method"] == "chat.send":
            self.feed({"type": "res", "id": msg["id"], "ok": True, "payload": {"status": "ok"}})

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def feed(self, obj: Any) -> None:
        self._inbox.put_nowait(obj if isinstance(obj, str) else json.dumps(obj))

    def start(self, run_id: str) -> None:
        self.feed({"type": "event", "event": "agent", "payload": {
            "runId": run_id, "stream": "lifecycle", "data": {"phase": "start"},
        }})

    def end(self, run_id: str) -> None:
        self.feed({"type": "event", "event": "agent", "payload": {
            "runId": run_id, "stream": "lifecycle", "data": {"phase": "end"},
        }})

    def final(self, run_id: str, text: str) -> None:
        self.feed({"type": "event", "event": "chat", "payload": {
            "runId": run_id, "state": "final",
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        }})

    def chat_messages(self) -> list[str]:
        return [m["params"]["message"] for m in self.sent if m["method"] == "chat.send"]

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class Connector:
    """Hands out FakeSockets; failures are consumed first."""

    def __init__(self, *, failures: int = 0, handshake_ok: bool = True) -> None:
        self.calls = 0
        self.sockets: list[FakeSocket] = []
        self._failures = failures
        self._handshake_ok = handshake_ok

    async def __call__(self, url: str) -> FakeSocket:
        self.calls += 1
        if self._failures > 0:
            self._failures -= 1
            raise OSError("connection refused")
        ws = FakeSocket(handshake_ok=self._handshake_ok)
        self.sockets.append(ws)
        return ws


def _client(connector: Connector, **kwargs: Any) -> GatewayClient:
    kwargs.setdefault("backoff", BackoffPolicy(base_ms=60_000, max_ms=120_000))
    return GatewayClient(
        url="ws://gateway.test",
        token="tok",
        session_key="agent:main:main",
        connector=connector,
        **kwargs,
    )


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


# ------------------------------------------------------------------
# End-to-end turns
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_offline_submit_returns_canned_reply_without_network():
    connector = Connector()
    client = _client(connector)

    reply = await client.submit_turn("hello")

    assert reply == "Hex offline - reconnecting..."
    assert connector.calls == 0


@pytest.mark.asyncio
async def test_hello_hi_there():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    assert client.state is ConnectionState.CONNECTED
    assert ws.sent[0]["method"] == "connect"
    assert ws.sent[0]["params"]["auth"] == {"token": "tok"}

    task = asyncio.create_task(client.submit_turn("hello", prefix="P: "))
    await _until(lambda: len(ws.chat_messages()) == 1)

    ws.start("R1")
    ws.final("R1", "hi there")

    assert await asyncio.wait_for(task, 1.0) == "hi there"
    assert ws.chat_messages() == ["P: hello"]
    assert ws.sent[1]["params"]["sessionKey"] == "agent:main:main"
    await client.close()


@pytest.mark.asyncio
async def test_concurrent_turns_match_in_submission_order():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    task_a = asyncio.create_task(client.submit_turn("a"))
    task_b = asyncio.create_task(client.submit_turn("b"))
    await _until(lambda: len(ws.chat_messages()) == 2)

    ws.start("R1")
    ws.start("R2")
    ws.final("R2", "reply-b")
    ws.final("R1", "reply-a")

    assert await asyncio.wait_for(task_a, 1.0) == "reply-a"
    assert await asyncio.wait_for(task_b, 1.0) == "reply-b"
    await client.close()


@pytest.mark.asyncio
async def test_lifecycle_end_without_final_resolves_empty():
    connector = Connector()
    tracker = TurnTracker(hard_timeout_reply="slow", end_grace_ms=10)
    client = _client(connector, turns=tracker)
    await client.connect()
    ws = connector.sockets[0]

    task = asyncio.create_task(client.submit_turn("quiet please"))
    await _until(lambda: len(ws.chat_messages()) == 1)
    ws.start("R1")
    ws.end("R1")

    assert await asyncio.wait_for(task, 1.0) == ""
    await client.close()


@pytest.mark.asyncio
async def test_cancel_all_releases_waiting_submitters():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    task = asyncio.create_task(client.submit_turn("a"))
    await _until(lambda: client.turns.unmatched_count == 1 and len(ws.chat_messages()) == 1)

    assert client.cancel_all() == 1
    assert await asyncio.wait_for(task, 1.0) == ""
    await client.close()


@pytest.mark.asyncio
async def test_chat_send_failure_returns_canned_reply_and_discards_turn():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    async def failing_send(message: str) -> None:
        msg = json.loads(message)
        ws.feed({"type": "res", "id": msg["id"], "ok": False, "error": "busy"})

    ws.send = failing_send  # type: ignore[method-assign]

    assert await client.submit_turn("hello") == "Failed to reach Hex"
    assert client.turns.unmatched_count == 0
    await client.close()


@pytest.mark.asyncio
async def test_send_raw_does_not_open_a_turn():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    await client.send_raw("/new")

    assert ws.chat_messages() == ["/new"]
    assert client.turns.unmatched_count == 0
    await client.close()


# ------------------------------------------------------------------
# Requests
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_request_when_disconnected_raises_not_connected():
    client = _client(Connector())

    with pytest.raises(NotConnected):
        await client.request("chat.send", {})


@pytest.mark.asyncio
async def test_socket_close_fails_pending_requests_and_schedules_reconnect():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    pending = asyncio.create_task(client.request("sessions.list", {}))
    await _until(lambda: len(ws.sent) == 2)
    await ws.close()

    with pytest.raises(TransportClosed):
        await asyncio.wait_for(pending, 1.0)
    await _until(lambda: client.state is ConnectionState.RECONNECT_SCHEDULED)
    assert client.snapshot()["reconnect_scheduled"] is True

    await client.close()
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_request_timeout():
    connector = Connector()
    client = _client(connector, request_timeout_ms=10)
    await client.connect()

    with pytest.raises(RequestTimeout):
        await client.request("sessions.list", {})

    assert client.snapshot()["pending_requests"] == []
    await client.close()


@pytest.mark.asyncio
async def test_malformed_lines_are_dropped_and_connection_survives():
    connector = Connector()
    client = _client(connector)
    await client.connect()
    ws = connector.sockets[0]

    ws.feed("this is not json")
    ws.feed({"type": "mystery"})
    await client.send_raw("/still-alive")

    assert client.is_connected
    await client.close()


# ------------------------------------------------------------------
# Connection lifecycle
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_failure_raises_and_schedules_backoff():
    connector = Connector(failures=1)
    client = _client(connector, backoff=BackoffPolicy(base_ms=5_000, max_ms=60_000))

    with pytest.raises(TransportUnavailable):
        await client.connect()

    snap = client.snapshot()
    assert client.state is ConnectionState.RECONNECT_SCHEDULED
    assert snap["reconnect_failures"] == 1
    assert snap["next_reconnect_delay_ms"] == 10_000
    await client.close()


@pytest.mark.asyncio
async def test_rejected_handshake_raises_handshake_rejected():
    connector = Connector(handshake_ok=False)
    client = _client(connector)

    with pytest.raises(HandshakeRejected):
        await client.connect()

    assert connector.sockets[0].closed
    assert client.state is ConnectionState.RECONNECT_SCHEDULED
    await client.close()


@pytest.mark.asyncio
async def test_backoff_resets_after_successful_reconnect():
    connector = Connector(failures=2)
    client = _client(connector, backoff=BackoffPolicy(base_ms=5, max_ms=50))

    with pytest.raises(TransportUnavailable):
        await client.connect()

    await _until(lambda: client.is_connected)

    assert connector.calls == 3
    assert client.snapshot()["reconnect_failures"] == 0
    assert client.snapshot()["next_reconnect_delay_ms"] == 5
    await client.close()


@pytest.mark.asyncio
async def test_close_disables_reconnect():
    connector = Connector()
    client = _client(connector, backoff=BackoffPolicy(base_ms=5, max_ms=50))
    await client.connect()

    await client.close()
    await asyncio.sleep(0.03)

    assert client.state is ConnectionState.DISCONNECTED
    assert connector.calls == 1
    assert connector.sockets[0].closed
