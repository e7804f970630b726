"""
Agent gateway client (correlation transport).

Responsibilities:
- Own the single duplex connection to the gateway
- Perform the versioned connect handshake
- Assign monotonic request ids and match responses to PendingRequests
- Feed run lifecycle / final events into the TurnTracker
- Reconnect with exponential backoff, indefinitely

Non-responsibilities:
- No display decisions
- No reply filtering (see gateway.replies)
- No automatic cancellation of turns on disconnect: a run may still
  complete after reconnect, so the owning layer decides (cancel_all)

Everything runs on one event loop; there is no locking. Every wait has a
paired, cancellable timer task.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from websockets.asyncio.client import connect as ws_connect

from constants import (
    CHAT_SEND_METHOD,
    CONNECT_METHOD,
    HARD_TIMEOUT_REPLY,
    OFFLINE_REPLY,
    REQUEST_ID_PREFIX,
    REQUEST_TIMEOUT_MS,
    SEND_FAILED_REPLY,
)
from gateway.backoff import (
    BackoffPolicy,
    ReconnectAttempt,
    get_reconnect_delay_ms,
    next_attempt,
    reset_attempt,
)
from gateway.connection_state import ConnectionState
from gateway.errors import (
    GatewayError,
    GatewayRequestFailed,
    HandshakeRejected,
    NotConnected,
    ProtocolError,
    RequestTimeout,
    TransportClosed,
    TransportUnavailable,
)
from gateway.protocol import (
    ChatFinal,
    LifecyclePhase,
    Response,
    RunLifecycle,
    build_chat_send_params,
    build_connect_params,
    decode_inbound,
    encode_request,
)
from gateway.turns import SoftTimeoutFn, TurnTracker
from observability.logger import log_event, now_ms
from observability.metrics import start_timer, stop_timer, timed


# ---------------------------------------------------------------------
# Socket seam
# ---------------------------------------------------------------------

class GatewaySocket(Protocol):
    """The slice of a websockets ClientConnection the client relies on."""

    async def send(self, message: str) -> None: ...
    async def close(self) -> None: ...
    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[GatewaySocket]]


async def _websocket_connector(url: str) -> GatewaySocket:
    return await ws_connect(url, max_size=2**22, ping_interval=None)


# ---------------------------------------------------------------------
# Pending request
# ---------------------------------------------------------------------

@dataclass(eq=False)
class PendingRequest:
    request_id: str
    method: str
    created_at_ms: int
    future: asyncio.Future[Any]
    timer: asyncio.Task[None] | None = field(default=None, repr=False)


# ---------------------------------------------------------------------
# GatewayClient
# ---------------------------------------------------------------------

class GatewayClient:
    """
    One client == one gateway connection, shared by every device session.

    Public surface:
    - connect() / close()
    - request(method, params)
    - submit_turn(message, prefix=..., on_soft_timeout=...)
    - send_raw(message)
    - cancel_all()
    - state / is_connected / snapshot()
    """

    def __init__(
        self,
        *,
        url: str,
        token: str,
        session_key: str,
        agent_name: str = "Hex",
        connector: Connector | None = None,
        backoff: BackoffPolicy | None = None,
        request_timeout_ms: int = REQUEST_TIMEOUT_MS,
        turns: TurnTracker | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._session_key = session_key
        self._connector: Connector = connector or _websocket_connector
        self._backoff = backoff or BackoffPolicy()
        self._request_timeout_ms = request_timeout_ms

        self._offline_reply = OFFLINE_REPLY.format(agent=agent_name)
        self._send_failed_reply = SEND_FAILED_REPLY.format(agent=agent_name)
        self._turns = turns or TurnTracker(
            hard_timeout_reply=HARD_TIMEOUT_REPLY.format(agent=agent_name),
        )

        self._state = ConnectionState.DISCONNECTED
        self._ws: GatewaySocket | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._should_reconnect = True
        self._attempt: ReconnectAttempt = reset_attempt()

        self._req_seq = 0
        self._pending: dict[str, PendingRequest] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def turns(self) -> TurnTracker:
        return self._turns

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "url": self._url,
            "pending_requests": sorted(self._pending),
            "reconnect_failures": self._attempt.failures,
            "next_reconnect_delay_ms": get_reconnect_delay_ms(
                policy=self._backoff, attempt=self._attempt
            ),
            "reconnect_scheduled": self._reconnect_task is not None
            and not self._reconnect_task.done(),
            "turns": self._turns.snapshot(),
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Connect and handshake.

        Raises:
            TransportUnavailable / HandshakeRejected / RequestTimeout when the
            attempt fails. A reconnect is already scheduled by then.
        """
        self._should_reconnect = True
        if self._state is ConnectionState.CONNECTED:
            return
        self._cancel_reconnect_timer()
        await self._connect_once()

    async def close(self) -> None:
        """Stop reconnecting, fail pending requests, close the socket."""
        self._should_reconnect = False
        self._cancel_reconnect_timer()

        ws = self._ws
        self._connection_lost(ws, "client_closed")
        self._set_state(ConnectionState.DISCONNECTED)
        if ws is not None:
            await _close_quietly(ws)

    async def _connect_once(self) -> None:
        self._set_state(ConnectionState.CONNECTING)

        try:
            ws = await self._connector(self._url)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "GATEWAY_CONNECT_FAILED",
                "url": self._url,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            self._connection_lost(None, "connect_failed")
            raise TransportUnavailable(f"connect to {self._url} failed: {exc!r}") from exc

        self._ws = ws
        self._recv_task = asyncio.create_task(self._recv_loop(ws))

        try:
            with timed("gateway_handshake"):
                await self._send_request(CONNECT_METHOD, build_connect_params(self._token))
        except GatewayRequestFailed as exc:
            log_event({
                "event_type": "GATEWAY_HANDSHAKE_REJECTED",
                "error": exc.error,
            })
            if self._connection_lost(ws, "handshake_rejected"):
                await _close_quietly(ws)
            raise HandshakeRejected(exc.error) from exc
        except GatewayError as exc:
            log_event({
                "event_type": "GATEWAY_HANDSHAKE_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            if self._connection_lost(ws, "handshake_failed"):
                await _close_quietly(ws)
            raise

        self._attempt = reset_attempt()
        self._set_state(ConnectionState.CONNECTED)
        log_event({
            "event_type": "GATEWAY_CONNECTED",
            "url": self._url,
        })

    def _connection_lost(self, ws: GatewaySocket | None, reason: str) -> bool:
        """
        Bookkeeping for a dead (or abandoned) socket.

        Returns False when `ws` is stale, i.e. a newer socket already
        replaced it; in that case nothing is touched.
        """
        if ws is not None and self._ws is not ws:
            return False

        self._ws = None
        recv = self._recv_task
        self._recv_task = None
        if recv is not None and recv is not asyncio.current_task() and not recv.done():
            recv.cancel()

        failed = self._fail_all_pending(reason)
        log_event({
            "event_type": "GATEWAY_CONNECTION_LOST",
            "reason": reason,
            "failed_requests": failed,
            "outstanding_turns": self._turns.unmatched_count + len(self._turns.matched_run_ids),
        })

        if self._should_reconnect:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        return True

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        delay_ms = get_reconnect_delay_ms(policy=self._backoff, attempt=self._attempt)
        self._attempt = next_attempt(self._attempt)
        self._set_state(ConnectionState.RECONNECT_SCHEDULED)

        log_event({
            "event_type": "GATEWAY_RECONNECT_SCHEDULED",
            "delay_ms": delay_ms,
            "consecutive_failures": self._attempt.failures,
        })
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: int) -> None:
        try:
            await asyncio.sleep(delay_ms / 1000.0)
        except asyncio.CancelledError:
            return

        self._reconnect_task = None
        try:
            await self._connect_once()
        except GatewayError as exc:
            # _connect_once has already scheduled the next attempt
            log_event({
                "event_type": "GATEWAY_RECONNECT_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    def _cancel_reconnect_timer(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        log_event({
            "event_type": "GATEWAY_STATE",
            "from": self._state.value,
            "to": state.value,
        })
        self._state = state

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: dict[str, Any]) -> Any:
        """
        Send one request and await its response payload.

        Raises:
            NotConnected: state is not CONNECTED (nothing is sent)
            RequestTimeout: no response within the request bound
            TransportClosed: the socket died first
            GatewayRequestFailed: the gateway answered ok=false
        """
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnected(f"gateway is {self._state.value}")
        return await self._send_request(method, params)

    async def _send_request(self, method: str, params: dict[str, Any]) -> Any:
        ws = self._ws
        if ws is None:
            raise NotConnected("no socket")

        self._req_seq += 1
        request_id = f"{REQUEST_ID_PREFIX}-{self._req_seq}"
        pending = PendingRequest(
            request_id=request_id,
            method=method,
            created_at_ms=now_ms(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request_id] = pending
        pending.timer = asyncio.create_task(self._request_timeout_task(pending))

        try:
            await ws.send(encode_request(request_id, method, params))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._settle_request(
                pending,
                error=TransportClosed(f"send failed for {request_id}: {exc!r}"),
            )

        with timed("gateway_request", details={"method": method}):
            return await pending.future

    async def _request_timeout_task(self, pending: PendingRequest) -> None:
        try:
            await asyncio.sleep(self._request_timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        pending.timer = None
        log_event({
            "event_type": "GATEWAY_REQUEST_TIMEOUT",
            "request_id": pending.request_id,
            "method": pending.method,
            "age_ms": now_ms() - pending.created_at_ms,
        })
        self._settle_request(
            pending,
            error=RequestTimeout(pending.request_id, pending.method),
        )

    def _settle_request(
        self,
        pending: PendingRequest,
        *,
        result: Any = None,
        error: BaseException | None = None,
    ) -> None:
        if self._pending.get(pending.request_id) is not pending:
            return
        del self._pending[pending.request_id]

        timer = pending.timer
        pending.timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

        if pending.future.done():
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)

    def _fail_all_pending(self, reason: str) -> int:
        pendings = list(self._pending.values())
        for pending in pendings:
            self._settle_request(
                pending,
                error=TransportClosed(f"{pending.request_id} aborted: {reason}"),
            )
        return len(pendings)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_turn(
        self,
        message: str,
        *,
        prefix: str = "",
        on_soft_timeout: SoftTimeoutFn | None = None,
    ) -> str:
        """
        Submit one conversational turn and await its reply text.

        Never raises for transport trouble:
        - disconnected -> canned offline reply, no network call
        - chat.send failed -> canned "failed to reach" reply
        - run ended without text -> ""
        - hard timeout -> canned "taking too long" reply
        """
        if not self.is_connected:
            log_event({
                "event_type": "TURN_OFFLINE",
                "state": self._state.value,
            })
            return self._offline_reply

        turn = self._turns.open_turn(on_soft_timeout=on_soft_timeout)
        timer_id = start_timer("turn_latency")

        try:
            await self.request(
                CHAT_SEND_METHOD,
                build_chat_send_params(
                    message=prefix + message,
                    session_key=self._session_key,
                    idempotency_key=f"{REQUEST_ID_PREFIX}-{now_ms()}-{turn.turn_id}",
                ),
            )
        except GatewayError as exc:
            log_event({
                "event_type": "TURN_SEND_FAILED",
                "turn_id": turn.turn_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            self._turns.discard(turn)
            stop_timer(timer_id, outcome="send_failed")
            return self._send_failed_reply
        except asyncio.CancelledError:
            self._turns.discard(turn)
            stop_timer(timer_id, outcome="caller_cancelled")
            raise

        try:
            text = await asyncio.shield(turn.future)
        except asyncio.CancelledError:
            self._turns.discard(turn)
            stop_timer(timer_id, outcome="caller_cancelled")
            raise

        stop_timer(
            timer_id,
            outcome=turn.outcome.value if turn.outcome else None,
            details={"turn_id": turn.turn_id, "run_id": turn.run_id},
        )
        return text

    async def send_raw(self, message: str) -> Any:
        """Fire a chat.send without tracking a turn (slash commands)."""
        return await self.request(
            CHAT_SEND_METHOD,
            build_chat_send_params(
                message=message,
                session_key=self._session_key,
                idempotency_key=f"{REQUEST_ID_PREFIX}-{now_ms()}-raw",
            ),
        )

    def cancel_all(self) -> int:
        """Resolve every outstanding turn with "" (superseded batches)."""
        return self._turns.cancel_all()

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    async def _recv_loop(self, ws: GatewaySocket) -> None:
        reason = "closed"
        try:
            async for raw in ws:
                text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
                for line in text.splitlines():
                    if line.strip():
                        self._handle_line(line)
        except asyncio.CancelledError:
            return
        except Exception as exc:  # pylint: disable=broad-exception-caught
            reason = f"recv_failed: {exc!r}"

        self._connection_lost(ws, reason)

    def _handle_line(self, line: str) -> None:
        try:
            msg = decode_inbound(line)
        except ProtocolError as exc:
            log_event({
                "event_type": "GATEWAY_PROTOCOL_ERROR",
                "error": str(exc),
                "payload_preview": line[:100],
            })
            return

        if isinstance(msg, Response):
            pending = self._pending.get(msg.request_id)
            if pending is None:
                log_event({
                    "event_type": "GATEWAY_RESPONSE_UNMATCHED",
                    "request_id": msg.request_id,
                })
                return
            if msg.ok:
                self._settle_request(pending, result=msg.payload)
            else:
                self._settle_request(
                    pending,
                    error=GatewayRequestFailed(msg.request_id, msg.error),
                )

        elif isinstance(msg, RunLifecycle):
            if msg.phase is LifecyclePhase.START:
                self._turns.on_run_start(msg.run_id)
            else:
                self._turns.on_run_end(msg.run_id)

        elif isinstance(msg, ChatFinal):
            self._turns.on_final(msg.run_id, msg.text)


async def _close_quietly(ws: GatewaySocket) -> None:
    try:
        await ws.close()
    except Exception as exc:  # pylint: disable=broad-exception-caught
        log_event({
            "event_type": "GATEWAY_CLOSE_FAILED",
            "exception": type(exc).__name__,
        })
