"""
Gateway WebSocket RPC client.

Holds one persistent connection to the reasoning gateway and multiplexes
request/response calls and server-pushed events over it.

Wire frames are JSON objects:
    {"type": "event", "event": <name>, "payload": ...}
    {"type": "req", "id": <uuid>, "method": <name>, "params": {...}}
    {"type": "res", "id": <uuid>, "ok": bool, "payload"|"result": ..., "error": {"code", "message"}}

Connection lifecycle:
    disconnected -> connecting -> awaiting-challenge -> connected
Any socket close goes back to disconnected and schedules a reconnect with
exponential backoff until the attempt budget runs out or destroy() is called.
"""

import asyncio
import json
import logging
import sys
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger("voxrelay.services.gateway_client")


class GatewayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting-challenge"
    CONNECTED = "connected"


class GatewayError(Exception):
    """Base exception for gateway client errors."""

    pass


class GatewayNotConnectedError(GatewayError):
    """Raised when a call is made without an active connection."""

    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class GatewayConnectError(GatewayError):
    """Raised when the socket cannot be opened."""

    pass


class GatewayConnectionClosedError(GatewayError):
    """Raised for calls (or a handshake) cut short by a socket close."""

    def __init__(self, message: str = "WebSocket closed"):
        super().__init__(message)


class GatewayDestroyedError(GatewayError):
    """Raised once the client has been destroyed."""

    def __init__(self, message: str = "Gateway client destroyed"):
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """Raised when no response arrives in time."""

    pass


class GatewayHandshakeError(GatewayError):
    """Raised when the gateway rejects the connect request."""

    pass


class GatewayRPCError(GatewayError):
    """Raised when the gateway answers a call with an error."""

    def __init__(self, code: Any, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


class ChatMessage(BaseModel):
    """One message of a gateway conversation."""

    role: str
    content: str = ""
    label: Optional[str] = None
    timestamp: Optional[float] = None

    @classmethod
    def from_wire(cls, raw: dict) -> "ChatMessage":
        content = raw.get("content")
        if isinstance(content, list):
            # Content blocks: keep the text parts
            content = "\n".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type", "text") == "text"
            )
        elif content is None:
            content = ""
        elif not isinstance(content, str):
            content = str(content)

        timestamp = raw.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            timestamp = None

        label = raw.get("label")
        return cls(
            role=str(raw.get("role", "")),
            content=content,
            label=label if isinstance(label, str) else None,
            timestamp=timestamp,
        )


@dataclass
class PendingRequest:
    """An outstanding call waiting for its response."""

    id: str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


EventHandler = Callable[[str, Any], Any]
ConnectFactory = Callable[[str], Awaitable[Any]]


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Backoff before reconnect attempt ``attempt`` (1-based)."""
    return min(base * (2 ** (attempt - 1)), cap)


def default_session_key(agent_id: str) -> str:
    return f"agent:{agent_id}:main"


def channel_session_key(agent_id: str, channel: str) -> str:
    return f"agent:{agent_id}:voice:channel:{channel}"


def to_ws_url(url: str) -> str:
    return url.replace("http://", "ws://").replace("https://", "wss://")


class GatewayClient:
    """
    Multiplexed RPC client for the reasoning gateway.

    Features:
    - Challenge/response connect handshake with token auth
    - Request correlation by id with a per-call timeout
    - Event subscriptions (sync or async handlers)
    - Auto-reconnection with capped exponential backoff
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        *,
        client_id: str = "gateway-client",
        client_mode: str = "backend",
        client_version: str = "1.0.0",
        scopes: Optional[list[str]] = None,
        min_protocol: int = 3,
        max_protocol: int = 3,
        rpc_timeout: float = 10.0,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        max_reconnect_attempts: int = 10,
        connect_factory: Optional[ConnectFactory] = None,
    ):
        self._ws_url = to_ws_url(url)
        self._token = token
        self._client_id = client_id
        self._client_mode = client_mode
        self._client_version = client_version
        self._scopes = scopes if scopes is not None else ["operator.admin"]
        self._min_protocol = min_protocol
        self._max_protocol = max_protocol
        self._rpc_timeout = rpc_timeout
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect_factory = connect_factory

        self._state = GatewayState.DISCONNECTED
        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None
        self._pending: dict[str, PendingRequest] = {}
        self._handshake: Optional[asyncio.Future] = None
        self._connect_request_id: Optional[str] = None
        self._subscribers: list[EventHandler] = []

        self._reconnect_attempt = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_exhausted = False
        self._last_reconnect_delay: Optional[float] = None
        self._destroyed = False

    @classmethod
    def from_config(cls, config, **kwargs) -> "GatewayClient":
        """Build a client from a GatewayConfig."""
        return cls(
            config.url,
            config.token,
            client_id=config.client_id,
            client_mode=config.client_mode,
            client_version=config.client_version,
            scopes=list(config.scopes),
            min_protocol=config.min_protocol,
            max_protocol=config.max_protocol,
            rpc_timeout=config.rpc_timeout,
            reconnect_base_delay=config.reconnect_base_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            **kwargs,
        )

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the connection is open and the handshake completed."""
        return self._state == GatewayState.CONNECTED

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def reconnect_exhausted(self) -> bool:
        """True once automatic reconnection has given up."""
        return self._reconnect_exhausted

    @property
    def last_reconnect_delay(self) -> Optional[float]:
        return self._last_reconnect_delay

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Connect and complete the handshake.

        Idempotent: returns at once when connected, and concurrent callers
        share one handshake. Does nothing after destroy().

        Raises:
            GatewayConnectError: socket could not be opened
            GatewayHandshakeError: gateway rejected the connect request
            GatewayConnectionClosedError: socket closed mid-handshake
            GatewayTimeoutError: no challenge/hello within the RPC timeout
        """
        if self._destroyed:
            logger.debug("connect() ignored: client destroyed")
            return
        if self._state == GatewayState.CONNECTED:
            return

        if self._handshake is None or self._handshake.done():
            self._handshake = asyncio.get_running_loop().create_future()
            await self._open()

        try:
            await asyncio.wait_for(asyncio.shield(self._handshake), timeout=self._rpc_timeout)
        except asyncio.TimeoutError:
            logger.error("Gateway handshake timed out")
            self._fail_handshake(GatewayTimeoutError("Handshake timeout"))
            await self._close_socket()
            raise GatewayTimeoutError("Handshake timeout") from None

    async def reconnect(self) -> None:
        """Reset the reconnect budget and connect now."""
        if self._destroyed:
            return
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        self._reconnect_attempt = 0
        self._reconnect_exhausted = False
        await self.connect()

    async def _open(self) -> None:
        self._state = GatewayState.CONNECTING
        logger.info("Connecting to gateway: %s", self._ws_url)
        try:
            ws = await self._open_socket()
        except Exception as e:
            logger.warning("Gateway connection failed: %s", e)
            self._state = GatewayState.DISCONNECTED
            self._fail_handshake(GatewayConnectError(f"Connect failed: {e}"))
            self._schedule_reconnect()
            return

        if self._destroyed:
            await ws.close()
            self._fail_handshake(GatewayDestroyedError())
            return

        self._ws = ws
        self._state = GatewayState.AWAITING_CHALLENGE
        self._receive_task = asyncio.create_task(self._receive_loop(ws))

    async def _open_socket(self):
        if self._connect_factory is not None:
            return await self._connect_factory(self._ws_url)
        return await websockets.connect(
            self._ws_url,
            ping_interval=30,
            ping_timeout=10,
            close_timeout=5,
        )

    async def _close_socket(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Error closing gateway socket: %s", e)

    def _fail_handshake(self, exc: Exception) -> None:
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_exception(exc)
            # Waiters re-raise it from their own await
            handshake.exception()

    # ------------------------------------------------------------------ #
    # Receive loop
    # ------------------------------------------------------------------ #

    async def _receive_loop(self, ws) -> None:
        try:
            async for raw in ws:
                await self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.info("Gateway connection closed: %s", e)
        finally:
            self._handle_close(ws)

    async def _handle_frame(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Dropping malformed gateway frame")
            return
        if not isinstance(msg, dict):
            logger.debug("Dropping non-object gateway frame")
            return

        msg_type = msg.get("type")
        if msg_type == "event":
            await self._handle_event(msg)
        elif msg_type == "res":
            await self._handle_response(msg)
        else:
            logger.debug("Unhandled gateway frame type: %s", msg_type)

    async def _handle_event(self, msg: dict) -> None:
        event = msg.get("event")
        if not isinstance(event, str):
            logger.debug("Dropping event frame without a name")
            return
        if event == "connect.challenge":
            await self._send_connect()
            return
        await self._publish(event, msg.get("payload"))

    async def _send_connect(self) -> None:
        if self._state != GatewayState.AWAITING_CHALLENGE or self._ws is None:
            logger.debug("Ignoring connect.challenge in state %s", self._state.value)
            return

        params: dict[str, Any] = {
            "minProtocol": self._min_protocol,
            "maxProtocol": self._max_protocol,
            "scopes": self._scopes,
            "client": {
                "id": self._client_id,
                "mode": self._client_mode,
                "version": self._client_version,
                "platform": sys.platform,
            },
        }
        if self._token:
            params["auth"] = {"token": self._token}

        self._connect_request_id = str(uuid.uuid4())
        frame = {
            "type": "req",
            "id": self._connect_request_id,
            "method": "connect",
            "params": params,
        }
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed:
            logger.debug("Socket closed before connect request was sent")

    async def _handle_response(self, msg: dict) -> None:
        msg_id = msg.get("id")
        if msg_id is not None and msg_id == self._connect_request_id:
            self._connect_request_id = None
            await self._handle_hello(msg)
            return

        request = self._pending.pop(msg_id, None) if isinstance(msg_id, str) else None
        if request is None:
            logger.debug("Ignoring response for unknown request %s", msg_id)
            return
        request.timer.cancel()
        if request.future.done():
            return

        error = msg.get("error")
        if error or msg.get("ok") is False:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            request.future.set_exception(GatewayRPCError(code, message or "unknown error"))
        else:
            request.future.set_result(msg.get("payload") if msg.get("ok") else msg.get("result"))

    async def _handle_hello(self, msg: dict) -> None:
        payload = msg.get("payload")
        if msg.get("ok") and isinstance(payload, dict) and payload.get("type") == "hello-ok":
            self._state = GatewayState.CONNECTED
            self._reconnect_attempt = 0
            self._reconnect_exhausted = False
            logger.info("Gateway handshake complete (%s)", self._ws_url)
            if self._handshake is not None and not self._handshake.done():
                self._handshake.set_result(None)
            return

        error = msg.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        logger.error("Gateway handshake rejected: %s", message or "connect rejected")
        self._fail_handshake(GatewayHandshakeError(message or "connect rejected"))
        await self._close_socket()

    def _handle_close(self, ws) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._receive_task = None
        self._state = GatewayState.DISCONNECTED
        self._connect_request_id = None
        self._reject_pending(GatewayConnectionClosedError("WebSocket closed"))
        self._fail_handshake(GatewayConnectionClosedError("WebSocket closed during handshake"))
        if not self._destroyed:
            self._schedule_reconnect()

    def _reject_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(exc)
        if pending:
            logger.warning("Rejected %d pending gateway call(s): %s", len(pending), exc)

    # ------------------------------------------------------------------ #
    # Reconnect
    # ------------------------------------------------------------------ #

    def _schedule_reconnect(self) -> None:
        if self._destroyed or self._reconnect_handle is not None:
            return
        if self._reconnect_attempt >= self._max_reconnect_attempts:
            if not self._reconnect_exhausted:
                self._reconnect_exhausted = True
                logger.error(
                    "Gateway reconnect abandoned after %d attempts; reconnect() required",
                    self._reconnect_attempt,
                )
            return

        self._reconnect_attempt += 1
        delay = reconnect_delay(
            self._reconnect_attempt,
            self._reconnect_base_delay,
            self._reconnect_max_delay,
        )
        self._last_reconnect_delay = delay
        logger.info(
            "Reconnecting to gateway in %.1fs (attempt %d/%d)",
            delay, self._reconnect_attempt, self._max_reconnect_attempts,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._start_reconnect)

    def _start_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._destroyed:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except GatewayError as e:
            logger.warning("Gateway reconnect attempt %d failed: %s", self._reconnect_attempt, e)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # ------------------------------------------------------------------ #
    # Calls and events
    # ------------------------------------------------------------------ #

    async def call(self, method: str, params: Optional[dict] = None) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            GatewayDestroyedError, GatewayNotConnectedError,
            GatewayTimeoutError, GatewayConnectionClosedError, GatewayRPCError
        """
        if self._destroyed:
            raise GatewayDestroyedError()
        if self._state != GatewayState.CONNECTED or self._ws is None:
            raise GatewayNotConnectedError()

        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        future = loop.create_future()
        timer = loop.call_later(self._rpc_timeout, self._expire, request_id)
        self._pending[request_id] = PendingRequest(request_id, method, future, timer)

        frame = {"type": "req", "id": request_id, "method": method, "params": params or {}}
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            self._drop_pending(request_id)
            raise GatewayConnectionClosedError() from e

        try:
            return await future
        finally:
            self._drop_pending(request_id)

    def _expire(self, request_id: str) -> None:
        request = self._pending.pop(request_id, None)
        if request is None or request.future.done():
            return
        logger.warning("Gateway call %s timed out after %.1fs", request.method, self._rpc_timeout)
        request.future.set_exception(GatewayTimeoutError(f"RPC timeout: {request.method}"))

    def _drop_pending(self, request_id: str) -> None:
        request = self._pending.pop(request_id, None)
        if request is None:
            return
        request.timer.cancel()
        if not request.future.done():
            request.future.cancel()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """
        Register ``handler(event, payload)`` for server-pushed events.

        Returns a function that removes the subscription.
        """
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    async def _publish(self, event: str, payload: Any) -> None:
        for handler in list(self._subscribers):
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Gateway event handler error for %s: %s", event, e)

    # ------------------------------------------------------------------ #
    # Conversation helpers
    # ------------------------------------------------------------------ #

    async def inject(self, session_key: str, message: str, label: Optional[str] = None) -> Optional[str]:
        """Post a message into a gateway conversation. Returns its id, or None on failure."""
        params: dict[str, Any] = {"sessionKey": session_key, "message": message}
        if label:
            params["label"] = label
        try:
            result = await self.call("chat.inject", params)
        except GatewayError as e:
            logger.warning("chat.inject failed for %s: %s", session_key, e)
            return None
        if isinstance(result, dict):
            return result.get("messageId")
        return None

    async def get_history(self, session_key: str, limit: Optional[int] = None) -> Optional[list[ChatMessage]]:
        """Fetch recent conversation messages, or None on failure."""
        params: dict[str, Any] = {"sessionKey": session_key}
        if limit is not None:
            params["limit"] = limit
        try:
            result = await self.call("chat.history", params)
        except GatewayError as e:
            logger.warning("chat.history failed for %s: %s", session_key, e)
            return None

        raw_messages = result.get("messages") if isinstance(result, dict) else None
        if not isinstance(raw_messages, list):
            return []
        return [ChatMessage.from_wire(m) for m in raw_messages if isinstance(m, dict)]

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def destroy(self) -> None:
        """Close for good: fail pending calls, stop reconnecting, close the socket."""
        if self._destroyed:
            return
        self._destroyed = True
        logger.info("Destroying gateway client")

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self._reject_pending(GatewayDestroyedError())
        self._fail_handshake(GatewayDestroyedError())

        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None
        self._state = GatewayState.DISCONNECTED

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing gateway socket: %s", e)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# Module-level instance management
_gateway_client: Optional[GatewayClient] = None


def get_gateway_client() -> Optional[GatewayClient]:
    """Get the gateway client instance (may be None if not initialized)."""
    return _gateway_client


async def init_gateway_client(config=None) -> GatewayClient:
    """Create the gateway client and start connecting."""
    global _gateway_client

    if config is None:
        from ..config import settings

        config = settings.gateway

    if _gateway_client is not None:
        logger.warning("Gateway client already running, destroying first")
        await shutdown_gateway_client()

    _gateway_client = GatewayClient.from_config(config)
    try:
        await _gateway_client.connect()
    except GatewayError as e:
        # Reconnect is already scheduled
        logger.warning("Initial gateway connect failed: %s", e)
    return _gateway_client


async def shutdown_gateway_client() -> None:
    """Destroy the gateway client."""
    global _gateway_client

    if _gateway_client is not None:
        await _gateway_client.destroy()
        _gateway_client = None
