"""
Tests for the gateway RPC client.

A fake socket stands in for the websockets connection: frames pushed by the
"server" are delivered through async iteration, and frames the client sends
are recorded and answered by a per-test handler.
"""

import asyncio
import json

import pytest

from voxrelay.services.gateway_client import (
    ChatMessage,
    GatewayClient,
    GatewayConnectError,
    GatewayConnectionClosedError,
    GatewayDestroyedError,
    GatewayHandshakeError,
    GatewayNotConnectedError,
    GatewayRPCError,
    GatewayState,
    GatewayTimeoutError,
    channel_session_key,
    default_session_key,
    reconnect_delay,
)


# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeSocket:
    """In-memory duplex socket."""

    def __init__(self, gateway: "FakeGateway"):
        self.gateway = gateway
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def push(self, frame) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    async def send(self, data: str) -> None:
        frame = json.loads(data)
        self.sent.append(frame)
        await self.gateway.on_frame(frame, self)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeGateway:
    """Issues the challenge, answers connect, and forwards other requests."""

    def __init__(self, accept: bool = True, fail_connects: int = 0):
        self.accept = accept
        self.fail_connects = fail_connects
        self.connect_attempts = 0
        self.sockets: list[FakeSocket] = []
        self.handler = None

    async def factory(self, url: str) -> FakeSocket:
        self.connect_attempts += 1
        if self.connect_attempts <= self.fail_connects:
            raise OSError("connection refused")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        sock.push({"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc"}})
        return sock

    async def on_frame(self, frame: dict, sock: FakeSocket) -> None:
        if frame.get("method") == "connect":
            if self.accept:
                sock.push({"type": "res", "id": frame["id"], "ok": True, "payload": {"type": "hello-ok"}})
            else:
                sock.push({
                    "type": "res", "id": frame["id"], "ok": False,
                    "error": {"code": "UNAUTHORIZED", "message": "bad token"},
                })
        elif self.handler is not None:
            await self.handler(frame, sock)

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


def make_client(gateway: FakeGateway, **kwargs) -> GatewayClient:
    kwargs.setdefault("rpc_timeout", 1.0)
    kwargs.setdefault("reconnect_base_delay", 0.01)
    kwargs.setdefault("reconnect_max_delay", 0.04)
    return GatewayClient(
        "http://gateway.test:18789",
        "secret-token",
        connect_factory=gateway.factory,
        **kwargs,
    )


async def until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ------------------------------------------------------------------ #
# Handshake
# ------------------------------------------------------------------ #


class TestHandshake:
    """connect.challenge -> connect request -> hello-ok."""

    @pytest.mark.asyncio
    async def test_connect_completes_handshake(self):
        gateway = FakeGateway()
        client = make_client(gateway)
        try:
            await client.connect()
            assert client.state == GatewayState.CONNECTED
            request = gateway.socket.sent[0]
            assert request["type"] == "req"
            assert request["method"] == "connect"
            params = request["params"]
            assert params["minProtocol"] == 3
            assert params["maxProtocol"] == 3
            assert params["scopes"] == ["operator.admin"]
            assert params["client"]["id"] == "gateway-client"
            assert params["client"]["mode"] == "backend"
            assert params["auth"] == {"token": "secret-token"}
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_ws_url_derived_from_http(self):
        seen = []
        gateway = FakeGateway()

        async def factory(url):
            seen.append(url)
            return await gateway.factory(url)

        client = GatewayClient("https://gw.example", connect_factory=factory)
        try:
            await client.connect()
            assert seen == ["wss://gw.example"]
            assert "auth" not in gateway.socket.sent[0]["params"]
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        gateway = FakeGateway()
        client = make_client(gateway)
        try:
            await asyncio.gather(client.connect(), client.connect())
            await client.connect()
            assert gateway.connect_attempts == 1
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_rejected_handshake_raises_and_schedules_reconnect(self):
        gateway = FakeGateway(accept=False)
        client = make_client(gateway, reconnect_base_delay=5.0)
        try:
            with pytest.raises(GatewayHandshakeError, match="bad token"):
                await client.connect()
            await until(lambda: client.reconnect_attempt == 1)
            assert client.state == GatewayState.DISCONNECTED
            assert client.last_reconnect_delay == 5.0
        finally:
            await client.destroy()


# ------------------------------------------------------------------ #
# Calls
# ------------------------------------------------------------------ #


class TestCalls:
    """Request/response correlation."""

    @pytest.mark.asyncio
    async def test_call_while_disconnected_fails_fast(self):
        client = make_client(FakeGateway())
        with pytest.raises(GatewayNotConnectedError, match="Not connected"):
            await client.call("chat.history", {})
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_call_returns_payload(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            sock.push({"type": "res", "id": frame["id"], "ok": True, "payload": {"echo": frame["params"]}})

        gateway.handler = handler
        client = make_client(gateway)
        try:
            await client.connect()
            assert await client.call("echo", {"a": 1}) == {"echo": {"a": 1}}
            assert client.pending_count == 0
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_call_returns_result_field_without_ok(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            sock.push({"type": "res", "id": frame["id"], "result": [1, 2]})

        gateway.handler = handler
        client = make_client(gateway)
        try:
            await client.connect()
            assert await client.call("list") == [1, 2]
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            sock.push({
                "type": "res", "id": frame["id"], "ok": False,
                "error": {"code": 404, "message": "no such session"},
            })

        gateway.handler = handler
        client = make_client(gateway)
        try:
            await client.connect()
            with pytest.raises(GatewayRPCError, match="RPC error 404: no such session") as exc_info:
                await client.call("chat.history", {"sessionKey": "x"})
            assert exc_info.value.code == 404
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_timeout_removes_pending_and_ignores_late_response(self):
        gateway = FakeGateway()
        requests = []

        async def handler(frame, sock):
            requests.append(frame)

        gateway.handler = handler
        client = make_client(gateway, rpc_timeout=0.05)
        try:
            await client.connect()
            with pytest.raises(GatewayTimeoutError, match="RPC timeout: slow.method"):
                await client.call("slow.method")
            assert client.pending_count == 0

            gateway.socket.push({"type": "res", "id": requests[0]["id"], "ok": True, "payload": "late"})
            await asyncio.sleep(0.02)
            assert client.is_connected
        finally:
            await client.destroy()


# ------------------------------------------------------------------ #
# Disconnects and reconnects
# ------------------------------------------------------------------ #


class TestReconnect:
    """Socket close, backoff and giving up."""

    def test_backoff_schedule(self):
        assert [reconnect_delay(n) for n in range(1, 8)] == [1, 2, 4, 8, 16, 30, 30]
        assert reconnect_delay(10) == 30

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_schedules_reconnect(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            pass

        gateway.handler = handler
        client = make_client(gateway, reconnect_base_delay=5.0)
        try:
            await client.connect()
            call = asyncio.create_task(client.call("never.answered"))
            await until(lambda: client.pending_count == 1)

            await gateway.socket.close()
            with pytest.raises(GatewayConnectionClosedError, match="WebSocket closed"):
                await call
            await until(lambda: client.state == GatewayState.DISCONNECTED)
            assert client.pending_count == 0
            assert client.reconnect_attempt == 1
            assert client.last_reconnect_delay == 5.0
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_reconnects_after_close(self):
        gateway = FakeGateway()
        client = make_client(gateway)
        try:
            await client.connect()
            await gateway.socket.close()
            await until(lambda: len(gateway.sockets) == 2 and client.is_connected)
            assert client.reconnect_attempt == 0
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        gateway = FakeGateway(fail_connects=100)
        client = make_client(gateway, reconnect_base_delay=0.001, reconnect_max_delay=0.004, max_reconnect_attempts=3)
        try:
            with pytest.raises(GatewayConnectError):
                await client.connect()
            await until(lambda: client.reconnect_exhausted)
            assert gateway.connect_attempts == 4
            assert client.last_reconnect_delay == 0.004
            await asyncio.sleep(0.05)
            assert gateway.connect_attempts == 4
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_reconnect_resets_budget(self):
        gateway = FakeGateway(fail_connects=100)
        client = make_client(gateway, reconnect_base_delay=0.001, max_reconnect_attempts=1)
        try:
            with pytest.raises(GatewayConnectError):
                await client.connect()
            await until(lambda: client.reconnect_exhausted)

            gateway.fail_connects = 0
            await client.reconnect()
            assert client.is_connected
            assert not client.reconnect_exhausted
            assert client.reconnect_attempt == 0
        finally:
            await client.destroy()


# ------------------------------------------------------------------ #
# Events
# ------------------------------------------------------------------ #


class TestEvents:
    """Pushed events reach subscribers; junk frames are dropped."""

    @pytest.mark.asyncio
    async def test_subscribers_receive_events_in_order(self):
        gateway = FakeGateway()
        client = make_client(gateway)
        received = []
        async_received = []

        async def async_handler(event, payload):
            async_received.append(event)

        unsubscribe = client.subscribe(lambda event, payload: received.append((event, payload)))
        client.subscribe(async_handler)
        try:
            await client.connect()
            sock = gateway.socket
            sock.push("not json")
            sock.push("[1, 2, 3]")
            sock.push({"type": "event"})
            sock.push({"type": "event", "event": "chat.message", "payload": {"n": 1}})
            sock.push({"type": "event", "event": "chat.message", "payload": {"n": 2}})
            await until(lambda: len(received) == 2)
            assert received == [("chat.message", {"n": 1}), ("chat.message", {"n": 2})]
            await until(lambda: len(async_received) == 2)
            assert client.is_connected

            unsubscribe()
            sock.push({"type": "event", "event": "chat.message", "payload": {"n": 3}})
            await until(lambda: len(async_received) == 3)
            assert len(received) == 2
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_drop_connection(self):
        gateway = FakeGateway()
        client = make_client(gateway)
        seen = []

        def broken(event, payload):
            raise RuntimeError("boom")

        client.subscribe(broken)
        client.subscribe(lambda event, payload: seen.append(event))
        try:
            await client.connect()
            gateway.socket.push({"type": "event", "event": "tick"})
            await until(lambda: seen == ["tick"])
            assert client.is_connected
        finally:
            await client.destroy()


# ------------------------------------------------------------------ #
# Destroy
# ------------------------------------------------------------------ #


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_is_terminal(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            pass

        gateway.handler = handler
        client = make_client(gateway)
        await client.connect()
        call = asyncio.create_task(client.call("never.answered"))
        await until(lambda: client.pending_count == 1)

        await client.destroy()
        with pytest.raises(GatewayDestroyedError):
            await call
        assert gateway.socket.closed
        assert client.state == GatewayState.DISCONNECTED

        await client.connect()
        assert gateway.connect_attempts == 1
        with pytest.raises(GatewayDestroyedError):
            await client.call("anything")
        await asyncio.sleep(0.05)
        assert gateway.connect_attempts == 1


# ------------------------------------------------------------------ #
# Conversation helpers
# ------------------------------------------------------------------ #


class TestConversationHelpers:
    @pytest.mark.asyncio
    async def test_inject_returns_message_id(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            assert frame["method"] == "chat.inject"
            sock.push({"type": "res", "id": frame["id"], "ok": True, "payload": {"messageId": "m-1"}})

        gateway.handler = handler
        client = make_client(gateway)
        try:
            await client.connect()
            assert await client.inject("agent:main:main", "hello", label="voice-user") == "m-1"
            params = gateway.socket.sent[-1]["params"]
            assert params == {"sessionKey": "agent:main:main", "message": "hello", "label": "voice-user"}
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_helpers_swallow_failures(self):
        client = make_client(FakeGateway())
        assert await client.inject("agent:main:main", "hello") is None
        assert await client.get_history("agent:main:main") is None

    @pytest.mark.asyncio
    async def test_get_history_parses_messages(self):
        gateway = FakeGateway()

        async def handler(frame, sock):
            sock.push({
                "type": "res", "id": frame["id"], "ok": True,
                "payload": {"messages": [
                    {"role": "user", "content": "hi", "label": "voice-user", "timestamp": 10},
                    {"role": "assistant", "content": [
                        {"type": "text", "text": "First part."},
                        {"type": "image", "url": "x"},
                        {"type": "text", "text": "Second part."},
                    ]},
                    "garbage",
                ]},
            })

        gateway.handler = handler
        client = make_client(gateway)
        try:
            await client.connect()
            messages = await client.get_history("agent:main:main", limit=5)
            assert messages == [
                ChatMessage(role="user", content="hi", label="voice-user", timestamp=10),
                ChatMessage(role="assistant", content="First part.\nSecond part."),
            ]
            assert gateway.socket.sent[-1]["params"] == {"sessionKey": "agent:main:main", "limit": 5}
        finally:
            await client.destroy()

    def test_session_keys(self):
        assert default_session_key("main") == "agent:main:main"
        assert channel_session_key("main", "nutrition") == "agent:main:voice:channel:nutrition"
