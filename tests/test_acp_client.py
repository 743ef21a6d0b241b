from __future__ import annotations

import asyncio
import json

import pytest

from acp_bridge.adapters.acp_client import ACPClient
from acp_bridge.adapters.protocol import JsonRpcNotification, JsonRpcRequest
from acp_bridge.engine.errors import (
    AgentCallFailed,
    AgentConnectionError,
    ConnectionLost,
    RequestTimeout,
)


class _FakeAgent:
    """Minimal ACP agent on a loopback port, scripted per method."""

    def __init__(self) -> None:
        self.received: list[dict] = []
        self.replies: dict[str, object] = {}
        self.writer: asyncio.StreamWriter | None = None
        self.connected = asyncio.Event()
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.writer is not None:
            self.writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def send(self, obj: dict) -> None:
        assert self.writer is not None
        self.writer.write(json.dumps(obj).encode() + b"\n")
        await self.writer.drain()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        self.connected.set()
        while True:
            line = await reader.readline()
            if not line:
                return
            msg = json.loads(line)
            self.received.append(msg)
            if "id" not in msg or "method" not in msg:
                continue
            reply = self.replies.get(msg["method"], {})
            if reply is None:
                continue
            if isinstance(reply, dict) and "error" in reply:
                await self.send({"jsonrpc": "2.0", "id": msg["id"], "error": reply["error"]})
            else:
                await self.send({"jsonrpc": "2.0", "id": msg["id"], "result": reply})


@pytest.mark.asyncio
async def test_connect_to_closed_port_raises_connection_error() -> None:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    client = ACPClient("127.0.0.1", port)
    with pytest.raises(AgentConnectionError) as excinfo:
        await client.connect()
    assert isinstance(excinfo.value, ConnectionError)


@pytest.mark.asyncio
async def test_initialize_caches_capabilities_and_is_idempotent() -> None:
    agent = _FakeAgent()
    agent.replies["initialize"] = {"protocolVersion": 1, "agentCapabilities": {"loadSession": True}}
    client = ACPClient("127.0.0.1", await agent.start())
    try:
        await client.connect()
        await client.initialize()
        await client.initialize()
        assert client.supports_load_session() is True
        inits = [m for m in agent.received if m.get("method") == "initialize"]
        assert len(inits) == 1
        assert inits[0]["params"] == {"protocolVersion": 1, "clientCapabilities": {}}
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_new_session_and_error_response() -> None:
    agent = _FakeAgent()
    agent.replies["session/new"] = {"sessionId": "sess-1"}
    agent.replies["session/load"] = {"error": {"code": -32002, "message": "unknown session"}}
    client = ACPClient("127.0.0.1", await agent.start())
    try:
        await client.connect()
        assert await client.new_session("/work") == "sess-1"
        with pytest.raises(AgentCallFailed) as excinfo:
            await client.load_session("old", "/work")
        assert excinfo.value.code == -32002
        assert str(excinfo.value) == "unknown session"
        assert client.pending_count == 0
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_request_timeout_clears_pending_entry() -> None:
    agent = _FakeAgent()
    agent.replies["session/new"] = None
    client = ACPClient("127.0.0.1", await agent.start())
    try:
        await client.connect()
        with pytest.raises(RequestTimeout):
            await client.send_request("session/new", {"cwd": "/"}, timeout=0.05)
        assert client.pending_count == 0
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_inbound_messages_routed_to_channels() -> None:
    agent = _FakeAgent()
    client = ACPClient("127.0.0.1", await agent.start())
    try:
        await client.connect()
        await agent.connected.wait()
        await agent.send({"jsonrpc": "2.0", "method": "session/update", "params": {"sessionId": "s"}})
        agent.writer.write(b"garbage that is not json\n")
        await agent.send({
            "jsonrpc": "2.0", "id": 41, "method": "session/request_permission",
            "params": {"sessionId": "s"},
        })
        note = await asyncio.wait_for(client.notifications.get(), 1)
        req = await asyncio.wait_for(client.requests.get(), 1)
        assert isinstance(note, JsonRpcNotification)
        assert note.params == {"sessionId": "s"}
        assert isinstance(req, JsonRpcRequest)
        assert req.id == 41
        assert client.notifications.empty()
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_socket_close_rejects_all_pending() -> None:
    agent = _FakeAgent()
    agent.replies["session/prompt"] = None
    client = ACPClient("127.0.0.1", await agent.start())
    await client.connect()
    try:
        first = asyncio.create_task(client.prompt("s", [{"type": "text", "text": "a"}]))
        second = asyncio.create_task(client.prompt("s", [{"type": "text", "text": "b"}]))
        while len([m for m in agent.received if m.get("method") == "session/prompt"]) < 2:
            await asyncio.sleep(0.01)
        agent.writer.close()
        for task in (first, second):
            with pytest.raises(ConnectionLost):
                await asyncio.wait_for(task, 1)
        assert client.connected is False
        with pytest.raises(ConnectionLost):
            await client.send_request("session/new", {})
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_send_response_and_cancel_are_written() -> None:
    agent = _FakeAgent()
    client = ACPClient("127.0.0.1", await agent.start())
    try:
        await client.connect()
        await client.send_response(41, result={"outcome": {"outcome": "cancelled"}})
        await client.cancel("sess-1")
        while len(agent.received) < 2:
            await asyncio.sleep(0.01)
        assert agent.received[0] == {
            "jsonrpc": "2.0", "id": 41, "result": {"outcome": {"outcome": "cancelled"}},
        }
        assert agent.received[1] == {
            "jsonrpc": "2.0", "method": "session/cancel", "params": {"sessionId": "sess-1"},
        }
    finally:
        await client.close()
        await agent.stop()


@pytest.mark.asyncio
async def test_read_loop_without_connection_returns() -> None:
    client = ACPClient("127.0.0.1", 1)
    await client._read_loop()
    assert client.connected is False
    assert client.pending_count == 0
