"""TCP client for the agent's ACP endpoint.

One reader task owns the socket's inbound side. Each line is classified:

    response      resolves the matching pending future (correlation by id)
    request       put on ``requests`` (agent asks the bridge something)
    notification  put on ``notifications`` (session/update stream)

Consumers drain the two queues in order; responses never pass through a
queue, so a caller awaiting ``send_request`` wakes as soon as the read
loop sees its answer. Anything the reader put on ``notifications``
before that point is already queued.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from acp_bridge.adapters import protocol
from acp_bridge.adapters.protocol import (
    JsonRpcRequest,
    JsonRpcResponse,
    NdjsonDecoder,
)
from acp_bridge.engine.errors import (
    AgentCallFailed,
    AgentConnectionError,
    ConnectionLost,
    ProtocolParseError,
    RequestTimeout,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


class ACPClient:
    """JSON-RPC client for an ACP agent listening on a TCP port."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        notifications: asyncio.Queue | None = None,
        requests: asyncio.Queue | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._req_id: int = 0
        self._pending: dict[int | str, tuple[str, asyncio.Future]] = {}
        self._initialized = False
        self.agent_capabilities: dict[str, Any] = {}
        self.notifications: asyncio.Queue = notifications if notifications is not None else asyncio.Queue()
        self.requests: asyncio.Queue = requests if requests is not None else asyncio.Queue()
        self.closed = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self.closed.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Connection ──

    async def connect(self) -> None:
        try:
            self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        except OSError as exc:
            raise AgentConnectionError(self._host, self._port, str(exc)) from exc
        self.closed.clear()
        self._read_task = asyncio.create_task(self._read_loop(), name="acp-read-loop")
        logger.info("Connected to ACP agent on %s:%d", self._host, self._port)

    async def close(self) -> None:
        """Close the socket and reject everything still outstanding."""
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._connection_lost("ACP connection closed by bridge")

    def _connection_lost(self, reason: str) -> None:
        self._reader = None
        self._writer = None
        if not self.closed.is_set():
            logger.warning("ACP connection lost: %s (pending=%d)", reason, len(self._pending))
        self.closed.set()
        pending, self._pending = self._pending, {}
        for _method, future in pending.values():
            if not future.done():
                future.set_exception(ConnectionLost(reason))

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        decoder = NdjsonDecoder()
        reason = "ACP connection closed by agent"
        try:
            while True:
                data = await reader.read(_READ_CHUNK)
                if not data:
                    break
                for line in decoder.feed(data):
                    self._dispatch_line(line)
        except asyncio.CancelledError:
            reason = "ACP read loop cancelled"
            raise
        except (ConnectionError, OSError) as exc:
            reason = f"ACP socket error: {exc}"
        finally:
            self._connection_lost(reason)

    def _dispatch_line(self, line: str) -> None:
        try:
            message = protocol.parse_line(line)
        except ProtocolParseError as exc:
            logger.warning("%s", exc)
            return
        if message is None:
            logger.warning("Ignoring unclassifiable ACP message: %r", line[:200])
        elif isinstance(message, JsonRpcResponse):
            self._resolve(message)
        elif isinstance(message, JsonRpcRequest):
            self.requests.put_nowait(message)
        else:
            self.notifications.put_nowait(message)

    def _resolve(self, response: JsonRpcResponse) -> None:
        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.warning("Discarding ACP response for unknown request id=%s", response.id)
            return
        method, future = entry
        if future.done():
            return
        if response.error is not None:
            future.set_exception(AgentCallFailed(
                method,
                str(response.error.get("message") or "ACP request failed"),
                code=response.error.get("code"),
                data=response.error.get("data"),
            ))
        else:
            future.set_result(response.result)

    # ── Writing ──

    async def _write(self, data: bytes) -> None:
        async with self._write_lock:
            if self._writer is None or self.closed.is_set():
                raise ConnectionLost("Not connected to ACP agent")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                raise ConnectionLost(f"ACP write failed: {exc}") from exc

    async def send_request(
        self,
        method: str,
        params: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for the matching response's result."""
        if not self.connected:
            raise ConnectionLost("Not connected to ACP agent")
        self._req_id += 1
        request_id = self._req_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        logger.debug("ACP -> %s id=%s", method, request_id)
        try:
            await self._write(protocol.encode_request(request_id, method, params))
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise RequestTimeout(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Any = None) -> None:
        logger.debug("ACP -> %s (notification)", method)
        await self._write(protocol.encode_notification(method, params))

    async def send_response(
        self,
        request_id: int | str,
        result: Any = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        logger.debug("ACP -> response id=%s error=%s", request_id, bool(error))
        await self._write(protocol.encode_response(request_id, result, error))

    # ── ACP methods ──

    async def initialize(self, timeout: float | None = None) -> dict[str, Any]:
        if self._initialized:
            return {
                "protocolVersion": protocol.PROTOCOL_VERSION,
                "agentCapabilities": self.agent_capabilities,
            }
        result = await self.send_request(
            protocol.INITIALIZE,
            {"protocolVersion": protocol.PROTOCOL_VERSION, "clientCapabilities": {}},
            timeout=timeout,
        )
        result = result if isinstance(result, dict) else {}
        capabilities = result.get("agentCapabilities")
        self.agent_capabilities = capabilities if isinstance(capabilities, dict) else {}
        self._initialized = True
        return result

    def supports_load_session(self) -> bool:
        return self.agent_capabilities.get("loadSession") is True

    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[dict[str, Any]] | None = None,
        timeout: float | None = None,
    ) -> str:
        result = await self.send_request(
            protocol.SESSION_NEW,
            {"cwd": cwd, "mcpServers": mcp_servers or []},
            timeout=timeout,
        )
        session_id = result.get("sessionId") if isinstance(result, dict) else None
        if not session_id:
            raise AgentCallFailed(protocol.SESSION_NEW, "Agent returned no sessionId")
        return str(session_id)

    async def load_session(
        self,
        session_id: str,
        cwd: str,
        mcp_servers: list[dict[str, Any]] | None = None,
        timeout: float | None = None,
    ) -> None:
        await self.send_request(
            protocol.SESSION_LOAD,
            {"sessionId": session_id, "cwd": cwd, "mcpServers": mcp_servers or []},
            timeout=timeout,
        )

    async def prompt(self, session_id: str, blocks: list[dict[str, Any]]) -> dict[str, Any]:
        result = await self.send_request(
            protocol.SESSION_PROMPT,
            {"sessionId": session_id, "prompt": blocks},
        )
        return result if isinstance(result, dict) else {}

    async def cancel(self, session_id: str) -> None:
        await self.send_notification(protocol.SESSION_CANCEL, {"sessionId": session_id})
