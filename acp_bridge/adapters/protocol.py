"""ACP wire types: JSON-RPC 2.0 over newline-delimited JSON.

Three shapes travel on the socket:
    request       {"jsonrpc": "2.0", "id": N, "method": "...", "params": {...}}
    response      {"jsonrpc": "2.0", "id": N, "result": ... | "error": {...}}
    notification  {"jsonrpc": "2.0", "method": "...", "params": {...}}
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from acp_bridge.engine.errors import ProtocolParseError
from acp_bridge.shared.models.message import ToolStatus

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
JSONRPC_VERSION = "2.0"

# Client -> agent
INITIALIZE = "initialize"
SESSION_NEW = "session/new"
SESSION_LOAD = "session/load"
SESSION_PROMPT = "session/prompt"
SESSION_CANCEL = "session/cancel"
# Agent -> client (request)
REQUEST_PERMISSION = "session/request_permission"
# Agent -> client (notification)
SESSION_UPDATE = "session/update"

METHOD_NOT_FOUND = -32601


@dataclass
class JsonRpcRequest:
    id: int | str
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class JsonRpcResponse:
    id: int | str
    result: Any = None
    error: dict[str, Any] | None = None


@dataclass
class JsonRpcNotification:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


JsonRpcMessage = JsonRpcRequest | JsonRpcResponse | JsonRpcNotification


def _params(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def classify_message(obj: dict[str, Any]) -> JsonRpcMessage | None:
    """Sort a decoded object into request, response or notification.

    Returns None for objects that match none of the three shapes.
    """
    has_id = obj.get("id") is not None
    method = obj.get("method")
    if has_id and method is None:
        error = obj.get("error")
        return JsonRpcResponse(
            id=obj["id"],
            result=obj.get("result"),
            error=error if isinstance(error, dict) else ({"message": str(error)} if error else None),
        )
    if not isinstance(method, str):
        return None
    if has_id:
        return JsonRpcRequest(id=obj["id"], method=method, params=_params(obj.get("params")))
    return JsonRpcNotification(method=method, params=_params(obj.get("params")))


def parse_line(line: str) -> JsonRpcMessage | None:
    """Decode one line. Raises ProtocolParseError if it is not a JSON object."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(line, str(exc)) from exc
    if not isinstance(obj, dict):
        raise ProtocolParseError(line, "not a JSON object")
    return classify_message(obj)


def encode_request(request_id: int | str, method: str, params: Any = None) -> bytes:
    msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        msg["params"] = params
    return _encode(msg)


def encode_notification(method: str, params: Any = None) -> bytes:
    msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        msg["params"] = params
    return _encode(msg)


def encode_response(
    request_id: int | str,
    result: Any = None,
    error: dict[str, Any] | None = None,
) -> bytes:
    msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id}
    if error is not None:
        msg["error"] = error
    else:
        msg["result"] = result
    return _encode(msg)


def _encode(msg: dict[str, Any]) -> bytes:
    return json.dumps(msg, ensure_ascii=False).encode("utf-8") + b"\n"


class NdjsonDecoder:
    """Incremental newline framing for a byte stream.

    Chunks may split lines and multi-byte UTF-8 sequences anywhere;
    ``feed`` returns only complete, non-blank lines.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines if line.strip()]

    @property
    def pending(self) -> str:
        return self._buffer


# ── Tool status ──

_STATUS_MAP: dict[str, ToolStatus] = {
    "pending": ToolStatus.PENDING,
    "in_progress": ToolStatus.RUNNING,
    "completed": ToolStatus.COMPLETED,
    "errored": ToolStatus.ERROR,
    "failed": ToolStatus.ERROR,
    "cancelled": ToolStatus.ERROR,
}


def map_tool_status(status: Any, *, strict: bool = False) -> ToolStatus:
    """Map an agent tool status to the bridge's four states.

    Unrecognised values become pending, or error when *strict*.
    """
    mapped = _STATUS_MAP.get(status) if isinstance(status, str) else None
    if mapped is not None:
        return mapped
    logger.warning("Unrecognised tool status %r; treating as %s", status, "error" if strict else "pending")
    return ToolStatus.ERROR if strict else ToolStatus.PENDING


def first_text_content(content: Any) -> str | None:
    """Text of the first content block, plain or wrapped in a ``content`` envelope."""
    if not isinstance(content, list) or not content:
        return None
    block = content[0]
    if not isinstance(block, dict):
        return None
    if block.get("type") == "content" and isinstance(block.get("content"), dict):
        block = block["content"]
    if block.get("type") == "text" and isinstance(block.get("text"), str):
        return block["text"]
    return None
