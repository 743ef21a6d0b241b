"""Message, part and tool payload models.

Parts are mutable in place: streaming appends to a text part, tool
lifecycle updates rewrite a tool part's state. Every part is addressed
by id within its message.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (ToolStatus.COMPLETED, ToolStatus.ERROR)


_STATUS_RANK = {
    ToolStatus.PENDING: 0,
    ToolStatus.RUNNING: 1,
    ToolStatus.COMPLETED: 2,
    ToolStatus.ERROR: 2,
}


class ToolKind(Enum):
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> ToolKind:
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


# ── Tool payloads ──


@dataclass
class ToolArguments:
    """A JSON object of named arguments or structured results."""
    values: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.values


@dataclass
class TextPayload:
    text: str = ""

    def to_wire(self) -> str:
        return self.text


@dataclass
class OpaquePayload:
    """Any other JSON value, passed through untouched."""
    value: Any = None

    def to_wire(self) -> Any:
        return self.value


ToolPayload = Union[ToolArguments, TextPayload, OpaquePayload]


def payload_from_wire(value: Any) -> ToolPayload:
    if isinstance(value, dict):
        return ToolArguments(dict(value))
    if isinstance(value, str):
        return TextPayload(value)
    return OpaquePayload(value)


# ── Parts ──


@dataclass
class TextPart:
    id: str
    message_id: str
    session_id: str
    text: str = ""
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messageID": self.message_id,
            "sessionID": self.session_id,
            "type": self.type,
            "text": self.text,
        }


@dataclass
class ReasoningPart:
    id: str
    message_id: str
    session_id: str
    thinking: str = ""
    type: str = field(default="thinking", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messageID": self.message_id,
            "sessionID": self.session_id,
            "type": self.type,
            "thinking": self.thinking,
        }


@dataclass
class ToolState:
    status: ToolStatus = ToolStatus.PENDING
    input: ToolPayload = field(default_factory=ToolArguments)
    output: ToolPayload | None = None
    start: int | None = None
    end: int | None = None

    @property
    def duration(self) -> int | None:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start

    def finish(self, status: ToolStatus, at: int) -> None:
        self.status = status
        if self.start is None:
            self.start = at
        self.end = at

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "status": self.status.value,
            "input": self.input.to_wire(),
        }
        if self.output is not None:
            d["output"] = self.output.to_wire()
        if self.start is not None:
            timing: dict[str, int] = {"start": self.start}
            if self.end is not None:
                timing["end"] = self.end
                timing["duration"] = self.end - self.start
            d["time"] = timing
        return d


@dataclass
class ToolPart:
    id: str
    message_id: str
    session_id: str
    call_id: str
    tool: str = "tool"
    kind: ToolKind = ToolKind.OTHER
    state: ToolState = field(default_factory=ToolState)
    type: str = field(default="tool", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messageID": self.message_id,
            "sessionID": self.session_id,
            "type": self.type,
            "callID": self.call_id,
            "tool": self.tool,
            "kind": self.kind.value,
            "state": self.state.to_dict(),
        }


Part = Union[TextPart, ReasoningPart, ToolPart]


@dataclass
class Message:
    id: str
    session_id: str
    role: MessageRole
    created: int = field(default_factory=now_ms)
    completed: int | None = None
    parts: list[Part] = field(default_factory=list)
    model_id: str | None = None
    provider_id: str | None = None

    def get_part(self, part_id: str) -> Part | None:
        for part in self.parts:
            if part.id == part_id:
                return part
        return None

    def upsert_part(self, part: Part) -> Part:
        """Append *part*, or replace the existing part with the same id."""
        for idx, existing in enumerate(self.parts):
            if existing.id == part.id:
                self.parts[idx] = part
                return part
        self.parts.append(part)
        return part

    def text_part(self) -> TextPart | None:
        for part in self.parts:
            if isinstance(part, TextPart):
                return part
        return None

    def reasoning_part(self) -> ReasoningPart | None:
        for part in self.parts:
            if isinstance(part, ReasoningPart):
                return part
        return None

    def tool_part(self, call_id: str) -> ToolPart | None:
        for part in self.parts:
            if isinstance(part, ToolPart) and part.call_id == call_id:
                return part
        return None

    def rebind(self, session_id: str) -> None:
        self.session_id = session_id
        for part in self.parts:
            part.session_id = session_id

    def to_dict(self) -> dict[str, Any]:
        timing: dict[str, int] = {"created": self.created}
        if self.completed is not None:
            timing["completed"] = self.completed
        return {
            "id": self.id,
            "sessionID": self.session_id,
            "role": self.role.value,
            "time": timing,
            "parts": [p.to_dict() for p in self.parts],
            "modelID": self.model_id or "copilot",
            "providerID": self.provider_id or "github",
        }
