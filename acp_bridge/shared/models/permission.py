"""Pending permission request model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolRef:
    message_id: str
    call_id: str


@dataclass
class PermissionRequest:
    id: str
    session_id: str
    permission: str
    options: list[str] = field(default_factory=list)
    always: list[str] = field(default_factory=list)
    tool: ToolRef | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # JSON-RPC id of the agent's session/request_permission call.
    agent_request_id: int | str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionID": self.session_id,
            "permission": self.permission,
            "patterns": [],
            "metadata": self.metadata,
            "always": self.always,
            "tool": (
                {"messageID": self.tool.message_id, "callID": self.tool.call_id}
                if self.tool else None
            ),
        }
