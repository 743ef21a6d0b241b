"""Session state - ordered message history plus the live streaming cursor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from acp_bridge.shared.models.message import Message, MessageRole, now_ms


@dataclass
class Session:
    """Holds all conversation state for a session."""

    id: str
    cwd: str
    title: str
    project_id: str | None = None
    created: int = field(default_factory=now_ms)
    updated: int = field(default_factory=now_ms)
    messages: list[Message] = field(default_factory=list)
    # On-disk log directories, oldest first. A remap appends the agent's
    # new id; earlier directories keep the history recorded before it.
    log_ids: list[str] = field(default_factory=list)
    # True once the agent knows this id (session/new or session/load).
    agent_loaded: bool = False
    # The assistant message live chunks are routed to.
    active_assistant_message_id: str | None = None
    # True while session/load replays history the bridge already has.
    replaying: bool = False

    def get_message(self, message_id: str) -> Message | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def add_message(self, message: Message) -> Message:
        if self.get_message(message.id) is not None:
            raise ValueError(f"Duplicate message id {message.id} in session {self.id}")
        self.messages.append(message)
        self.updated = now_ms()
        return message

    def active_assistant_message(self) -> Message | None:
        if not self.active_assistant_message_id:
            return None
        msg = self.get_message(self.active_assistant_message_id)
        if msg is None or msg.role != MessageRole.ASSISTANT:
            return None
        return msg

    def replace_messages(self, messages: list[Message]) -> None:
        for msg in messages:
            msg.rebind(self.id)
        self.messages = messages
        if self.active_assistant_message() is None:
            self.active_assistant_message_id = None

    def rebind(self, session_id: str) -> None:
        self.id = session_id
        if session_id not in self.log_ids:
            self.log_ids.append(session_id)
        for msg in self.messages:
            msg.rebind(session_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "directory": self.cwd,
            "projectID": self.project_id,
            "title": self.title,
            "time": {
                "created": self.created,
                "updated": self.updated,
            },
        }
