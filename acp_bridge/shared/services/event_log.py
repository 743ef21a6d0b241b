"""Session reconstruction from the agent's on-disk session logs.

Storage layout (owned by the agent, read-only here except for deletion):
    <session_state_dir>/{session_id}/workspace.yaml   descriptor
    <session_state_dir>/{session_id}/events.jsonl     append-only events

The descriptor is a restricted ``key: value`` format, not full YAML.
The event stream is folded into messages by ``EventLogFolder``; the fold
is a pure function of the lines, so replaying a log always produces the
same messages.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from acp_bridge.shared.models.message import (
    Message,
    MessageRole,
    ReasoningPart,
    TextPart,
    ToolArguments,
    ToolKind,
    ToolPart,
    ToolState,
    ToolStatus,
    now_ms,
    payload_from_wire,
)
from acp_bridge.shared.models.session import Session
from acp_bridge.shared.services.project import generate_project_id
from acp_bridge.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DESCRIPTOR_FILE = "workspace.yaml"
EVENTS_FILE = "events.jsonl"


def parse_descriptor(content: str) -> dict[str, str]:
    """Parse ``key: value`` lines; blank, comment and colon-less lines are ignored."""
    result: dict[str, str] = {}
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if key:
            result[key] = value
    return result


def parse_timestamp(value: Any) -> int | None:
    """ISO-8601 string (or epoch ms number) to epoch milliseconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class EventLogFolder:
    """Fold one session's event lines into messages."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._messages: list[Message] = []
        self._message_ids: set[str] = set()
        self._open_turns: dict[str, Message] = {}
        self._current: Message | None = None
        self._last_ts = 0
        self._handlers = {
            "user.message": self._on_user_message,
            "assistant.turn_start": self._on_turn_start,
            "assistant.message": self._on_assistant_message,
            "tool.execution_complete": self._on_tool_complete,
            "assistant.turn_end": self._on_turn_end,
        }

    def fold(self, lines: Iterable[str]) -> list[Message]:
        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed event line %d in %s", lineno, self._session_id)
                continue
            if not isinstance(event, dict):
                continue
            handler = self._handlers.get(event.get("type"))
            if handler is None:
                continue
            ts = parse_timestamp(event.get("timestamp"))
            if ts is not None:
                self._last_ts = ts
            data = event.get("data")
            if not isinstance(data, dict):
                data = {}
            event_id = event.get("id")
            event_id = str(event_id) if event_id else f"evt-{lineno}"
            try:
                handler(event_id, data, self._last_ts)
            except (TypeError, ValueError, AttributeError):
                logger.debug(
                    "Skipping unusable %s event at line %d in %s",
                    event.get("type"), lineno, self._session_id, exc_info=True,
                )
        return self._messages

    def _unique_id(self, candidate: str) -> str:
        msg_id = candidate
        n = 1
        while msg_id in self._message_ids:
            n += 1
            msg_id = f"{candidate}-{n}"
        self._message_ids.add(msg_id)
        return msg_id

    def _on_user_message(self, event_id: str, data: dict[str, Any], ts: int) -> None:
        msg_id = self._unique_id(event_id)
        text = data.get("content") or data.get("transformedContent") or ""
        msg = Message(id=msg_id, session_id=self._session_id, role=MessageRole.USER, created=ts)
        msg.parts.append(TextPart(
            id=f"part-{msg_id}",
            message_id=msg_id,
            session_id=self._session_id,
            text=str(text),
        ))
        self._messages.append(msg)

    def _on_turn_start(self, event_id: str, data: dict[str, Any], ts: int) -> None:
        turn_id = data.get("turnId")
        candidate = f"turn-{turn_id}-{event_id}" if turn_id else event_id
        msg = Message(
            id=self._unique_id(candidate),
            session_id=self._session_id,
            role=MessageRole.ASSISTANT,
            created=ts,
        )
        self._messages.append(msg)
        self._open_turns[str(turn_id) if turn_id else msg.id] = msg
        self._current = msg

    def _turn_for(self, data: dict[str, Any]) -> Message | None:
        turn_id = data.get("turnId")
        if turn_id and str(turn_id) in self._open_turns:
            return self._open_turns[str(turn_id)]
        return self._current

    def _on_assistant_message(self, event_id: str, data: dict[str, Any], ts: int) -> None:
        msg = self._turn_for(data)
        if msg is None:
            return
        if data.get("content"):
            msg.upsert_part(TextPart(
                id=f"part-text-{event_id}",
                message_id=msg.id,
                session_id=self._session_id,
                text=str(data["content"]),
            ))
        if data.get("reasoningText"):
            msg.upsert_part(ReasoningPart(
                id=f"part-thinking-{event_id}",
                message_id=msg.id,
                session_id=self._session_id,
                thinking=str(data["reasoningText"]),
            ))
        for request in data.get("toolRequests") or []:
            if not isinstance(request, dict) or not request.get("toolCallId"):
                continue
            call_id = str(request["toolCallId"])
            arguments = request.get("arguments")
            msg.upsert_part(ToolPart(
                id=f"part-tool-{call_id}",
                message_id=msg.id,
                session_id=self._session_id,
                call_id=call_id,
                tool=str(request.get("name") or "tool"),
                kind=ToolKind.parse(request.get("kind")),
                state=ToolState(
                    status=ToolStatus.COMPLETED,
                    input=payload_from_wire(arguments) if arguments is not None else ToolArguments(),
                    start=ts,
                ),
            ))
        if data.get("modelId"):
            msg.model_id = str(data["modelId"])

    def _on_tool_complete(self, event_id: str, data: dict[str, Any], ts: int) -> None:
        call_id = data.get("toolCallId")
        if not call_id:
            return
        candidates = [self._current] if self._current else []
        candidates += [m for m in reversed(self._open_turns.values()) if m is not self._current]
        for msg in candidates:
            part = msg.tool_part(str(call_id))
            if part is None:
                continue
            failed = data.get("success") is False
            part.state.output = payload_from_wire(data.get("result"))
            part.state.finish(ToolStatus.ERROR if failed else ToolStatus.COMPLETED, ts)
            return

    def _on_turn_end(self, event_id: str, data: dict[str, Any], ts: int) -> None:
        turn_id = data.get("turnId")
        msg = self._open_turns.pop(str(turn_id), None) if turn_id else None
        if msg is None:
            msg = self._current
            if msg is None:
                return
            for key, open_msg in list(self._open_turns.items()):
                if open_msg is msg:
                    del self._open_turns[key]
        msg.completed = ts
        if msg is self._current:
            self._current = next(reversed(self._open_turns.values()), None)


def fold_events(session_id: str, lines: Iterable[str]) -> list[Message]:
    return EventLogFolder(session_id).fold(lines)


# ── Directory scanning ──


@dataclass
class SessionLog:
    """Raw contents of one session log directory."""

    log_id: str
    directory: Path
    descriptor: dict[str, str] | None
    event_lines: list[str]
    descriptor_error: bool = False


def read_session_log(directory: Path) -> SessionLog:
    descriptor: dict[str, str] | None = None
    descriptor_error = False
    descriptor_path = directory / DESCRIPTOR_FILE
    if descriptor_path.is_file():
        try:
            descriptor = parse_descriptor(descriptor_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            descriptor_error = True
        else:
            if not descriptor:
                descriptor = None
                descriptor_error = True

    event_lines: list[str] = []
    events_path = directory / EVENTS_FILE
    if events_path.is_file():
        try:
            event_lines = events_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            logger.warning("Failed to read %s", events_path)

    return SessionLog(
        log_id=directory.name,
        directory=directory,
        descriptor=descriptor,
        event_lines=event_lines,
        descriptor_error=descriptor_error,
    )


def scan_session_logs(root: Path) -> list[SessionLog]:
    """Read every session directory under *root*, sorted by name."""
    if not root.is_dir():
        logger.warning("Session state directory %s does not exist", root)
        return []
    logs: list[SessionLog] = []
    for entry in sorted(root.iterdir()):
        if entry.is_dir():
            logs.append(read_session_log(entry))
    return logs


def _default_title(created: int) -> str:
    local = datetime.fromtimestamp(created / 1000).astimezone()
    return f"Session - {local.strftime('%Y-%m-%d %H:%M:%S')}"


def session_from_log(log: SessionLog, default_cwd: str) -> Session:
    descriptor = log.descriptor or {}
    cwd = descriptor.get("cwd") or descriptor.get("git_root") or default_cwd
    created = parse_timestamp(descriptor.get("created_at")) or now_ms()
    updated = parse_timestamp(descriptor.get("updated_at")) or created
    session = Session(
        id=log.log_id,
        cwd=cwd,
        title=descriptor.get("summary") or _default_title(created),
        project_id=generate_project_id(cwd),
        created=created,
        updated=updated,
        log_ids=[log.log_id],
    )
    session.replace_messages(fold_events(session.id, log.event_lines))
    return session


@dataclass
class ReloadStats:
    new: int = 0
    reloaded: int = 0
    skipped_no_descriptor: int = 0
    skipped_parse_error: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "new": self.new,
            "reloaded": self.reloaded,
            "skippedNoDescriptor": self.skipped_no_descriptor,
            "skippedParseError": self.skipped_parse_error,
        }


class SessionLogLoader:
    """Load and reload the session-log tree into a SessionStore."""

    def __init__(self, root: Path, default_cwd: str) -> None:
        self._root = root
        self._default_cwd = default_cwd

    @property
    def root(self) -> Path:
        return self._root

    async def reload(self, store: SessionStore) -> ReloadStats:
        """Re-scan the tree; directory IO runs off the event loop."""
        logs = await asyncio.to_thread(scan_session_logs, self._root)
        async with store.writing():
            stats = self.apply(store, logs)
        logger.info(
            "Reload complete from %s: %d new, %d reloaded, %d no descriptor, "
            "%d parse errors, %d total sessions",
            self._root, stats.new, stats.reloaded, stats.skipped_no_descriptor,
            stats.skipped_parse_error, len(store),
        )
        return stats

    def apply(self, store: SessionStore, logs: list[SessionLog]) -> ReloadStats:
        """Merge scanned logs into *store*. Caller holds ``store.writing()``."""
        stats = ReloadStats()
        by_id = {log.log_id: log for log in logs}
        claimed: set[str] = set()
        for session in store.list():
            if session.id in by_id and session.id not in session.log_ids:
                session.log_ids.append(session.id)
            owned = [by_id[log_id] for log_id in session.log_ids if log_id in by_id]
            if not owned:
                continue
            claimed.update(log.log_id for log in owned)
            # A remapped session spans several directories; fold them in order.
            lines = [line for log in owned for line in log.event_lines]
            before = len(session.messages)
            session.replace_messages(fold_events(session.id, lines))
            stats.reloaded += 1
            if len(session.messages) != before:
                logger.info(
                    "Reloaded events for session %s (%d -> %d messages)",
                    session.id, before, len(session.messages),
                )

        for log in logs:
            if log.log_id in claimed:
                continue
            if log.descriptor_error:
                stats.skipped_parse_error += 1
                logger.info("Failed to parse %s for session %s", DESCRIPTOR_FILE, log.log_id)
                continue
            if log.descriptor is None:
                stats.skipped_no_descriptor += 1
                continue
            session = session_from_log(log, self._default_cwd)
            store.add(session)
            stats.new += 1
            logger.debug("Loaded session %s (%s)", session.id, session.title)
        return stats

    def delete(self, log_id: str) -> bool:
        """Remove a session's log directory. Returns True if it existed."""
        directory = self._root / log_id
        if directory.resolve().parent != self._root.resolve():
            logger.warning("Refusing to delete %s outside %s", directory, self._root)
            return False
        if not directory.is_dir():
            return False
        try:
            shutil.rmtree(directory)
        except OSError:
            logger.warning("Failed to delete session directory %s", directory, exc_info=True)
            return False
        logger.info("Deleted session directory %s", directory)
        return True
