"""Turns ACP session updates into store mutations and client events.

The translator is driven by two consumer tasks, one per inbound
channel. Each handler takes the store's write lock, mutates without
awaiting, releases, and only then publishes, so SSE clients see events
in the order the agent produced them.

Besides decoded JSON-RPC messages the notification channel carries two
in-process markers. ``TurnFinished`` is enqueued after a prompt's
response (or error) and ``ReplayFinished`` after a session/load; both
sit behind every update the read loop queued before them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from acp_bridge.adapters import protocol
from acp_bridge.adapters.event_bus import (
    MESSAGE_UPDATED,
    PART_UPDATED,
    PERMISSION_ASKED,
    BroadcastHub,
)
from acp_bridge.adapters.permission_store import PermissionStore
from acp_bridge.adapters.protocol import JsonRpcNotification, JsonRpcRequest
from acp_bridge.engine.errors import BridgeError
from acp_bridge.shared.models.message import (
    Message,
    MessageRole,
    ReasoningPart,
    TextPart,
    ToolKind,
    ToolPart,
    ToolState,
    TextPayload,
    now_ms,
    payload_from_wire,
)
from acp_bridge.shared.models.permission import PermissionRequest, ToolRef
from acp_bridge.shared.models.session import Session
from acp_bridge.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class TurnFinished:
    session_id: str
    stop_reason: str | None = None
    error: str | None = None


@dataclass
class ReplayFinished:
    session_id: str


Event = tuple[str, dict[str, Any]]


class SessionUpdateTranslator:
    def __init__(
        self,
        store: SessionStore,
        hub: BroadcastHub,
        permissions: PermissionStore,
        strict_tool_status: bool = False,
    ) -> None:
        self._store = store
        self._hub = hub
        self._permissions = permissions
        self._strict = strict_tool_status

    # ── Channel consumers ──

    async def consume_notifications(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                await self.handle_notification(item)
            except BridgeError as exc:
                logger.warning("Dropped notification %r: %s", item, exc)
            except Exception:
                logger.exception("Notification handler failed for %r", item)
            finally:
                queue.task_done()

    async def consume_requests(self, queue: asyncio.Queue, client: Any) -> None:
        while True:
            request = await queue.get()
            try:
                await self.handle_request(request, client)
            except BridgeError as exc:
                logger.warning("Failed to handle agent request %s: %s", request.method, exc)
            except Exception:
                logger.exception("Agent request handler failed for %s", request.method)
            finally:
                queue.task_done()

    # ── Notifications ──

    async def handle_notification(self, item: Any) -> None:
        if isinstance(item, TurnFinished):
            await self.finish_turn(item)
        elif isinstance(item, ReplayFinished):
            await self.finish_replay(item.session_id)
        elif isinstance(item, JsonRpcNotification):
            if item.method == protocol.SESSION_UPDATE:
                await self.handle_session_update(item.params)
            else:
                logger.debug("Ignoring ACP notification %s", item.method)
        else:
            logger.warning("Unexpected item on notification channel: %r", item)

    async def handle_session_update(self, params: dict[str, Any]) -> None:
        session_id = params.get("sessionId")
        update = params.get("update")
        if not isinstance(session_id, str) or not isinstance(update, dict):
            logger.warning("Malformed session/update: %r", params)
            return
        kind = update.get("sessionUpdate")

        events: list[Event] = []
        async with self._store.writing():
            session = self._store.get(session_id)
            if session is None:
                logger.debug("session/update for unknown session %s (%s)", session_id, kind)
                return
            if session.replaying:
                return
            if kind == "agent_message_chunk":
                self._append_chunk(session, update, events, reasoning=False)
            elif kind == "agent_thought_chunk":
                self._append_chunk(session, update, events, reasoning=True)
            elif kind == "tool_call":
                self._tool_call(session, update, events)
            elif kind == "tool_call_update":
                self._tool_call_update(session, update, events)
            else:
                # state, plan, user_message_chunk, ...
                logger.debug("Ignoring session update %s for %s", kind, session_id)
        self._publish(events)

    def _ensure_assistant_message(self, session: Session, events: list[Event]) -> Message:
        message = session.active_assistant_message()
        if message is not None:
            return message
        message = Message(
            id=self._store.new_message_id(),
            session_id=session.id,
            role=MessageRole.ASSISTANT,
        )
        session.add_message(message)
        session.active_assistant_message_id = message.id
        events.append((MESSAGE_UPDATED, {"info": message.to_dict()}))
        return message

    def _append_chunk(
        self,
        session: Session,
        update: dict[str, Any],
        events: list[Event],
        reasoning: bool,
    ) -> None:
        content = update.get("content")
        if not isinstance(content, dict) or content.get("type") != "text":
            return
        text = content.get("text")
        if not isinstance(text, str):
            return
        message = self._ensure_assistant_message(session, events)
        part: TextPart | ReasoningPart | None
        if reasoning:
            part = message.reasoning_part()
            if part is None:
                part = message.upsert_part(ReasoningPart(self._store.new_part_id(), message.id, session.id))
            part.thinking += text
        else:
            part = message.text_part()
            if part is None:
                part = message.upsert_part(TextPart(self._store.new_part_id(), message.id, session.id))
            part.text += text
        session.updated = now_ms()
        events.append((PART_UPDATED, {"part": part.to_dict()}))

    def _tool_call(self, session: Session, update: dict[str, Any], events: list[Event]) -> None:
        call_id = update.get("toolCallId")
        if not isinstance(call_id, str) or not call_id:
            logger.warning("tool_call without toolCallId in %s", session.id)
            return
        message = self._ensure_assistant_message(session, events)
        if message.tool_part(call_id) is not None:
            self._tool_call_update(session, update, events)
            return
        status = protocol.map_tool_status(update.get("status", "pending"), strict=self._strict)
        at = now_ms()
        state = ToolState(status=status, start=at)
        if "rawInput" in update:
            state.input = payload_from_wire(update["rawInput"])
        if status.terminal:
            state.end = at
        part = ToolPart(
            id=self._store.new_part_id(),
            message_id=message.id,
            session_id=session.id,
            call_id=call_id,
            tool=update.get("title") or "tool",
            kind=ToolKind.parse(update.get("kind")),
            state=state,
        )
        message.upsert_part(part)
        session.updated = at
        events.append((PART_UPDATED, {"part": part.to_dict()}))

    def _find_tool_part(self, session: Session, call_id: str) -> ToolPart | None:
        active = session.active_assistant_message()
        if active is not None:
            part = active.tool_part(call_id)
            if part is not None:
                return part
        for message in reversed(session.messages):
            if message.role == MessageRole.ASSISTANT:
                part = message.tool_part(call_id)
                if part is not None:
                    return part
        return None

    def _tool_call_update(self, session: Session, update: dict[str, Any], events: list[Event]) -> None:
        call_id = update.get("toolCallId")
        if not isinstance(call_id, str):
            return
        part = self._find_tool_part(session, call_id)
        if part is None:
            logger.debug("tool_call_update for unknown call %s in %s", call_id, session.id)
            return
        state = part.state
        at = now_ms()

        if "status" in update and update["status"] is not None:
            status = protocol.map_tool_status(update["status"], strict=self._strict)
            if state.status.terminal or status.rank < state.status.rank:
                if status != state.status:
                    logger.debug(
                        "Ignoring tool status %s -> %s for %s",
                        state.status.value, status.value, call_id,
                    )
            elif status.terminal:
                state.finish(status, at)
            else:
                state.status = status
                if state.start is None:
                    state.start = at

        text = protocol.first_text_content(update.get("content"))
        if text is not None:
            state.output = TextPayload(text)
        elif "rawOutput" in update:
            state.output = payload_from_wire(update["rawOutput"])
        if "rawInput" in update:
            state.input = payload_from_wire(update["rawInput"])
        if update.get("title"):
            part.tool = update["title"]
        if update.get("kind"):
            part.kind = ToolKind.parse(update["kind"])
        session.updated = at
        events.append((PART_UPDATED, {"part": part.to_dict()}))

    # ── Markers ──

    async def finish_turn(self, marker: TurnFinished) -> None:
        events: list[Event] = []
        async with self._store.writing():
            session = self._store.get(marker.session_id)
            if session is None:
                return
            message = session.active_assistant_message()
            if message is not None:
                message.completed = now_ms()
                events.append((MESSAGE_UPDATED, {"info": message.to_dict()}))
            session.active_assistant_message_id = None
            session.updated = now_ms()
        if marker.error:
            logger.warning("Turn in %s ended with error: %s", marker.session_id, marker.error)
        else:
            logger.info("Turn in %s finished (stop_reason=%s)", marker.session_id, marker.stop_reason)
        self._publish(events)

    async def finish_replay(self, session_id: str) -> None:
        async with self._store.writing():
            session = self._store.get(session_id)
            if session is not None:
                session.replaying = False
        logger.debug("Replay finished for %s", session_id)

    # ── Inbound requests ──

    async def handle_request(self, request: JsonRpcRequest, client: Any) -> None:
        if request.method != protocol.REQUEST_PERMISSION:
            logger.warning("Agent sent unsupported request %s", request.method)
            await client.send_response(
                request.id,
                error={"code": protocol.METHOD_NOT_FOUND, "message": f"Method not found: {request.method}"},
            )
            return
        permission = await self.register_permission(request)
        if permission is None:
            await client.send_response(request.id, result={"outcome": {"outcome": "cancelled"}})

    async def register_permission(self, request: JsonRpcRequest) -> PermissionRequest | None:
        params = request.params
        session_id = params.get("sessionId")
        if not isinstance(session_id, str):
            logger.warning("Permission request without sessionId: %r", params)
            return None
        raw_options = params.get("options")
        raw_options = raw_options if isinstance(raw_options, list) else []
        option_ids = [
            str(o.get("optionId") or o.get("id"))
            for o in raw_options
            if isinstance(o, dict) and (o.get("optionId") or o.get("id"))
        ]
        tool_call = params.get("toolCall") if isinstance(params.get("toolCall"), dict) else {}
        title = params.get("title") or tool_call.get("title") or "Permission requested"
        call_id = params.get("toolCallId") or tool_call.get("toolCallId")

        async with self._store.writing():
            session = self._store.get(session_id)
            message_id = session.active_assistant_message_id if session is not None else None
            permission = PermissionRequest(
                id=self._store.new_permission_id(),
                session_id=session_id,
                permission=str(title),
                options=option_ids,
                always=[o for o in option_ids if "always" in o],
                tool=ToolRef(message_id or "", str(call_id)) if call_id else None,
                metadata={"description": params.get("description"), "options": raw_options},
                agent_request_id=request.id,
            )
            self._permissions.add(permission)
        logger.info(
            "Permission %s asked in %s: %s (options=%s)",
            permission.id, session_id, permission.permission, option_ids,
        )
        self._hub.publish(PERMISSION_ASKED, permission.to_dict())
        return permission

    def _publish(self, events: list[Event]) -> None:
        for event_type, properties in events:
            self._hub.publish(event_type, properties)
