from __future__ import annotations

import json
from pathlib import Path

import pytest

from acp_bridge.shared.models.message import MessageRole, ReasoningPart, TextPart, ToolPart, ToolStatus
from acp_bridge.shared.services.event_log import (
    SessionLogLoader,
    fold_events,
    parse_descriptor,
    parse_timestamp,
)
from acp_bridge.shared.services.session_store import SessionStore


def _lines(*events: dict) -> list[str]:
    return [json.dumps(e) for e in events]


def _write_session(root: Path, name: str, descriptor: str | None, events: list[dict]) -> Path:
    directory = root / name
    directory.mkdir(parents=True)
    if descriptor is not None:
        (directory / "workspace.yaml").write_text(descriptor, encoding="utf-8")
    (directory / "events.jsonl").write_text("\n".join(_lines(*events)) + "\n", encoding="utf-8")
    return directory


BASIC_EVENTS = [
    {"type": "user.message", "id": "m1", "timestamp": "2025-01-01T00:00:00Z", "data": {"content": "hi"}},
    {"type": "assistant.turn_start", "id": "t1", "timestamp": "2025-01-01T00:00:01Z", "data": {}},
    {"type": "assistant.message", "id": "t1", "timestamp": "2025-01-01T00:00:02Z", "data": {"content": "hello"}},
    {"type": "assistant.turn_end", "id": "t1", "timestamp": "2025-01-01T00:00:03Z", "data": {}},
]


def test_parse_descriptor_strips_quotes_and_ignores_noise() -> None:
    content = (
        "# comment\n"
        "cwd: '/home/me/project'\n"
        "\n"
        "summary: \"Fix the: parser\"\n"
        "no colon here\n"
        "created_at: 2025-01-01T00:00:00Z\n"
    )
    assert parse_descriptor(content) == {
        "cwd": "/home/me/project",
        "summary": "Fix the: parser",
        "created_at": "2025-01-01T00:00:00Z",
    }


def test_parse_timestamp() -> None:
    assert parse_timestamp("1970-01-01T00:00:01Z") == 1000
    assert parse_timestamp(1234) == 1234
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_basic_turn_reconstructs_user_and_assistant() -> None:
    messages = fold_events("s1", _lines(*BASIC_EVENTS))
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    user, assistant = messages
    assert user.id == "m1"
    assert user.parts[0].id == "part-m1"
    assert user.parts[0].text == "hi"
    assert isinstance(assistant.parts[0], TextPart)
    assert assistant.parts[0].text == "hello"
    assert assistant.completed is not None


def test_fold_is_deterministic() -> None:
    lines = _lines(*BASIC_EVENTS, {"type": "user.message", "timestamp": 5, "data": {"content": "no id"}})
    first = [m.to_dict() for m in fold_events("s1", lines)]
    second = [m.to_dict() for m in fold_events("s1", lines)]
    assert first == second
    assert first[-1]["id"] == "evt-5"


def test_tool_requests_and_completion() -> None:
    lines = _lines(
        {"type": "assistant.turn_start", "id": "e1", "timestamp": 1000, "data": {"turnId": "0"}},
        {"type": "assistant.message", "id": "e2", "timestamp": 1100, "data": {
            "turnId": "0",
            "content": "looking",
            "reasoningText": "hmm",
            "modelId": "gpt-5",
            "toolRequests": [{"toolCallId": "c1", "name": "bash", "arguments": {"cmd": "ls"}}],
        }},
        {"type": "tool.execution_complete", "id": "e3", "timestamp": 1500, "data": {
            "toolCallId": "c1", "success": False, "result": "exit 1",
        }},
        {"type": "assistant.turn_end", "id": "e4", "timestamp": 1600, "data": {"turnId": "0"}},
    )
    [message] = fold_events("s1", lines)
    assert message.id == "turn-0-e1"
    assert message.model_id == "gpt-5"
    assert message.completed == 1600
    kinds = {type(p) for p in message.parts}
    assert kinds == {TextPart, ReasoningPart, ToolPart}
    tool = message.tool_part("c1")
    assert tool.id == "part-tool-c1"
    assert tool.state.status is ToolStatus.ERROR
    assert tool.state.input.to_wire() == {"cmd": "ls"}
    assert tool.state.output.to_wire() == "exit 1"
    assert tool.state.duration == 400


def test_interleaved_turns_are_tracked_by_turn_id() -> None:
    lines = _lines(
        {"type": "assistant.turn_start", "id": "a", "timestamp": 1, "data": {"turnId": "1"}},
        {"type": "assistant.turn_start", "id": "b", "timestamp": 2, "data": {"turnId": "2"}},
        {"type": "assistant.message", "id": "c", "timestamp": 3, "data": {"turnId": "1", "content": "one"}},
        {"type": "assistant.message", "id": "d", "timestamp": 4, "data": {"content": "two"}},
        {"type": "assistant.turn_end", "id": "e", "timestamp": 5, "data": {"turnId": "1"}},
    )
    first, second = fold_events("s1", lines)
    assert first.text_part().text == "one"
    assert first.completed == 5
    assert second.text_part().text == "two"
    assert second.completed is None


def test_malformed_and_unknown_lines_are_skipped() -> None:
    lines = ["{broken", "", json.dumps({"type": "session.info", "id": "x"})] + _lines(*BASIC_EVENTS)
    assert len(fold_events("s1", lines)) == 2


@pytest.mark.asyncio
async def test_reload_adds_sessions_and_skips_unusable_directories(tmp_path: Path) -> None:
    _write_session(tmp_path, "s-good", "cwd: /work\nsummary: Good one\n", BASIC_EVENTS)
    _write_session(tmp_path, "s-nodesc", None, BASIC_EVENTS)
    _write_session(tmp_path, "s-empty", "# nothing here\n", BASIC_EVENTS)
    store = SessionStore()
    loader = SessionLogLoader(tmp_path, default_cwd="/fallback")

    stats = await loader.reload(store)

    assert (stats.new, stats.skipped_no_descriptor, stats.skipped_parse_error) == (1, 1, 1)
    session = store.require("s-good")
    assert session.title == "Good one"
    assert session.cwd == "/work"
    assert session.project_id.startswith("proj-")
    assert len(session.messages) == 2


@pytest.mark.asyncio
async def test_reload_is_idempotent_and_incremental(tmp_path: Path) -> None:
    directory = _write_session(tmp_path, "s1", "git_root: /repo\n", BASIC_EVENTS)
    store = SessionStore()
    loader = SessionLogLoader(tmp_path, default_cwd="/fallback")
    await loader.reload(store)
    before = [m.to_dict() for m in store.require("s1").messages]

    stats = await loader.reload(store)
    assert stats.new == 0
    assert len(store) == 1
    assert [m.to_dict() for m in store.require("s1").messages] == before
    assert store.require("s1").cwd == "/repo"

    with (directory / "events.jsonl").open("a", encoding="utf-8") as fh:
        fh.write(json.dumps({"type": "user.message", "id": "m2", "timestamp": 9, "data": {"content": "again"}}) + "\n")
    _write_session(tmp_path, "s2", "cwd: /other\n", [])
    stats = await loader.reload(store)
    assert stats.new == 1
    assert [m.id for m in store.require("s1").messages] == ["m1", "t1", "m2"]
    assert store.require("s2").messages == []


@pytest.mark.asyncio
async def test_reload_does_not_duplicate_remapped_session(tmp_path: Path) -> None:
    _write_session(tmp_path, "old-id", "cwd: /work\n", BASIC_EVENTS)
    store = SessionStore()
    loader = SessionLogLoader(tmp_path, default_cwd="/fallback")
    await loader.reload(store)
    async with store.writing():
        store.remap("old-id", "new-id")

    await loader.reload(store)

    assert "old-id" not in store
    assert len(store) == 1
    session = store.require("new-id")
    assert all(m.session_id == "new-id" for m in session.messages)


@pytest.mark.asyncio
async def test_reload_after_remap_folds_old_then_new_directory(tmp_path: Path) -> None:
    _write_session(tmp_path, "hist-1", "cwd: /work\n", BASIC_EVENTS)
    store = SessionStore()
    loader = SessionLogLoader(tmp_path, default_cwd="/fallback")
    await loader.reload(store)
    async with store.writing():
        store.remap("hist-1", "agent-1")
    _write_session(tmp_path, "agent-1", "cwd: /work\n", [
        {"type": "user.message", "id": "m9", "timestamp": 5000, "data": {"content": "new turn"}},
    ])

    stats = await loader.reload(store)

    assert stats.new == 0
    assert stats.reloaded == 1
    assert len(store) == 1
    session = store.require("agent-1")
    assert session.log_ids == ["hist-1", "agent-1"]
    assert [m.id for m in session.messages] == ["m1", "t1", "m9"]
    assert session.messages[-1].parts[0].text == "new turn"
    assert all(m.session_id == "agent-1" for m in session.messages)


def test_delete_refuses_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "state"
    _write_session(root, "s1", "cwd: /w\n", [])
    (tmp_path / "outside").mkdir()
    loader = SessionLogLoader(root, default_cwd="/")
    assert loader.delete("../outside") is False
    assert (tmp_path / "outside").exists()
    assert loader.delete("s1") is True
    assert not (root / "s1").exists()
    assert loader.delete("s1") is False
