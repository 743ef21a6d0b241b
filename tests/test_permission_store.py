from __future__ import annotations

import pytest

from acp_bridge.adapters.permission_store import PermissionStore, select_outcome
from acp_bridge.engine.errors import PermissionNotFound
from acp_bridge.shared.models.permission import PermissionRequest, ToolRef


def _request(options: list[str], **kwargs) -> PermissionRequest:
    return PermissionRequest(
        id=kwargs.pop("id", "perm-1"),
        session_id=kwargs.pop("session_id", "s1"),
        permission="Run command",
        options=options,
        always=[o for o in options if "always" in o],
        agent_request_id=kwargs.pop("agent_request_id", 12),
        **kwargs,
    )


def test_select_outcome_maps_replies_to_option_ids() -> None:
    req = _request(["allow_always", "allow_once", "reject_once"])
    assert select_outcome(req, "always") == {"outcome": "selected", "optionId": "allow_always"}
    assert select_outcome(req, "once") == {"outcome": "selected", "optionId": "allow_once"}
    assert select_outcome(req, "reject") == {"outcome": "cancelled"}


def test_select_outcome_falls_back() -> None:
    # No "once" option: the first option without "always" wins.
    assert select_outcome(_request(["always_yes", "proceed"]), "once")["optionId"] == "proceed"
    # No "always" option: "always" behaves like "once".
    assert select_outcome(_request(["allow_once"]), "always")["optionId"] == "allow_once"
    assert select_outcome(_request([]), "once")["optionId"] == "allow_once"


def test_store_tracks_call_ids_and_sessions() -> None:
    store = PermissionStore()
    req = _request(["allow_once"], tool=ToolRef("msg-1", "call-1"))
    other = _request(["allow_once"], id="perm-2", session_id="s2")
    store.add(req)
    store.add(other)

    assert store.for_call("call-1") is req
    assert store.list("s2") == [other]
    assert len(store) == 2

    store.rebind_session("s1", "s1-new")
    assert req.session_id == "s1-new"

    assert store.pop("perm-1") is req
    assert store.pop("perm-1") is None
    assert store.for_call("call-1") is None
    with pytest.raises(PermissionNotFound):
        store.require("perm-1")
