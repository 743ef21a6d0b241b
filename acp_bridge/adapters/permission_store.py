"""Permission requests the agent is still waiting on.

Each entry corresponds to exactly one outstanding agent-side
``session/request_permission`` call. An entry leaves the registry when
it is answered; answering twice is impossible because the second lookup
misses.
"""

from __future__ import annotations

import logging
from typing import Any

from acp_bridge.engine.errors import PermissionNotFound
from acp_bridge.shared.models.permission import PermissionRequest

logger = logging.getLogger(__name__)

REPLY_ONCE = "once"
REPLY_ALWAYS = "always"
REPLY_REJECT = "reject"
REPLIES = (REPLY_ONCE, REPLY_ALWAYS, REPLY_REJECT)

_FALLBACK_OPTION = "allow_once"


class PermissionStore:
    """Pending permission requests keyed by bridge permission id."""

    def __init__(self) -> None:
        self._pending: dict[str, PermissionRequest] = {}
        # tool call id -> permission id
        self._by_call: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, permission_id: str) -> bool:
        return permission_id in self._pending

    def add(self, request: PermissionRequest) -> None:
        self._pending[request.id] = request
        if request.tool is not None:
            self._by_call[request.tool.call_id] = request.id

    def get(self, permission_id: str) -> PermissionRequest | None:
        return self._pending.get(permission_id)

    def require(self, permission_id: str) -> PermissionRequest:
        request = self._pending.get(permission_id)
        if request is None:
            raise PermissionNotFound(permission_id)
        return request

    def for_call(self, call_id: str) -> PermissionRequest | None:
        permission_id = self._by_call.get(call_id)
        return self._pending.get(permission_id) if permission_id else None

    def pop(self, permission_id: str) -> PermissionRequest | None:
        request = self._pending.pop(permission_id, None)
        if request is not None and request.tool is not None:
            self._by_call.pop(request.tool.call_id, None)
        return request

    def list(self, session_id: str | None = None) -> list[PermissionRequest]:
        requests = list(self._pending.values())
        if session_id is not None:
            requests = [r for r in requests if r.session_id == session_id]
        return requests

    def rebind_session(self, old_id: str, new_id: str) -> None:
        for request in self._pending.values():
            if request.session_id == old_id:
                request.session_id = new_id


def select_outcome(request: PermissionRequest, reply: str) -> dict[str, Any]:
    """Translate a client reply into the ACP ``outcome`` object."""
    if reply == REPLY_REJECT:
        return {"outcome": "cancelled"}
    option_id: str | None = None
    if reply == REPLY_ALWAYS:
        option_id = next((o for o in request.options if "always" in o), None)
    if option_id is None:
        option_id = next(
            (o for o in request.options if "once" in o or "always" not in o),
            None,
        )
    if option_id is None:
        logger.warning(
            "Permission %s has no matching option for %r; using %s",
            request.id, reply, _FALLBACK_OPTION,
        )
        option_id = _FALLBACK_OPTION
    return {"outcome": "selected", "optionId": option_id}
