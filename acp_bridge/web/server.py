"""HTTP + SSE front for the ACP bridge.

aiohttp server exposing session, message and permission endpoints to web
clients and streaming store changes over Server-Sent Events. All agent
traffic goes through one ACPClient; all state lives in one SessionStore.

Endpoints:
    GET    /global/event                       SSE stream
    POST   /session/reload                     re-scan the session-log tree
    GET    /session                            list sessions
    POST   /session                            create (agent session/new)
    GET    /session/{id}                       get one
    DELETE /session/{id}                       delete (memory + log dir)
    PATCH  /session/{id}                       rename
    GET    /session/{id}/message               messages with parts
    POST   /session/{id}/message               send a prompt
    POST   /session/{id}/abort                 session/cancel
    GET    /session/{id}/message/{mid}/part    parts of one message
    GET    /permission                         pending permission requests
    POST   /permission/{id}/reply              answer a permission request
    GET    /provider, /agent, /project, /project/current
    GET    /health
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from datetime import datetime
from typing import Any

from aiohttp import web

from acp_bridge.adapters.event_bus import (
    MESSAGE_UPDATED,
    PART_UPDATED,
    PERMISSION_REPLIED,
    BroadcastHub,
)
from acp_bridge.adapters.permission_store import REPLIES, PermissionStore, select_outcome
from acp_bridge.adapters.translator import ReplayFinished, SessionUpdateTranslator, TurnFinished
from acp_bridge.engine.config import BridgeConfig
from acp_bridge.engine.errors import BadRequest, BridgeError, PermissionNotFound, SessionNotFound
from acp_bridge.engine.supervisor import AgentProcess
from acp_bridge.shared.models.message import Message, MessageRole, TextPart, now_ms
from acp_bridge.shared.models.session import Session
from acp_bridge.shared.services.event_log import SessionLogLoader
from acp_bridge.shared.services.project import generate_project_id, project_name
from acp_bridge.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DIRECTORY_HEADER = "x-opencode-directory"
PROVIDER_ID = "github-copilot"

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": f"Content-Type, {DIRECTORY_HEADER}",
}


class BridgeServer:
    """aiohttp application wiring the ACP client to web clients."""

    def __init__(
        self,
        config: BridgeConfig,
        client: Any,
        *,
        store: SessionStore | None = None,
        hub: BroadcastHub | None = None,
        permissions: PermissionStore | None = None,
        loader: SessionLogLoader | None = None,
        agent: AgentProcess | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._store = store or SessionStore()
        self._hub = hub or BroadcastHub(config.sse_queue_size)
        self._permissions = permissions or PermissionStore()
        self._loader = loader or SessionLogLoader(config.session_state_dir, config.cwd)
        self._agent = agent
        self._translator = SessionUpdateTranslator(
            self._store, self._hub, self._permissions,
            strict_tool_status=config.strict_tool_status,
        )
        # Serialises agent attachment (load / new + remap) per session.
        self._attach_locks: dict[str, asyncio.Lock] = {}
        # Old session id -> id the agent assigned on fallback.
        self._aliases: dict[str, str] = {}
        self._prompt_tasks: set[asyncio.Task] = set()
        self._consumers: list[asyncio.Task] = []
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._cors_middleware,
            self._error_middleware,
        ])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    @property
    def permissions(self) -> PermissionStore:
        return self._permissions

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204, headers=_CORS_HEADERS)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(_CORS_HEADERS)
            raise
        if not response.prepared:
            response.headers.update(_CORS_HEADERS)
        return response

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BridgeError as exc:
            if exc.status >= 500:
                logger.error("HTTP %s %s failed: %s", request.method, request.path, exc)
            return web.json_response({"error": str(exc)}, status=exc.status)
        except Exception as exc:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return web.json_response({"error": str(exc) or exc.__class__.__name__}, status=500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/global/event", self._handle_sse)
        # Sessions
        r.add_post("/session/reload", self._handle_reload_sessions)
        r.add_get("/session", self._handle_list_sessions)
        r.add_post("/session", self._handle_create_session)
        r.add_get("/session/{id}", self._handle_get_session)
        r.add_delete("/session/{id}", self._handle_delete_session)
        r.add_patch("/session/{id}", self._handle_rename_session)
        # Messages
        r.add_get("/session/{id}/message", self._handle_get_messages)
        r.add_post("/session/{id}/message", self._handle_send_message)
        r.add_post("/session/{id}/abort", self._handle_abort)
        r.add_get("/session/{id}/message/{message_id}/part", self._handle_get_parts)
        # Permissions
        r.add_get("/permission", self._handle_list_permissions)
        r.add_post("/permission/{id}/reply", self._handle_permission_reply)
        # Metadata
        r.add_get("/provider", self._handle_get_providers)
        r.add_get("/agent", self._handle_get_agents)
        r.add_get("/project", self._handle_list_projects)
        r.add_get("/project/current", self._handle_get_current_project)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._consumers = [
            asyncio.create_task(
                self._translator.consume_notifications(self._client.notifications),
                name="acp-notifications",
            ),
            asyncio.create_task(
                self._translator.consume_requests(self._client.requests, self._client),
                name="acp-requests",
            ),
        ]

    async def _on_shutdown(self, app: web.Application) -> None:
        self._hub.close_all()
        for task in list(self._prompt_tasks):
            task.cancel()

    async def _on_cleanup(self, app: web.Application) -> None:
        tasks = self._consumers + list(self._prompt_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumers = []

    async def start(self) -> None:
        """Sequential startup: history, agent, handshake, then serve.

        Any failure propagates to the caller and is fatal.
        """
        stats = await self._loader.reload(self._store)
        logger.info("Loaded %d historical session(s) from %s", stats.new, self._loader.root)

        if self._agent is not None:
            await self._agent.start()
            await self._agent.wait_until_ready(
                self._config.startup_attempts, self._config.startup_interval,
            )
        await self._client.connect()
        await self._client.initialize(timeout=self._config.request_timeout)
        logger.info("ACP handshake complete (loadSession=%s)", self._client.supports_load_session())

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info("Bridge listening on http://%s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        logger.info("Bridge shutting down")
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self._client.close()
        if self._agent is not None:
            await self._agent.stop()

    # ── Helpers ──

    def _directory(self, request: web.Request) -> str | None:
        """Directory the client scoped the request to, if any."""
        return request.headers.get(DIRECTORY_HEADER) or request.query.get("directory") or None

    def _resolve_alias(self, session_id: str) -> str:
        """Follow a remap from a stale id to the session's current id."""
        if session_id not in self._store:
            alias = self._aliases.get(session_id)
            if alias is not None and alias in self._store:
                return alias
        return session_id

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BadRequest(f"Invalid JSON body: {exc}") from exc
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object")
        return body

    # ── SSE ──

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                **_CORS_HEADERS,
            },
        )
        await response.prepare(request)
        sub = self._hub.subscribe()
        write_timeout = self._config.sse_write_timeout
        try:
            await asyncio.wait_for(response.write(b"data: {}\n\n"), timeout=write_timeout)
            while True:
                try:
                    frame = await sub.next_frame(timeout=self._config.sse_keepalive)
                except asyncio.TimeoutError:
                    frame = b": keepalive\n\n"
                if frame is None:
                    break
                await asyncio.wait_for(response.write(frame), timeout=write_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "SSE client req=%s did not accept a write within %.1fs, dropping",
                request.get("req_id", "unknown"), write_timeout,
            )
        except (ConnectionResetError, ConnectionError):
            pass
        finally:
            self._hub.unsubscribe(sub)
        return response

    # ── Sessions ──

    async def _handle_reload_sessions(self, request: web.Request) -> web.Response:
        stats = await self._loader.reload(self._store)
        logger.info("Session reload: %s", stats.to_dict())
        return web.json_response([s.to_dict() for s in self._store.list()])

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self._store.list(self._directory(request))
        return web.json_response([s.to_dict() for s in sessions])

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        directory = self._directory(request) or self._config.cwd
        title = body.get("title")
        if not isinstance(title, str) or not title.strip():
            now = datetime.now()
            title = f"New Session - {now:%Y-%m-%d} {now:%H:%M:%S}"

        logger.info("Creating session in %s", directory)
        session_id = await self._client.new_session(
            directory, [], timeout=self._config.request_timeout,
        )
        session = Session(
            id=session_id,
            cwd=directory,
            title=title,
            project_id=generate_project_id(directory),
            log_ids=[session_id],
            agent_loaded=True,
        )
        async with self._store.writing():
            self._store.add(session)
        logger.info("Created session %s (%s)", session.id, session.title)
        return web.json_response(session.to_dict())

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self._store.require(request.match_info["id"])
        return web.json_response(session.to_dict())

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = self._resolve_alias(request.match_info["id"])
        async with self._store.writing():
            session = self._store.remove(session_id)
        log_ids = session.log_ids if session is not None and session.log_ids else [session_id]
        deleted = False
        for log_id in log_ids:
            if await asyncio.to_thread(self._loader.delete, log_id):
                deleted = True
        if session is None and not deleted:
            raise SessionNotFound(session_id)
        for permission in self._permissions.list(session_id):
            self._permissions.pop(permission.id)
        self._attach_locks.pop(session_id, None)
        for old_id in [k for k, v in self._aliases.items() if v == session_id]:
            del self._aliases[old_id]
            self._attach_locks.pop(old_id, None)
        logger.info("Deleted session %s (log dirs %s, removed=%s)", session_id, log_ids, deleted)
        return web.Response(status=204)

    async def _handle_rename_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._store.require(session_id)
        body = await self._read_json(request)
        title = body.get("title")
        if not isinstance(title, str) or not title.strip():
            raise BadRequest("title is required")
        async with self._store.writing():
            session = self._store.require(session_id)
            session.title = title
            session.updated = now_ms()
        return web.json_response(session.to_dict())

    # ── Messages ──

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session = self._store.require(request.match_info["id"])
        return web.json_response([m.to_dict() for m in session.messages])

    async def _handle_get_parts(self, request: web.Request) -> web.Response:
        message = self._store.require_message(
            request.match_info["id"], request.match_info["message_id"],
        )
        return web.json_response([p.to_dict() for p in message.parts])

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self._resolve_alias(session_id) not in self._store:
            raise SessionNotFound(session_id)
        body = await self._read_json(request)
        parts = body.get("parts")
        if not isinstance(parts, list) or not parts:
            raise BadRequest("parts is required")
        texts = [
            p["text"] for p in parts
            if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
        ]

        effective_id = await self._ensure_agent_session(session_id)

        async with self._store.writing():
            session = self._store.require(effective_id)
            at = now_ms()
            message = Message(
                id=self._store.new_message_id(),
                session_id=session.id,
                role=MessageRole.USER,
                created=at,
                completed=at,
            )
            part = TextPart(self._store.new_part_id(), message.id, session.id, "\n\n".join(texts))
            message.upsert_part(part)
            session.add_message(message)
            info, part_dict = message.to_dict(), part.to_dict()
        self._hub.publish(MESSAGE_UPDATED, {"info": info})
        self._hub.publish(PART_UPDATED, {"part": part_dict})

        blocks = [{"type": "text", "text": t} for t in texts] or [{"type": "text", "text": ""}]
        task = asyncio.create_task(self._run_prompt(effective_id, blocks), name=f"prompt-{effective_id}")
        self._prompt_tasks.add(task)
        task.add_done_callback(self._prompt_tasks.discard)
        return web.json_response({"status": "ok", "sessionID": effective_id})

    async def _run_prompt(self, session_id: str, blocks: list[dict[str, Any]]) -> None:
        logger.info("Prompt started in %s", session_id)
        marker = TurnFinished(session_id, error="prompt did not complete")
        try:
            result = await self._client.prompt(session_id, blocks)
        except BridgeError as exc:
            logger.warning("Prompt in %s failed: %s", session_id, exc)
            marker = TurnFinished(session_id, error=str(exc))
        except Exception as exc:
            logger.exception("Prompt in %s failed unexpectedly", session_id)
            marker = TurnFinished(session_id, error=str(exc))
        else:
            marker = TurnFinished(session_id, stop_reason=result.get("stopReason"))
        finally:
            # The turn closes whatever happened, including cancellation.
            self._client.notifications.put_nowait(marker)

    async def _ensure_agent_session(self, session_id: str) -> str:
        """Make sure the agent knows *session_id*; return the id to prompt.

        Historical sessions are loaded when the agent supports it. When it
        does not, or loading fails, a fresh agent session is created and
        the local session is remapped to its id.
        """
        lock = self._attach_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = self._store.get(session_id)
            if session is None:
                alias = self._aliases.get(session_id)
                if alias is not None and alias in self._store:
                    return alias
                raise SessionNotFound(session_id)
            if session.agent_loaded:
                return session.id

            timeout = self._config.request_timeout
            if self._client.supports_load_session():
                async with self._store.writing():
                    session.replaying = True
                try:
                    logger.info("Loading historical session %s in agent", session_id)
                    await self._client.load_session(session_id, session.cwd, [], timeout=timeout)
                except BridgeError as exc:
                    logger.warning("session/load failed for %s: %s; creating a new agent session", session_id, exc)
                else:
                    async with self._store.writing():
                        session.agent_loaded = True
                    self._client.notifications.put_nowait(ReplayFinished(session_id))
                    return session_id
            else:
                logger.info("Agent cannot load sessions; creating a new agent session for %s", session_id)

            try:
                new_id = await self._client.new_session(session.cwd, [], timeout=timeout)
            except BridgeError:
                async with self._store.writing():
                    session.replaying = False
                raise
            async with self._store.writing():
                if new_id != session_id:
                    self._store.remap(session_id, new_id)
                    self._permissions.rebind_session(session_id, new_id)
                session.agent_loaded = True
                session.replaying = False
            if new_id != session_id:
                self._aliases[session_id] = new_id
                self._attach_locks[new_id] = lock
            return new_id

    async def _handle_abort(self, request: web.Request) -> web.Response:
        session = self._store.require(self._resolve_alias(request.match_info["id"]))
        await self._client.cancel(session.id)
        logger.info("Cancel requested for %s", session.id)
        return web.json_response(True)

    # ── Permissions ──

    async def _handle_list_permissions(self, request: web.Request) -> web.Response:
        return web.json_response([p.to_dict() for p in self._permissions.list()])

    async def _handle_permission_reply(self, request: web.Request) -> web.Response:
        permission_id = request.match_info["id"]
        self._permissions.require(permission_id)
        body = await self._read_json(request)
        reply = body.get("reply")
        if reply not in REPLIES:
            raise BadRequest(f"reply must be one of: {', '.join(REPLIES)}")
        # Popped before the write so a concurrent reply finds nothing.
        permission = self._permissions.pop(permission_id)
        if permission is None:
            raise PermissionNotFound(permission_id)
        outcome = select_outcome(permission, reply)
        await self._client.send_response(permission.agent_request_id, result={"outcome": outcome})
        logger.info("Permission %s answered %s -> %s", permission_id, reply, outcome)
        self._hub.publish(PERMISSION_REPLIED, {
            "id": permission.id,
            "sessionID": permission.session_id,
            "reply": reply,
        })
        return web.json_response(True)

    # ── Metadata ──

    async def _handle_get_providers(self, request: web.Request) -> web.Response:
        models: dict[str, Any] = {}
        for model in self._config.models:
            models[model] = {
                "id": model,
                "providerID": PROVIDER_ID,
                "name": model,
                "family": model.split("-")[0],
                "status": "available",
                "cost": {"input": 0, "output": 0, "cache": {"read": 0, "write": 0}},
                "limit": {"context": 128000, "output": 16000},
                "capabilities": {
                    "temperature": True,
                    "reasoning": "opus" in model,
                    "attachment": True,
                    "toolcall": True,
                },
            }
        return web.json_response({
            "all": [{
                "id": PROVIDER_ID,
                "source": "github",
                "name": "GitHub Copilot",
                "env": [],
                "options": {},
                "models": models,
            }],
            "connected": [PROVIDER_ID],
            "default": {PROVIDER_ID: self._config.default_model},
        })

    async def _handle_get_agents(self, request: web.Request) -> web.Response:
        return web.json_response([
            {"name": "build", "options": {}, "permission": [], "native": True},
            {"name": "plan", "options": {}, "permission": [], "native": True},
        ])

    def _project(self, directory: str) -> dict[str, Any]:
        sessions = self._store.list(directory)
        created = min((s.created for s in sessions), default=now_ms())
        updated = max((s.updated for s in sessions), default=created)
        return {
            "id": generate_project_id(directory),
            "worktree": directory,
            "vcs": "git",
            "name": project_name(directory),
            "time": {"created": created, "updated": updated},
            "sandboxes": [],
        }

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        return web.json_response([self._project(self._directory(request) or self._config.cwd)])

    async def _handle_get_current_project(self, request: web.Request) -> web.Response:
        return web.json_response(self._project(self._directory(request) or self._config.cwd))

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok" if self._client.connected else "degraded",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._config.cwd,
            "agent": {
                "connected": self._client.connected,
                "pid": self._agent.pid if self._agent else None,
                "running": self._agent.running if self._agent else None,
                "returncode": self._agent.returncode if self._agent else None,
            },
            "sessions": len(self._store),
            "pending_permissions": len(self._permissions),
            "sse_clients": len(self._hub),
        })
