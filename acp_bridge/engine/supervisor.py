"""Lifecycle of the agent process the bridge talks to.

The agent is started in ACP server mode on a TCP port, polled until it
accepts connections, and watched for exit. There is no automatic
restart: an exit is logged and surfaces through the ACP connection
closing.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path

from acp_bridge.engine.config import AgentUserConfig
from acp_bridge.engine.errors import AgentConnectionError, AgentStartError

logger = logging.getLogger(__name__)

_STOP_GRACE_SECONDS = 5.0


def build_agent_args(port: int, user_config: AgentUserConfig | None = None) -> list[str]:
    """Command-line flags for running the agent as an ACP server."""
    args = [
        "--acp",
        "--port", str(port),
        "--allow-all",
        "--enable-all-github-mcp-tools",
    ]
    if user_config is None:
        return args
    if user_config.model:
        args += ["--model", user_config.model]
    for folder in user_config.trusted_folders:
        args += ["--add-dir", folder]
    for url in user_config.allowed_urls:
        args += ["--allow-url", url]
    return args


class AgentProcess:
    def __init__(
        self,
        command: str,
        port: int,
        cwd: str | Path,
        user_config: AgentUserConfig | None = None,
        host: str = "127.0.0.1",
    ) -> None:
        self.command = command
        self.port = port
        self.host = host
        self.cwd = str(cwd)
        self.user_config = user_config
        self._proc: asyncio.subprocess.Process | None = None
        self._stdout_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def build_args(self) -> list[str]:
        return build_agent_args(self.port, self.user_config)

    async def start(self) -> None:
        # The command may carry its own arguments (e.g. "npx copilot").
        argv = shlex.split(self.command) + self.build_args()
        logger.info("Starting agent: %s (cwd=%s)", " ".join(argv), self.cwd)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
                cwd=self.cwd,
            )
        except FileNotFoundError as exc:
            raise AgentStartError(self.command, "command not found") from exc
        except OSError as exc:
            raise AgentStartError(self.command, str(exc)) from exc
        logger.info("Agent started pid=%d", self._proc.pid)
        self._stdout_task = asyncio.create_task(self._drain_stdout(), name="agent-stdout")
        self._exit_task = asyncio.create_task(self._watch_exit(), name="agent-exit")

    async def _drain_stdout(self) -> None:
        if self._proc is None or self._proc.stdout is None:
            return
        stream = self._proc.stdout
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("agent stdout: %s", line.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self) -> None:
        if self._proc is None:
            return
        code = await self._proc.wait()
        logger.warning("Agent process exited with code %s", code)

    async def wait_until_ready(self, attempts: int = 30, interval: float = 1.0) -> None:
        """Poll the agent port until it accepts a connection.

        Raises AgentConnectionError when the agent exits first or the
        attempts run out.
        """
        last_error = ""
        for attempt in range(1, attempts + 1):
            if self._proc is not None and self._proc.returncode is not None:
                raise AgentConnectionError(
                    self.host, self.port,
                    f"agent exited with code {self._proc.returncode} before accepting connections",
                )
            try:
                _reader, writer = await asyncio.open_connection(self.host, self.port)
            except OSError as exc:
                last_error = str(exc)
                logger.info("Waiting for agent on port %d (%d/%d)", self.port, attempt, attempts)
                if attempt < attempts:
                    await asyncio.sleep(interval)
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            logger.info("Agent is accepting connections on port %d", self.port)
            return
        raise AgentConnectionError(
            self.host, self.port,
            f"agent did not start in time after {attempts} attempts ({last_error})",
        )

    async def stop(self, grace: float = _STOP_GRACE_SECONDS) -> None:
        proc = self._proc
        if proc is None:
            return
        if proc.returncode is None:
            logger.info("Stopping agent pid=%d", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Agent did not exit within %.1fs, killing", grace)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        for task in (self._stdout_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
