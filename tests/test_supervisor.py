from __future__ import annotations

import asyncio
import sys

import pytest

from acp_bridge.engine.config import AgentUserConfig
from acp_bridge.engine.errors import AgentConnectionError, AgentStartError
from acp_bridge.engine.supervisor import AgentProcess, build_agent_args


def test_args_include_user_config() -> None:
    config = AgentUserConfig(
        model="gpt-5",
        trusted_folders=["/a", "/b"],
        allowed_urls=["https://example.com/*"],
    )
    assert build_agent_args(4097, config) == [
        "--acp", "--port", "4097", "--allow-all", "--enable-all-github-mcp-tools",
        "--model", "gpt-5",
        "--add-dir", "/a", "--add-dir", "/b",
        "--allow-url", "https://example.com/*",
    ]


def test_args_without_user_config() -> None:
    assert build_agent_args(5000) == [
        "--acp", "--port", "5000", "--allow-all", "--enable-all-github-mcp-tools",
    ]


@pytest.mark.asyncio
async def test_missing_binary_raises_start_error(tmp_path) -> None:
    agent = AgentProcess("definitely-not-a-real-agent-binary", 4097, tmp_path)
    with pytest.raises(AgentStartError):
        await agent.start()


@pytest.mark.asyncio
async def test_wait_until_ready_succeeds_once_port_accepts() -> None:
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        agent = AgentProcess("unused", port, ".")
        await agent.wait_until_ready(attempts=2, interval=0.01)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_wait_until_ready_gives_up() -> None:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    agent = AgentProcess("unused", port, ".")
    with pytest.raises(AgentConnectionError):
        await agent.wait_until_ready(attempts=3, interval=0.01)


@pytest.mark.asyncio
async def test_agent_exit_during_startup_fails_fast(tmp_path) -> None:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    # A "command" that ignores its ACP flags and exits with status 3.
    agent = AgentProcess(f'"{sys.executable}" -c "import sys; sys.exit(3)"', port, tmp_path)
    await agent.start()
    await asyncio.wait_for(agent._proc.wait(), 5)
    with pytest.raises(AgentConnectionError) as excinfo:
        await agent.wait_until_ready(attempts=50, interval=0.01)
    assert "exited with code 3" in str(excinfo.value)
    assert agent.running is False
    await agent.stop()


@pytest.mark.asyncio
async def test_background_readers_are_noops_before_start() -> None:
    agent = AgentProcess("unused", 4097, ".")
    await agent._drain_stdout()
    await agent._watch_exit()
    assert agent.running is False
