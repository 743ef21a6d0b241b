"""acp-bridge command line entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from acp_bridge.engine.config import (
    BRIDGE_HOME,
    AgentUserConfig,
    BridgeConfig,
    discover_config_path,
    load_bridge_config,
    load_mcp_server_names,
)
from acp_bridge.engine.errors import BridgeError

logger = logging.getLogger(__name__)


def configure_logging(log_dir: Path | None = None) -> Path:
    """Send logs to a rotating file under ~/.acp-bridge/logs and stderr."""
    log_level = os.getenv("ACP_BRIDGE_LOG_LEVEL", "INFO").upper()
    log_dir = log_dir or BRIDGE_HOME / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "bridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def apply_cli_overrides(config: BridgeConfig, args) -> BridgeConfig:
    if args.port is not None:
        config.port = args.port
    if args.agent_port is not None:
        config.agent_port = args.agent_port
    if args.agent_command:
        config.agent_command = args.agent_command
    if args.cwd:
        config.cwd = args.cwd
    if args.session_dir:
        config.session_state_dir = Path(args.session_dir).expanduser()
    if args.no_spawn:
        config.spawn_agent = False
    config.validate()
    return config


async def run_bridge(config: BridgeConfig) -> None:
    from acp_bridge.adapters.acp_client import ACPClient
    from acp_bridge.engine.supervisor import AgentProcess
    from acp_bridge.web.server import BridgeServer

    user_config = AgentUserConfig.load(config.agent_config_file)
    load_mcp_server_names(config.mcp_config_file)

    agent = None
    if config.spawn_agent:
        agent = AgentProcess(
            config.agent_command,
            config.agent_port,
            config.cwd,
            user_config=user_config,
            host=config.agent_host,
        )
    client = ACPClient(config.agent_host, config.agent_port)
    server = BridgeServer(config, client, agent=agent)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            pass

    try:
        await server.start()
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await server.stop()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="acp-bridge",
        description="HTTP + SSE bridge for an ACP agent",
    )
    parser.add_argument(
        "--port", type=int,
        help="HTTP port for web clients (default 4096, env BRIDGE_PORT)",
    )
    parser.add_argument(
        "--agent-port", type=int,
        help="TCP port the agent serves ACP on (default 4097, env COPILOT_ACP_PORT)",
    )
    parser.add_argument(
        "--agent-command",
        help="Agent executable (default 'copilot', env COPILOT_COMMAND)",
    )
    parser.add_argument(
        "--cwd",
        help="Working directory for the agent and new sessions (env COPILOT_CWD)",
    )
    parser.add_argument(
        "--session-dir",
        help="Session-log root (default ~/.copilot/session-state)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="Bridge YAML config (default: ./.acp-bridge.yaml or ~/.acp-bridge/config.yaml)",
    )
    parser.add_argument(
        "--no-spawn", action="store_true",
        help="Connect to an already running agent instead of starting one",
    )
    args = parser.parse_args()

    log_file = configure_logging()

    config_path = Path(args.config).expanduser() if args.config else discover_config_path()
    if args.config and not config_path.exists():
        logger.error("Config file not found: %s", config_path)
        sys.exit(1)
    config = apply_cli_overrides(load_bridge_config(config_path), args)
    logger.info(
        "Starting acp-bridge port=%d agent=%s:%d spawn=%s cwd=%s config=%s log=%s",
        config.port, config.agent_host, config.agent_port, config.spawn_agent,
        config.cwd, config_path or "<none>", log_file,
    )

    try:
        asyncio.run(run_bridge(config))
    except BridgeError as exc:
        logger.error("Bridge startup failed: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
