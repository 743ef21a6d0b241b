"""Bridge configuration.

Two sources feed the bridge:

- The bridge's own settings (``BridgeConfig``), read from an optional
  YAML file and overridden by environment variables and CLI flags.
- The agent user's settings (``AgentUserConfig``), read from the agent's
  JSON config file (~/.copilot/config.json). These only influence the
  command line the agent process is started with.

Example YAML:
    bridge:
      port: 4096
      agent_port: 4097
      agent_command: copilot
      cwd: /path/to/project
      session_state_dir: ~/.copilot/session-state
      startup_attempts: 30
      startup_interval: 1.0
      request_timeout: 60
      strict_tool_status: false
      sse:
        queue_size: 1000
        write_timeout: 5
        keepalive: 30
      models: [claude-sonnet-4.5, gpt-5]
      default_model: claude-sonnet-4.5
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

AGENT_HOME = Path.home() / ".copilot"
BRIDGE_HOME = Path.home() / ".acp-bridge"

DEFAULT_MODELS: tuple[str, ...] = (
    "claude-sonnet-4.5",
    "claude-haiku-4.5",
    "claude-opus-4.5",
    "claude-sonnet-4",
    "gemini-3-pro-preview",
    "gpt-5.2-codex",
    "gpt-5.2",
    "gpt-5.1-codex-max",
    "gpt-5.1-codex",
    "gpt-5.1",
    "gpt-5",
    "gpt-5.1-codex-mini",
    "gpt-5-mini",
    "gpt-4.1",
)


@dataclass
class BridgeConfig:
    """Settings for one bridge instance."""

    host: str = "127.0.0.1"
    port: int = 4096
    agent_command: str = "copilot"
    agent_host: str = "127.0.0.1"
    agent_port: int = 4097
    spawn_agent: bool = True
    cwd: str = field(default_factory=lambda: str(Path.cwd()))
    session_state_dir: Path = field(default_factory=lambda: AGENT_HOME / "session-state")
    agent_config_file: Path = field(default_factory=lambda: AGENT_HOME / "config.json")
    mcp_config_file: Path = field(default_factory=lambda: AGENT_HOME / "mcp-config.json")
    startup_attempts: int = 30
    startup_interval: float = 1.0
    # Applies to synchronous calls (session/new, session/load); prompts never time out.
    request_timeout: float | None = 60.0
    sse_queue_size: int = 1000
    sse_write_timeout: float = 5.0
    sse_keepalive: float = 30.0
    strict_tool_status: bool = False
    models: list[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    default_model: str = "claude-sonnet-4.5"

    def validate(self) -> None:
        """Clamp values into usable ranges."""
        if self.startup_attempts < 1:
            self.startup_attempts = 1
        if self.startup_interval <= 0:
            self.startup_interval = 1.0
        if self.request_timeout is not None and self.request_timeout <= 0:
            self.request_timeout = None
        if self.sse_queue_size < 1:
            self.sse_queue_size = 1000
        if self.sse_write_timeout <= 0:
            self.sse_write_timeout = 5.0
        if self.sse_keepalive <= 0:
            self.sse_keepalive = 30.0
        self.models = [m for m in self.models if isinstance(m, str) and m.strip()]
        if not self.models:
            self.models = list(DEFAULT_MODELS)
        if self.default_model not in self.models:
            self.default_model = self.models[0]


@dataclass
class AgentUserConfig:
    """The subset of the agent's own config.json the bridge understands."""

    model: str | None = None
    trusted_folders: list[str] = field(default_factory=list)
    allowed_urls: list[str] = field(default_factory=list)

    def validate(self) -> None:
        if not isinstance(self.model, str) or not self.model.strip():
            self.model = None
        self.trusted_folders = _clean_str_list(self.trusted_folders)
        self.allowed_urls = _clean_str_list(self.allowed_urls)

    @classmethod
    def load(cls, path: Path) -> AgentUserConfig:
        """Load the agent config, returning defaults if missing/corrupt."""
        try:
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("config root is not an object")
                config = cls(**{
                    k: v for k, v in data.items()
                    if k in cls.__dataclass_fields__
                })
                config.validate()
                logger.info(
                    "Loaded agent config from %s: model=%s trusted_folders=%d allowed_urls=%d",
                    path, config.model, len(config.trusted_folders), len(config.allowed_urls),
                )
                return config
            logger.info("No agent config found at %s; using defaults", path)
        except Exception:
            logger.warning("Failed to load agent config from %s; using defaults", path)
        return cls()


def _clean_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    cleaned: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        stripped = item.strip()
        if stripped and stripped not in cleaned:
            cleaned.append(stripped)
    return cleaned


def load_mcp_server_names(path: Path) -> list[str]:
    """Return the MCP server names configured for the agent.

    The agent reads this file itself, so the bridge never forwards these
    servers over ACP; the names are only logged for diagnostics.
    """
    try:
        if not path.exists():
            logger.info("No MCP config found at %s", path)
            return []
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Failed to read MCP config from %s", path)
        return []
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        return []
    names = sorted(servers)
    if names:
        logger.info(
            "MCP servers configured in %s: %s (agent loads them directly)",
            path.name, ", ".join(names),
        )
    return names


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Find a bridge YAML config: ./.acp-bridge.yaml, then ~/.acp-bridge/config.yaml."""
    candidates = [
        (cwd or Path.cwd()) / ".acp-bridge.yaml",
        BRIDGE_HOME / "config.yaml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _load_yaml_section(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load bridge config %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring bridge config %s: root is not a mapping", path)
        return {}
    section = raw.get("bridge", raw)
    return section if isinstance(section, dict) else {}


def _expand_path(value: Any) -> Path:
    return Path(os.path.expanduser(str(value)))


def load_bridge_config(
    path: Path | None = None,
    env: dict[str, str] | None = None,
) -> BridgeConfig:
    """Build a BridgeConfig from YAML (if any) plus environment overrides."""
    env = dict(os.environ) if env is None else env
    config = BridgeConfig()

    data = _load_yaml_section(path) if path else {}
    if path:
        logger.info("Using bridge config %s (%d keys)", path, len(data))

    for key in ("host", "agent_command", "agent_host", "cwd", "default_model"):
        if isinstance(data.get(key), str):
            setattr(config, key, data[key])
    for key in ("port", "agent_port", "startup_attempts"):
        if data.get(key) is not None:
            setattr(config, key, int(data[key]))
    if data.get("startup_interval") is not None:
        config.startup_interval = float(data["startup_interval"])
    if "request_timeout" in data:
        timeout = data["request_timeout"]
        config.request_timeout = float(timeout) if timeout is not None else None
    if data.get("spawn_agent") is not None:
        config.spawn_agent = bool(data["spawn_agent"])
    if data.get("strict_tool_status") is not None:
        config.strict_tool_status = bool(data["strict_tool_status"])
    for key in ("session_state_dir", "agent_config_file", "mcp_config_file"):
        if data.get(key):
            setattr(config, key, _expand_path(data[key]))
    sse = data.get("sse")
    if isinstance(sse, dict):
        if sse.get("queue_size") is not None:
            config.sse_queue_size = int(sse["queue_size"])
        if sse.get("write_timeout") is not None:
            config.sse_write_timeout = float(sse["write_timeout"])
        if sse.get("keepalive") is not None:
            config.sse_keepalive = float(sse["keepalive"])
    if isinstance(data.get("models"), list):
        config.models = [str(m) for m in data["models"]]

    if env.get("BRIDGE_PORT"):
        config.port = int(env["BRIDGE_PORT"])
    if env.get("COPILOT_ACP_PORT"):
        config.agent_port = int(env["COPILOT_ACP_PORT"])
    if env.get("COPILOT_CWD"):
        config.cwd = env["COPILOT_CWD"]
    if env.get("COPILOT_COMMAND"):
        config.agent_command = env["COPILOT_COMMAND"]
    if env.get("ACP_BRIDGE_SESSION_DIR"):
        config.session_state_dir = _expand_path(env["ACP_BRIDGE_SESSION_DIR"])

    config.validate()
    return config
