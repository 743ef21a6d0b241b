from __future__ import annotations

import json
from pathlib import Path

from acp_bridge.engine.config import (
    DEFAULT_MODELS,
    AgentUserConfig,
    load_bridge_config,
    load_mcp_server_names,
)


def test_defaults_without_file_or_env() -> None:
    config = load_bridge_config(None, env={})
    assert config.port == 4096
    assert config.agent_port == 4097
    assert config.agent_command == "copilot"
    assert config.startup_attempts == 30
    assert config.strict_tool_status is False
    assert config.models == list(DEFAULT_MODELS)


def test_yaml_section_then_env_overrides(tmp_path: Path) -> None:
    path = tmp_path / "bridge.yaml"
    path.write_text(
        "bridge:\n"
        "  port: 5000\n"
        "  agent_port: 5001\n"
        "  strict_tool_status: true\n"
        "  request_timeout: null\n"
        "  session_state_dir: ~/states\n"
        "  sse:\n"
        "    queue_size: 10\n"
        "    keepalive: 2.5\n"
        "  models: [gpt-5, claude-sonnet-4.5]\n"
        "  default_model: gpt-5\n",
        encoding="utf-8",
    )
    config = load_bridge_config(path, env={"COPILOT_ACP_PORT": "6001", "COPILOT_CWD": "/proj"})
    assert config.port == 5000
    assert config.agent_port == 6001
    assert config.cwd == "/proj"
    assert config.strict_tool_status is True
    assert config.request_timeout is None
    assert config.session_state_dir == Path.home() / "states"
    assert config.sse_queue_size == 10
    assert config.sse_keepalive == 2.5
    assert config.default_model == "gpt-5"


def test_invalid_values_are_clamped(tmp_path: Path) -> None:
    path = tmp_path / "bridge.yaml"
    path.write_text("startup_attempts: 0\nmodels: []\ndefault_model: nope\n", encoding="utf-8")
    config = load_bridge_config(path, env={})
    assert config.startup_attempts == 1
    assert config.models == list(DEFAULT_MODELS)
    assert config.default_model == DEFAULT_MODELS[0]


def test_broken_yaml_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "bridge.yaml"
    path.write_text("bridge: [unclosed\n", encoding="utf-8")
    assert load_bridge_config(path, env={}).port == 4096


def test_agent_user_config_validates(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "model": "  ",
        "trusted_folders": ["/a", "/a", 3, " /b "],
        "allowed_urls": "not-a-list",
        "unrelated": True,
    }), encoding="utf-8")
    config = AgentUserConfig.load(path)
    assert config.model is None
    assert config.trusted_folders == ["/a", "/b"]
    assert config.allowed_urls == []


def test_agent_user_config_missing_or_corrupt(tmp_path: Path) -> None:
    assert AgentUserConfig.load(tmp_path / "missing.json") == AgentUserConfig()
    corrupt = tmp_path / "config.json"
    corrupt.write_text("{", encoding="utf-8")
    assert AgentUserConfig.load(corrupt) == AgentUserConfig()


def test_mcp_server_names(tmp_path: Path) -> None:
    path = tmp_path / "mcp-config.json"
    path.write_text(json.dumps({"mcpServers": {"zeta": {}, "alpha": {}}}), encoding="utf-8")
    assert load_mcp_server_names(path) == ["alpha", "zeta"]
    assert load_mcp_server_names(tmp_path / "none.json") == []
