from __future__ import annotations

from pathlib import Path

import pytest

from agent_gateway.config import MIN_LINE_BYTES, GatewayConfig, env_overrides, load_config, load_config_dicts
from agent_gateway.errors import ConfigError


def test_defaults_match_vm_contract() -> None:
    cfg = load_config(environ={})
    assert cfg.server.host == "0.0.0.0"
    assert cfg.server.port == 8080
    assert cfg.run.workspace_dir == "/workspace"
    assert cfg.run.default_timeout_sec == 300
    assert cfg.run.max_line_bytes == MIN_LINE_BYTES
    assert cfg.network.address == "192.168.127.2"
    assert cfg.network.gateway == "192.168.127.1"
    assert cfg.agents == {}


def test_yaml_env_and_overrides_merge_in_order(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    path.write_text(
        "server:\n  port: 9000\n  host: 127.0.0.1\nrun:\n  default_timeout_sec: 60\n"
        "agents:\n  claude:\n    resumption_token_pattern: 'id=(\\w+)'\n",
        encoding="utf-8",
    )
    cfg = load_config(
        path,
        environ={"AGENT_GATEWAY_PORT": "9100", "AGENT_GATEWAY_WORKSPACE": "/srv/ws"},
        overrides={"run": {"default_timeout_sec": 5}},
    )
    assert cfg.server.host == "127.0.0.1"
    assert cfg.server.port == 9100
    assert cfg.run.workspace_dir == "/srv/ws"
    assert cfg.run.default_timeout_sec == 5
    # 未覆盖的同级字段保持默认
    assert cfg.run.terminate_grace_ms == 200
    assert cfg.agents["claude"].resumption_token_pattern == "id=(\\w+)"


def test_config_path_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "c.yaml"
    path.write_text("init:\n  reaper_enabled: false\n", encoding="utf-8")
    cfg = load_config(environ={"AGENT_GATEWAY_CONFIG": str(path)})
    assert cfg.init.reaper_enabled is False


def test_empty_env_values_are_ignored() -> None:
    assert env_overrides({"AGENT_GATEWAY_HOST": "  ", "AGENT_GATEWAY_PORT": ""}) == {}


def test_empty_yaml_is_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path, environ={}) == GatewayConfig()


@pytest.mark.parametrize(
    "content",
    [
        "server: [unclosed\n",
        "- just\n- a list\n",
        "server:\n  prot: 1\n",
        "run:\n  max_line_bytes: 1024\n",
        "server:\n  port: 0\n",
    ],
)
def test_invalid_config_raises_config_error(tmp_path: Path, content: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError) as ei:
        load_config(path, environ={})
    assert ei.value.code == "CONFIG_INVALID"


def test_missing_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", environ={})


@pytest.mark.parametrize("pattern", ["(unclosed", "no-group-here"])
def test_bad_token_pattern_rejected(pattern: str) -> None:
    with pytest.raises(ConfigError):
        load_config_dicts([{"agents": {"claude": {"resumption_token_pattern": pattern}}}])


def test_non_numeric_env_port_is_config_error() -> None:
    with pytest.raises(ConfigError):
        load_config(environ={"AGENT_GATEWAY_PORT": "eighty"})
