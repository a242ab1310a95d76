"""
配置加载器（YAML + 环境变量）。

合并顺序（后者覆盖前者）：
1. pydantic 字段默认值
2. YAML 配置文件（`--config` 或 `AGENT_GATEWAY_CONFIG`）
3. 环境变量覆盖（`AGENT_GATEWAY_HOST/PORT/WORKSPACE/DEFAULT_TIMEOUT_SEC`）
4. CLI 参数（由 `agent_gateway.cli` 以 dict overlay 形式传入）

约束：
- 所有 model 使用 `extra="forbid"`，拼写错误不会被静默吞掉；
- 任何解析/校验失败统一抛 `ConfigError`。
"""

from __future__ import annotations

import os
import re
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_gateway.errors import ConfigError

CONFIG_PATH_ENV = "AGENT_GATEWAY_CONFIG"

MIN_LINE_BYTES = 1024 * 1024

_ENV_OVERRIDES = {
    "AGENT_GATEWAY_HOST": ("server", "host"),
    "AGENT_GATEWAY_PORT": ("server", "port"),
    "AGENT_GATEWAY_WORKSPACE": ("run", "workspace_dir"),
    "AGENT_GATEWAY_DEFAULT_TIMEOUT_SEC": ("run", "default_timeout_sec"),
}


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ServerConfig(BaseModel):
    """HTTP 监听与退出行为。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    # 收到 SIGTERM 后等待 in-flight 请求的最长时间
    shutdown_grace_sec: int = Field(default=5, ge=0)
    stop_delay_ms: int = Field(default=100, ge=0)


class RunConfig(BaseModel):
    """子进程执行参数。"""

    model_config = ConfigDict(extra="forbid")

    workspace_dir: str = "/workspace"
    default_timeout_sec: int = Field(default=300, ge=1)
    max_line_bytes: int = Field(default=MIN_LINE_BYTES, ge=MIN_LINE_BYTES)
    terminate_grace_ms: int = Field(default=200, ge=0)
    env_defaults: Dict[str, str] = Field(
        default_factory=lambda: {
            "HOME": "/root",
            "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            "TERM": "dumb",
        }
    )


class InitConfig(BaseModel):
    """PID 1 职责（orphan 回收）。"""

    model_config = ConfigDict(extra="forbid")

    reaper_enabled: bool = True
    reap_interval_sec: float = Field(default=1.0, gt=0)


class NetworkConfig(BaseModel):
    """启动期网络配置（与 host 侧 gvproxy 约定的静态地址）。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interface: str = "eth0"
    address: str = "192.168.127.2"
    prefix_len: int = Field(default=24, ge=0, le=32)
    netmask: str = "255.255.255.0"
    gateway: str = "192.168.127.1"
    nameserver: str = "192.168.127.1"
    resolv_conf: str = "/etc/resolv.conf"


class AgentConfig(BaseModel):
    """
    单个 agent 的可选扩展配置。

    说明：
    - `resumption_token_pattern`：正则（需包含 1 个捕获组）；设置后会匹配该 agent 的 stdout 行，
      run 结束后把最后一次捕获写入 session 的 resumption token。
    """

    model_config = ConfigDict(extra="forbid")

    resumption_token_pattern: Optional[str] = None

    @field_validator("resumption_token_pattern")
    @classmethod
    def _check_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            compiled = re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regex: {e}") from e
        if compiled.groups < 1:
            raise ValueError("pattern must contain a capture group")
        return value


class GatewayConfig(BaseModel):
    """gateway 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    server: ServerConfig = Field(default_factory=ServerConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    init: InitConfig = Field(default_factory=InitConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    agents: Dict[str, AgentConfig] = Field(default_factory=dict)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise ConfigError(f"config file not found: {path}", details={"path": str(path)})
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}", details={"path": str(path)}) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {path}", details={"path": str(path)})
    return data


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    从环境变量提取覆盖项（嵌套 dict 形式）。

    说明：
    - 空字符串视为未设置；
    - 值保持字符串，由 pydantic 负责类型转换与校验。
    """

    src = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    for name, (section, key) in _ENV_OVERRIDES.items():
        raw = str(src.get(name) or "").strip()
        if raw:
            out.setdefault(section, {})[key] = raw
    return out


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> GatewayConfig:
    """
    合并多个 dict 配置并返回校验后的 `GatewayConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return GatewayConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError("config validation failed", details={"errors": e.errors(include_url=False)}) from e


def load_config(
    config_path: Optional[Path] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GatewayConfig:
    """
    加载完整配置：YAML 文件 → 环境变量 → overrides。

    参数：
    - config_path：YAML 路径；为 None 时读取 `AGENT_GATEWAY_CONFIG`（仍为空则跳过）
    - overrides：最高优先级的 dict overlay（CLI 参数）
    - environ：环境变量来源（测试注入；默认 os.environ）
    """

    src = os.environ if environ is None else environ
    if config_path is None:
        raw = str(src.get(CONFIG_PATH_ENV) or "").strip()
        if raw:
            config_path = Path(raw)

    layers: List[Dict[str, Any]] = []
    if config_path is not None:
        layers.append(_load_yaml_file(Path(config_path)))
    layers.append(env_overrides(src))
    if overrides:
        layers.append(overrides)
    return load_config_dicts(layers)
