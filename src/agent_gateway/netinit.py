"""
启动期网络初始化（best-effort）。

说明：
- 为 eth0 配置 host 侧 gvproxy 期望的静态地址与默认路由；
- 优先使用 `ip`（iproute2），否则退化到 `ifconfig` + `route`；都没有时只记录告警；
- DNS 指向 gateway 内置的 resolver；
- 任何失败都只记录日志，不影响启动。
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List

from agent_gateway.config import NetworkConfig

logger = logging.getLogger(__name__)


def _run(argv: List[str]) -> bool:
    """执行一条配置命令；返回是否成功（失败只记录，不抛出）。"""

    try:
        cp = subprocess.run(  # noqa: S603
            argv,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("%s: %s", " ".join(argv), e)
        return False
    if cp.returncode != 0:
        logger.warning("%s: exit %d: %s", " ".join(argv), cp.returncode, (cp.stdout or "").strip())
        return False
    return True


def configure_interface(cfg: NetworkConfig) -> bool:
    """
    配置网卡地址与默认路由。

    返回：
    - bool：是否找到可用工具并且全部命令成功
    """

    ip = shutil.which("ip")
    if ip:
        results = [
            _run([ip, "link", "set", cfg.interface, "up"]),
            _run([ip, "addr", "add", f"{cfg.address}/{cfg.prefix_len}", "dev", cfg.interface]),
            _run([ip, "route", "add", "default", "via", cfg.gateway, "dev", cfg.interface]),
        ]
        return all(results)

    ifconfig = shutil.which("ifconfig")
    if ifconfig:
        ok = _run([ifconfig, cfg.interface, cfg.address, "netmask", cfg.netmask, "up"])
        route = shutil.which("route")
        if route:
            ok = _run([route, "add", "default", "gw", cfg.gateway]) and ok
        return ok

    logger.warning("no networking tools found (ip/ifconfig)")
    return False


def write_resolv_conf(cfg: NetworkConfig) -> bool:
    path = Path(cfg.resolv_conf)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"nameserver {cfg.nameserver}\n", encoding="utf-8")
    except OSError as e:
        logger.warning("write %s failed: %s", path, e)
        return False
    return True


def init_network(cfg: NetworkConfig) -> bool:
    """网络初始化入口；`cfg.enabled=false` 时直接跳过。"""

    if not cfg.enabled:
        logger.info("network bootstrap disabled")
        return False
    ok = configure_interface(cfg)
    ok = write_resolv_conf(cfg) and ok
    logger.info("network configured (interface=%s address=%s ok=%s)", cfg.interface, cfg.address, ok)
    return ok


def ensure_workspace(path: str) -> Path:
    """确保工作目录存在（失败只记录；spawn 时会以 error 事件暴露）。"""

    p = Path(path)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("create workspace %s failed: %s", p, e)
    return p
