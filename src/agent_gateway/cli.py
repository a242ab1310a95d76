"""
agent-gateway CLI 入口。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- 启动顺序：加载配置 → 日志 → 网络初始化 → 确保 workspace → 构造 app → uvicorn；
- 网络初始化失败不阻断启动；配置错误返回 exit code 2。
"""

from __future__ import annotations

import argparse
import logging
import socket
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import uvicorn

from agent_gateway import __version__
from agent_gateway.app import GatewayState, create_app
from agent_gateway.config import GatewayConfig, load_config
from agent_gateway.errors import ConfigError
from agent_gateway.netinit import ensure_workspace, init_network
from agent_gateway.streaming import ActiveRuns

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [agent-gateway] %(levelname)s %(name)s: %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-gateway",
        description="HTTP gateway that runs agent CLIs inside the VM and streams their output as SSE.",
    )
    parser.add_argument("--config", default=None, help="Config YAML path (default: $AGENT_GATEWAY_CONFIG).")
    parser.add_argument("--host", default=None, help="Listen host (default: 0.0.0.0).")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: 8080).")
    parser.add_argument("--workspace", default=None, help="Working directory for spawned commands (default: /workspace).")
    parser.add_argument("--no-network", action="store_true", help="Skip interface/route/resolv.conf bootstrap.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """把 CLI 参数转换为配置 overlay（只包含显式给出的项）。"""

    out: Dict[str, Any] = {}
    if args.host is not None:
        out.setdefault("server", {})["host"] = args.host
    if args.port is not None:
        out.setdefault("server", {})["port"] = args.port
    if args.workspace is not None:
        out.setdefault("run", {})["workspace_dir"] = args.workspace
    if args.no_network:
        out.setdefault("network", {})["enabled"] = False
    return out


def setup_logging(level: str) -> None:
    logging.basicConfig(level=str(level or "INFO").upper(), format=LOG_FORMAT, stream=sys.stderr)


class GatewayServer(uvicorn.Server):
    """
    uvicorn server：开始关机时先取消进行中的 run。

    说明：
    - uvicorn 在关机时会等待 in-flight 请求（上限 `timeout_graceful_shutdown`），超时后直接断开连接；
    - SSE 请求在子进程结束前不会自行完成，因此先取消 run：子进程被终止、exit 帧写出、流正常结束。
    """

    def __init__(self, config: uvicorn.Config, *, runs: ActiveRuns) -> None:
        super().__init__(config)
        self._runs = runs

    async def shutdown(self, sockets: Optional[List[socket.socket]] = None) -> None:
        await self._runs.cancel_all()
        await super().shutdown(sockets=sockets)


def build_server(config: GatewayConfig, *, state: Optional[GatewayState] = None) -> GatewayServer:
    """构造 app 与 server（不启动）。"""

    state = state or GatewayState.from_config(config)
    app = create_app(state=state)
    return GatewayServer(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_config=None,
            timeout_graceful_shutdown=config.server.shutdown_grace_sec,
        ),
        runs=state.runs,
    )


def serve(config: GatewayConfig) -> None:
    """在前台运行 uvicorn，直到收到 SIGTERM/SIGINT 或 stop 请求。"""

    server = build_server(config)
    logger.info("listening on %s:%d", config.server.host, config.server.port)
    server.run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    setup_logging(args.log_level)
    logger.info("starting agent-gateway %s", __version__)

    try:
        config = load_config(Path(args.config) if args.config else None, overrides=_cli_overrides(args))
    except ConfigError as e:
        logger.error("%s details=%s", e, e.details)
        return 2

    init_network(config.network)
    ensure_workspace(config.run.workspace_dir)
    serve(config)
    return 0
