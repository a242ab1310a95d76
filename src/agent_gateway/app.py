from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from agent_gateway import __version__
from agent_gateway.commands import build_agent_command
from agent_gateway.config import GatewayConfig
from agent_gateway.errors import http_error
from agent_gateway.init import InitSupervisor, ShutdownHook
from agent_gateway.models import ExecRequest, MessageRequest, SpawnSpec
from agent_gateway.sessions import ResumptionTokenWatcher, SessionRegistry
from agent_gateway.slot import ExecutionSlot
from agent_gateway.streaming import ActiveRuns, RunPlan, RunStreamResponse
from agent_gateway.supervisor import ProcessSupervisor, RunOutcome

logger = logging.getLogger(__name__)


@dataclass
class GatewayState:
    """
    进程级共享状态（显式注入到路由，不使用模块级全局变量）。

    字段：
    - slot：execution slot（整个进程至多一个子进程在执行）
    - sessions：agent session registry
    - init：orphan reaper + 关机入口
    - supervisor：子进程监督者（与 init 共享自有子进程登记表）
    - runs：进行中的 run（关机时先取消，保证每个流以 exit 帧结束）
    - started_monotonic：进程启动时刻（uptime 计算用单调时钟）
    """

    config: GatewayConfig
    slot: ExecutionSlot
    sessions: SessionRegistry
    init: InitSupervisor
    supervisor: ProcessSupervisor
    runs: ActiveRuns = field(default_factory=ActiveRuns)
    started_monotonic: float = field(default_factory=time.monotonic)

    @classmethod
    def from_config(cls, config: GatewayConfig, *, shutdown_hook: Optional[ShutdownHook] = None) -> "GatewayState":
        init = InitSupervisor(
            reap_interval_sec=config.init.reap_interval_sec,
            reaper_enabled=config.init.reaper_enabled,
            shutdown_hook=shutdown_hook,
        )
        supervisor = ProcessSupervisor(
            max_line_bytes=config.run.max_line_bytes,
            terminate_grace_ms=config.run.terminate_grace_ms,
            env_defaults=config.run.env_defaults,
            children=init.children,
        )
        return cls(
            config=config,
            slot=ExecutionSlot(),
            sessions=SessionRegistry(),
            init=init,
            supervisor=supervisor,
        )

    def uptime_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def resolve_timeout(self, requested: int) -> int:
        """请求超时（秒）；<= 0 使用默认值。"""

        return int(requested) if int(requested) > 0 else int(self.config.run.default_timeout_sec)

    def spawn_spec(self, command: str, args: List[str], *, env: Mapping[str, str], timeout: int) -> SpawnSpec:
        return SpawnSpec(
            command=command,
            args=tuple(args),
            cwd=self.config.run.workspace_dir,
            timeout_sec=float(self.resolve_timeout(timeout)),
            env=dict(env),
        )


def _plan_message(state: GatewayState, body: MessageRequest) -> RunPlan:
    """
    规划一次 agent turn（在持有 slot 后调用）。

    说明：
    - 只有子进程真正启动过才推进 turn 计数（spawn 失败的 turn 不算数，下一次仍是全新调用）；
    - 配置了 resumption_token_pattern 的 agent 会在 run 结束后写回 token。
    """

    sess = state.sessions.get(body.agent)
    command, args = build_agent_command(body, sess)

    watcher: Optional[ResumptionTokenWatcher] = None
    agent_cfg = state.config.agents.get(body.agent)
    if agent_cfg is not None and agent_cfg.resumption_token_pattern:
        watcher = ResumptionTokenWatcher(agent_cfg.resumption_token_pattern)

    def _complete(outcome: RunOutcome) -> None:
        if not outcome.started:
            return
        if watcher is not None and watcher.token:
            state.sessions.set_resumption_token(body.agent, watcher.token)
        state.sessions.advance(body.agent)

    return RunPlan(
        spec=state.spawn_spec(command, args, env=body.env, timeout=body.timeout),
        label=f"message #{sess.message_count + 1} to {body.agent}",
        on_complete=_complete,
        on_stdout_line=watcher.observe if watcher is not None else None,
    )


def _plan_exec(state: GatewayState, body: ExecRequest) -> RunPlan:
    return RunPlan(
        spec=state.spawn_spec(body.command, list(body.args), env=body.env, timeout=body.timeout),
        label="exec",
    )


def bind_gateway_router(*, state: GatewayState) -> APIRouter:
    """
    绑定 gateway 路由到给定 state（便于测试注入）。

    路由：
    - GET  /health, /api/v1/health：存活 + uptime（不触碰 slot）
    - POST /api/v1/message：agent turn（SSE）
    - POST /api/v1/exec：任意命令（SSE；绕过 command builder 与 session registry）
    - POST /api/v1/stop：确认后延迟触发关机
    """

    router = APIRouter()

    async def health() -> Dict[str, Any]:
        return {"status": "ok", "uptime_ms": state.uptime_ms()}

    router.add_api_route("/health", health, methods=["GET"])
    router.add_api_route("/api/v1/health", health, methods=["GET"])

    @router.post("/api/v1/message")
    async def message(body: MessageRequest) -> RunStreamResponse:
        return RunStreamResponse(
            slot=state.slot,
            supervisor=state.supervisor,
            plan=lambda: _plan_message(state, body),
            runs=state.runs,
        )

    @router.post("/api/v1/exec")
    async def exec_command(body: ExecRequest) -> RunStreamResponse:
        return RunStreamResponse(
            slot=state.slot,
            supervisor=state.supervisor,
            plan=lambda: _plan_exec(state, body),
            runs=state.runs,
        )

    async def _delayed_shutdown() -> None:
        await asyncio.sleep(state.config.server.stop_delay_ms / 1000.0)
        await state.runs.cancel_all()
        state.init.request_shutdown()

    @router.post("/api/v1/stop")
    async def stop() -> JSONResponse:
        logger.info("stop requested, shutting down")
        return JSONResponse({"status": "stopping"}, background=BackgroundTask(_delayed_shutdown))

    return router


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = http_error(
        "validation",
        "invalid request body",
        status_code=400,
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(status_code=err.status_code, content={"detail": err.detail})


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    state: GatewayState = app.state.gateway
    state.init.start()
    logger.info("agent-gateway %s ready (workspace=%s)", __version__, state.config.run.workspace_dir)
    try:
        yield
    finally:
        await state.runs.cancel_all()
        await state.init.stop()
        logger.info("agent-gateway stopped (uptime_ms=%d)", state.uptime_ms())


def create_app(config: Optional[GatewayConfig] = None, *, state: Optional[GatewayState] = None) -> FastAPI:
    """
    构造 FastAPI app。

    参数：
    - config：gateway 配置（state 未提供时用于构造 state；都未提供时使用默认配置）
    - state：显式注入的共享状态（测试用）
    """

    if state is None:
        state = GatewayState.from_config(config or GatewayConfig())
    app = FastAPI(title="agent-gateway", version=__version__, lifespan=_lifespan)
    app.state.gateway = state
    app.include_router(bind_gateway_router(state=state))
    app.add_exception_handler(RequestValidationError, _validation_error)  # type: ignore[arg-type]
    return app
