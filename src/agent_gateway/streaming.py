"""
一次 HTTP exchange 的执行与传输：占用 slot → 规划 → spawn → 流式输出 → exit → 回调 → 释放 slot。

说明：
- slot 在 ASGI 调用阶段以 `ExecutionSlot.occupy()` 作用域获取：争用时直接回 409，不打开流、不 spawn；
- 命令在拿到 slot 之后才规划（读取 session），保证同一 agent 的相邻 turn 看到的是已更新的 session；
- 子进程生命周期 == 请求生命周期：客户端断开/关机取消 run task，supervisor 会终止进程组；
- 每个打开的流都以且仅以一个 exit 帧结束；run 被取消（关机）时发出 exit=-1，且不会调用 on_complete；
- 进行中的 run 登记在 `ActiveRuns`，关机时先取消它们，客户端能在连接关闭前收到 exit 帧。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from agent_gateway.errors import SlotBusyError, http_error
from agent_gateway.models import OutputEvent, SpawnSpec
from agent_gateway.multiplexer import LineObserver
from agent_gateway.slot import ExecutionSlot
from agent_gateway.sse import SSE_HEADERS, EventSink
from agent_gateway.supervisor import EXIT_ABNORMAL, ProcessSupervisor, RunOutcome

logger = logging.getLogger(__name__)


@dataclass
class RunPlan:
    """已解析的一次执行（spawn 规格 + 结束回调）。"""

    spec: SpawnSpec
    label: str
    on_complete: Optional[Callable[[RunOutcome], None]] = None
    on_stdout_line: Optional[LineObserver] = None


def busy_response(message: str) -> JSONResponse:
    err = http_error("busy", message, status_code=409)
    return JSONResponse(status_code=err.status_code, content={"detail": err.detail})


def _finish_sink(sink: EventSink) -> None:
    """run task 结束后兜底：task 在开始执行前就被取消时，补发 exit 帧并关闭 sink。"""

    if not sink.closed:
        sink.emit(OutputEvent.exit(EXIT_ABNORMAL))
        sink.close()


class ActiveRuns:
    """进行中的 run task 登记表（关机时统一取消）。"""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def cancel_all(self) -> int:
        """
        取消所有进行中的 run 并等待其结束（子进程已终止、exit 帧已入队）。

        返回：
        - 被取消的 run 数量
        """

        tasks: List[asyncio.Task[None]] = [t for t in self._tasks if not t.done()]
        if not tasks:
            return 0
        logger.info("cancelling %d in-flight run(s)", len(tasks))
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for res in results:
            if isinstance(res, Exception):
                logger.error("run task failed during cancel: %r", res)
        return len(tasks)


class RunStreamResponse(StreamingResponse):
    """
    SSE 响应：在整个流式传输期间持有 execution slot。

    参数：
    - slot：进程级 execution slot
    - supervisor：子进程监督者
    - plan：拿到 slot 之后调用，返回本次 `RunPlan`
    - runs：进行中 run 的登记表（关机时取消）
    """

    def __init__(
        self,
        *,
        slot: ExecutionSlot,
        supervisor: ProcessSupervisor,
        plan: Callable[[], RunPlan],
        runs: Optional[ActiveRuns] = None,
    ) -> None:
        super().__init__((), media_type="text/event-stream", headers=SSE_HEADERS)
        self._slot = slot
        self._supervisor = supervisor
        self._plan = plan
        self._runs = runs

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            with self._slot.occupy():
                await self._stream(scope, receive, send)
        except SlotBusyError as e:
            logger.info("request rejected: %s", e)
            await busy_response(str(e))(scope, receive, send)

    async def _stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        plan = self._plan()
        logger.info("%s: %s", plan.label, plan.spec.argv)

        sink = EventSink()
        frames = sink.frames(Request(scope, receive))
        self.body_iterator = frames
        task = asyncio.create_task(self._exchange(plan, sink))
        task.add_done_callback(lambda _t: _finish_sink(sink))
        if self._runs is not None:
            self._runs.track(task)
        try:
            await super().__call__(scope, receive, send)
        finally:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("%s: run task failed", plan.label)
            await frames.aclose()

    async def _exchange(self, plan: RunPlan, sink: EventSink) -> None:
        try:
            try:
                outcome = await self._supervisor.stream_command(
                    plan.spec,
                    sink,
                    on_stdout_line=plan.on_stdout_line,
                )
            except asyncio.CancelledError:
                # 子进程已被 supervisor 终止；客户端已断开时该帧会被丢弃
                logger.info("%s: run cancelled", plan.label)
                sink.emit(OutputEvent.exit(EXIT_ABNORMAL))
                raise
            except Exception as e:
                logger.exception("%s: unexpected supervisor failure", plan.label)
                sink.emit(OutputEvent.error(f"internal: {e}"))
                outcome = RunOutcome(exit_code=EXIT_ABNORMAL, started=False)
            sink.emit(OutputEvent.exit(outcome.exit_code))
            logger.info(
                "%s: exit=%d timed_out=%s duration_ms=%d",
                plan.label,
                outcome.exit_code,
                outcome.timed_out,
                outcome.duration_ms,
            )
            if plan.on_complete is not None:
                plan.on_complete(outcome)
        finally:
            sink.close()
