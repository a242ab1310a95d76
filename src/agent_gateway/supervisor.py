"""
Process supervisor：spawn 子进程、把输出实时推给 EventSink、执行 deadline。

结果语义（`RunOutcome.exit_code`）：
- 正常退出：子进程真实 exit code（非零也不是系统错误）
- 被信号杀死 / wait 异常：`EXIT_ABNORMAL`（-1）
- spawn 失败：先发 error 事件，再返回 `EXIT_ABNORMAL` 且 `started=False`
- deadline 到期：终止整个进程组，返回 `EXIT_TIMEOUT`（-2），不发 error 事件

终止策略：SIGTERM → (terminate_grace_ms) → SIGKILL，作用于进程组（子进程以新 session 启动）。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from agent_gateway.init import ChildTracker
from agent_gateway.models import OutputEvent, SpawnSpec
from agent_gateway.multiplexer import LineObserver, multiplex
from agent_gateway.sse import EventSink

logger = logging.getLogger(__name__)

EXIT_ABNORMAL = -1
EXIT_TIMEOUT = -2


@dataclass(frozen=True)
class RunOutcome:
    """一次 run 的终止结果。"""

    exit_code: int
    started: bool = True
    timed_out: bool = False
    duration_ms: int = 0


def build_env(
    overlay: Optional[Mapping[str, str]],
    *,
    defaults: Mapping[str, str],
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    构造子进程环境变量。

    规则：
    - 以 base（默认 os.environ）为底，overlay 覆盖同名项；
    - defaults 中的变量（HOME/PATH/TERM）仅在缺失或为空时补齐。
    """

    env = dict(os.environ if base is None else base)
    if overlay:
        env.update({str(k): str(v) for k, v in overlay.items()})
    for key, fallback in defaults.items():
        if not env.get(key):
            env[key] = str(fallback)
    return env


async def _spawn_process(
    argv: List[str],
    *,
    cwd: str,
    env: Mapping[str, str],
    limit: int,
) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=dict(env),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=limit,
        start_new_session=True,
    )


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """向子进程所在进程组发信号；进程组不存在时退化为只发给子进程。"""

    try:
        os.killpg(proc.pid, sig)
        return
    except (ProcessLookupError, PermissionError):
        pass
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _normalize_exit_code(returncode: Optional[int]) -> int:
    if returncode is None or returncode < 0:
        return EXIT_ABNORMAL
    return int(returncode)


class ProcessSupervisor:
    """
    子进程监督者。

    参数：
    - max_line_bytes：单行上限（同时作为管道 StreamReader 的 limit）
    - terminate_grace_ms：SIGTERM → SIGKILL 的宽限时间
    - env_defaults：必须存在的环境变量及其默认值
    - children：自有子进程登记表（与 orphan reaper 共享）
    """

    def __init__(
        self,
        *,
        max_line_bytes: int,
        terminate_grace_ms: int = 200,
        env_defaults: Optional[Mapping[str, str]] = None,
        children: Optional[ChildTracker] = None,
    ) -> None:
        if max_line_bytes < 1:
            raise ValueError("max_line_bytes must be >= 1")
        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        self._max_line_bytes = int(max_line_bytes)
        self._grace_sec = terminate_grace_ms / 1000.0
        self._env_defaults = dict(env_defaults or {})
        self._children = children or ChildTracker()

    async def stream_command(
        self,
        spec: SpawnSpec,
        sink: EventSink,
        *,
        on_stdout_line: Optional[LineObserver] = None,
    ) -> RunOutcome:
        """
        执行 spec 并把 stdout/stderr 逐行推入 sink，阻塞到子进程结束或 deadline 到期。

        说明：
        - 不发 exit 事件（由调用方在更新 session 之前统一发出）；
        - 调用方取消本协程时（客户端断开/关机），会先终止进程组再向上抛出 CancelledError。
        """

        start = time.monotonic()
        env = build_env(spec.env, defaults=self._env_defaults)
        try:
            with self._children.spawning():
                proc = await _spawn_process(spec.argv, cwd=spec.cwd, env=env, limit=self._max_line_bytes)
                self._children.track(proc.pid)
        except OSError as e:
            logger.warning("spawn failed: %s %s: %s", spec.command, list(spec.args), e)
            sink.emit(OutputEvent.error(f"start: {e}"))
            return RunOutcome(exit_code=EXIT_ABNORMAL, started=False, duration_ms=_elapsed_ms(start))

        try:
            try:
                returncode = await asyncio.wait_for(
                    self._drain_and_wait(proc, sink, on_stdout_line),
                    timeout=spec.timeout_sec,
                )
            except asyncio.TimeoutError:
                logger.warning("deadline exceeded after %ss; killing pid=%d", spec.timeout_sec, proc.pid)
                await self._terminate(proc)
                return RunOutcome(exit_code=EXIT_TIMEOUT, timed_out=True, duration_ms=_elapsed_ms(start))
            except asyncio.CancelledError:
                logger.info("run cancelled; killing pid=%d", proc.pid)
                await self._terminate(proc)
                raise
        finally:
            self._children.untrack(proc.pid)

        return RunOutcome(exit_code=_normalize_exit_code(returncode), duration_ms=_elapsed_ms(start))

    async def _drain_and_wait(
        self,
        proc: asyncio.subprocess.Process,
        sink: EventSink,
        on_stdout_line: Optional[LineObserver],
    ) -> Optional[int]:
        await multiplex(
            proc.stdout,
            proc.stderr,
            sink=sink,
            max_line_bytes=self._max_line_bytes,
            on_stdout_line=on_stdout_line,
        )
        return await proc.wait()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM → (grace) → SIGKILL，并等待子进程被回收。"""

        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_sec)
            return
        except asyncio.TimeoutError:
            pass
        _signal_group(proc, signal.SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), timeout=max(self._grace_sec, 1.0))
        except asyncio.TimeoutError:
            # 脱离进程组的后代仍持有管道时 wait() 不会返回；不再阻塞请求
            logger.warning("pid=%d killed but pipes still open (returncode=%s)", proc.pid, proc.returncode)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
