"""
PID 1 职责：orphan 回收 + 关机入口。

回收语义：
- 被 reparent 到 init 的孤儿进程退出后会变成 zombie，必须由我们 wait；
- gateway 自己 spawn 的子进程由 asyncio child watcher 负责 wait（需要拿到真实 exit code），
  因此 reaper 先用 `waitid(..., WNOWAIT)` 窥视，只回收未被跟踪的 pid；
- spawn 进行中（fork 已发生但 pid 尚未登记）时本轮跳过，避免抢走刚创建子进程的退出状态。

关机语义：
- SIGTERM/SIGINT 由 ASGI server（uvicorn）接管：停止 accept → 等待 in-flight 请求（有上限）→ 退出；
- 管理接口 stop 通过 `request_shutdown()` 给自身发 SIGTERM，与外部信号走同一路径。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)

ShutdownHook = Callable[[], None]


class ChildTracker:
    """gateway 自有子进程登记表（reaper 不得回收其中的 pid）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pids: Set[int] = set()
        self._spawning = 0

    @contextmanager
    def spawning(self) -> Iterator[None]:
        """标记一次 spawn 进行中（作用域内 reaper 暂停回收）。"""

        with self._lock:
            self._spawning += 1
        try:
            yield
        finally:
            with self._lock:
                self._spawning -= 1

    def track(self, pid: int) -> None:
        with self._lock:
            self._pids.add(int(pid))

    def untrack(self, pid: int) -> None:
        with self._lock:
            self._pids.discard(int(pid))

    def is_protected(self, pid: int) -> bool:
        with self._lock:
            return self._spawning > 0 or int(pid) in self._pids


def reap_once(tracker: ChildTracker) -> List[int]:
    """
    非阻塞地回收所有可回收的孤儿进程。

    返回：
    - 本轮回收的 pid 列表

    说明：
    - 没有任何子进程时（ChildProcessError）直接返回；
    - 窥视到的 pid 受保护时本轮停止（waitid 每次只返回一个 pid，无法越过它）。
    """

    reaped: List[int] = []
    while True:
        try:
            info = os.waitid(os.P_ALL, 0, os.WEXITED | os.WNOHANG | os.WNOWAIT)
        except ChildProcessError:
            break
        if info is None:
            break
        pid = int(info.si_pid)
        if tracker.is_protected(pid):
            break
        try:
            wpid, _status = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            # 已被其它等待者回收
            continue
        if wpid == 0:
            break
        reaped.append(wpid)
    return reaped


def _terminate_self() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


class InitSupervisor:
    """
    init 进程的后台职责（reaper task + 关机入口）。

    参数：
    - reap_interval_sec：空闲轮询间隔
    - reaper_enabled：是否启动 reaper（非 PID 1 的开发环境可关闭）
    - shutdown_hook：关机动作（默认给自身发 SIGTERM；测试可注入）
    """

    def __init__(
        self,
        *,
        reap_interval_sec: float = 1.0,
        reaper_enabled: bool = True,
        shutdown_hook: Optional[ShutdownHook] = None,
        children: Optional[ChildTracker] = None,
    ) -> None:
        self.children = children or ChildTracker()
        self._interval = float(reap_interval_sec)
        self._enabled = bool(reaper_enabled)
        self._shutdown_hook = shutdown_hook or _terminate_self
        self._task: Optional[asyncio.Task[None]] = None
        self.reaped_total = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _reap_forever(self) -> None:
        while True:
            try:
                pids = reap_once(self.children)
            except Exception:
                # 进程级故障只记录，不能让 reaper（更不能让 init）退出
                logger.exception("orphan reaper iteration failed")
                pids = []
            if pids:
                self.reaped_total += len(pids)
                logger.debug("reaped orphans: %s", pids)
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """在当前 event loop 上启动 reaper（重复调用无副作用）。"""

        if not self._enabled or self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._reap_forever(), name="orphan-reaper")
        logger.info("orphan reaper started (interval=%.2fs, pid=%d)", self._interval, os.getpid())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def request_shutdown(self) -> None:
        """触发关机（与 SIGTERM 同路径）。"""

        logger.info("shutdown requested")
        self._shutdown_hook()
