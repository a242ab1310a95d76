"""
Execution slot：整个进程内至多一个正在执行的子进程。

语义：
- `try_acquire()` 非阻塞；失败即返回 False（不排队、无公平性、无优先级）；
- `release()` 必须在所有退出路径上执行（正常结束/异常/超时/客户端断开）；
- `occupy()` 为作用域化的获取方式：争用时抛 `SlotBusyError`，退出作用域时必定释放。
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from agent_gateway.errors import SlotBusyError


class ExecutionSlot:
    """单并发执行闸门。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        """释放 slot；slot 未被持有时抛 RuntimeError（说明调用方 acquire/release 不配对）。"""

        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def occupy(self) -> Iterator[None]:
        if not self.try_acquire():
            raise SlotBusyError("agent is busy with another request")
        try:
            yield
        finally:
            self.release()
