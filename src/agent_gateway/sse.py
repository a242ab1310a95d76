from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

from fastapi import Request

from agent_gateway.models import OutputEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_frame(event: OutputEvent) -> bytes:
    """
    格式化一条 SSE 消息。

    约束：
    - 只有 `data:` 行（不带 `event:`），data 为单行紧凑 JSON
    """

    return f"data: {event.to_json()}\n\n".encode("utf-8")


class EventSink:
    """
    事件出口：emit 立即把帧放入队列，`frames()` 逐帧交给 StreamingResponse。

    说明：
    - StreamingResponse 对每个 yield 执行一次 ASGI send，server 直接写 socket，不做合并；
    - emit 只在 event loop 线程上调用（两个 reader task 共享同一 loop），无需额外加锁。
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: OutputEvent) -> None:
        if self._closed:
            logger.debug("event dropped after sink close: %s", event.type)
            return
        self._queue.put_nowait(format_sse_frame(event))

    def close(self) -> None:
        """结束帧流；重复调用无副作用。"""

        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def frames(
        self,
        request: Optional[Request] = None,
        *,
        poll_interval_sec: float = 0.5,
    ) -> AsyncIterator[bytes]:
        """
        逐帧产出，直到 `close()` 或客户端断开。

        参数：
        - request：用于断连检测；为 None 时只等待 close
        - poll_interval_sec：断连检测间隔（队列空闲或持续有输出时都会检测）

        说明：
        - close 之前已入队的帧（包括最后的 exit 帧）都会产出后才结束。
        """

        last_check = time.monotonic()
        while True:
            idle = False
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=poll_interval_sec)
            except asyncio.TimeoutError:
                frame, idle = None, True
            if frame is None and not idle:
                return
            if request is not None and time.monotonic() - last_check >= poll_interval_sec:
                last_check = time.monotonic()
                if await _client_gone(request):
                    logger.info("client disconnected; ending event stream")
                    return
            if frame is not None:
                yield frame


async def _client_gone(request: Request) -> bool:
    try:
        return bool(await request.is_disconnected())
    except Exception:
        # fail-open：断连检测异常不阻断
        logger.debug("disconnect check failed", exc_info=True)
        return False
