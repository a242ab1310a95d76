"""
Stream multiplexer：并发读取子进程 stdout/stderr，逐行推入同一个 EventSink。

约束：
- 每个流一个 reader task；两者由 `asyncio.gather` 汇合（两个流都 EOF 或出错后才返回）；
- 单个流内事件顺序 == 产出顺序；两个流之间不保证先后；
- 行长度上限由 StreamReader 的 `limit` 决定（supervisor 以 `max_line_bytes` 创建管道）：
  超长行视为该流的硬错误，发出一条 error 事件后丢弃该流剩余字节（不截断、不继续出事件），
  同时保持读取直到 EOF，避免子进程因管道写满而阻塞。
"""

from __future__ import annotations

import asyncio
from typing import Callable, Literal, Optional

from agent_gateway.models import OutputEvent
from agent_gateway.sse import EventSink

StreamName = Literal["stdout", "stderr"]
LineObserver = Callable[[str], None]

_DISCARD_CHUNK = 64 * 1024


def _decode_line(raw: bytes) -> str:
    """去掉行尾 `\\n` / `\\r\\n` 并按 UTF-8 解码；非法字节替换为 U+FFFD。"""

    if raw.endswith(b"\n"):
        raw = raw[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


async def _discard(reader: asyncio.StreamReader) -> None:
    while await reader.read(_DISCARD_CHUNK):
        pass


async def drain_lines(
    reader: Optional[asyncio.StreamReader],
    *,
    stream: StreamName,
    sink: EventSink,
    max_line_bytes: int,
    on_line: Optional[LineObserver] = None,
) -> int:
    """
    读取一个流直到 EOF，每行发出一个事件。

    参数：
    - reader：子进程管道（None 表示未捕获该流）
    - stream：事件类型（stdout/stderr）
    - sink：事件出口
    - max_line_bytes：行长度上限（仅用于错误信息；实际上限由 reader 的 limit 决定）
    - on_line：每行回调（在 emit 之后调用）

    返回：
    - 发出的行事件数量
    """

    if reader is None:
        return 0
    count = 0
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            sink.emit(OutputEvent.error(f"{stream}: line exceeds {max_line_bytes} bytes"))
            await _discard(reader)
            return count
        if not raw:
            return count
        line = _decode_line(raw)
        sink.emit(OutputEvent(type=stream, data=line))
        count += 1
        if on_line is not None:
            on_line(line)


async def multiplex(
    stdout: Optional[asyncio.StreamReader],
    stderr: Optional[asyncio.StreamReader],
    *,
    sink: EventSink,
    max_line_bytes: int,
    on_stdout_line: Optional[LineObserver] = None,
) -> tuple[int, int]:
    """
    并发 drain 两个流，返回 `(stdout 行数, stderr 行数)`。

    说明：
    - 外层被取消（deadline/客户端断开）时，gather 会一并取消两个 reader。
    """

    n_out, n_err = await asyncio.gather(
        drain_lines(stdout, stream="stdout", sink=sink, max_line_bytes=max_line_bytes, on_line=on_stdout_line),
        drain_lines(stderr, stream="stderr", sink=sink, max_line_bytes=max_line_bytes),
    )
    return int(n_out), int(n_err)
