"""
agent-gateway：VM 内 PID 1 的 agent 执行网关。

说明：
- host 通过 HTTP 把对话 turn 或任意命令发进 VM，由本地子进程执行，输出以 SSE 实时回传；
- VM 在多轮对话之间无需重启：同一 agent 的后续 turn 会带上该 CLI 自己的续聊参数；
- 整个进程同一时刻至多执行一个子进程（execution slot）；
- 作为 init 进程负责回收 orphan 并响应 SIGTERM / stop 请求优雅退出。
"""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
