"""
Session registry：agent id → 会话连续性状态。

约束：
- session 在首次引用时惰性创建，进程存活期间不删除；
- 只由 message handler 在 run 结束后写入；
- registry 自带一把细粒度锁（与 execution slot 无关），读取返回副本，避免观察到“写一半”的状态。
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional


@dataclass(frozen=True)
class AgentSession:
    """单个 agent 的会话状态。"""

    message_count: int = 0
    # 部分 agent CLI 会在输出中暴露可恢复的会话标识
    session_id: Optional[str] = None


class SessionRegistry:
    """进程内 session registry（线程安全）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, AgentSession] = {}

    def get(self, agent: str) -> AgentSession:
        """返回 agent 的 session；不存在时创建零值 session 并保存。"""

        with self._lock:
            sess = self._sessions.get(agent)
            if sess is None:
                sess = AgentSession()
                self._sessions[agent] = sess
            return sess

    def advance(self, agent: str) -> int:
        """turn 计数 +1，返回新值。"""

        with self._lock:
            cur = self._sessions.get(agent) or AgentSession()
            nxt = replace(cur, message_count=cur.message_count + 1)
            self._sessions[agent] = nxt
            return nxt.message_count

    def set_resumption_token(self, agent: str, token: Optional[str]) -> None:
        """覆盖 resumption token（空字符串视为清空）。"""

        with self._lock:
            cur = self._sessions.get(agent) or AgentSession()
            self._sessions[agent] = replace(cur, session_id=(token or None))

    def snapshot(self) -> Dict[str, AgentSession]:
        with self._lock:
            return dict(self._sessions)


class ResumptionTokenWatcher:
    """
    观察一次 run 的 stdout 行，记录最后一次匹配到的 resumption token。

    说明：
    - pattern 的第 1 个捕获组即 token；
    - 只负责提取，写回 registry 由 handler 在 run 结束后完成。
    """

    def __init__(self, pattern: str) -> None:
        self._pattern = re.compile(pattern)
        self.token: Optional[str] = None

    def observe(self, line: str) -> None:
        m = self._pattern.search(line)
        if m and m.group(1):
            self.token = m.group(1)
