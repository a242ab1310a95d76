"""
Agent command builder：`(MessageRequest, AgentSession) -> (executable, args)`。

约束：
- 纯函数：无 I/O、无副作用，相同输入得到相同输出；
- 分发走查表（agent id → `AgentPolicy`），不在业务逻辑里散落字符串分支；
- turn 计数为 0 时是全新调用（不带任何续聊参数）；> 0 时必须带续聊参数：
  有 resumption token 时使用显式 resume 形式，否则使用“继续最近一次会话”的通用形式；
- 未登记的 agent 走默认策略：agent id 即可执行文件名，message 为唯一参数（扩展机制，不是错误）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from agent_gateway.models import MessageRequest
from agent_gateway.sessions import AgentSession

Command = Tuple[str, List[str]]
ArgsBuilder = Callable[[MessageRequest, AgentSession], List[str]]


def _model_args(req: MessageRequest) -> List[str]:
    return ["--model", req.model] if req.model else []


def _is_continuation(sess: AgentSession) -> bool:
    return sess.message_count > 0


def _claude_args(req: MessageRequest, sess: AgentSession) -> List[str]:
    args = [
        "--print", req.message,
        "--verbose",
        "--output-format", "stream-json",
        "--include-partial-messages",
    ]
    args += _model_args(req)
    # Claude Code 的会话存放在 ~/.claude/，VM 存活期间一直可用
    if _is_continuation(sess):
        args += ["--resume", sess.session_id] if sess.session_id else ["--continue"]
    return args


def _opencode_args(req: MessageRequest, sess: AgentSession) -> List[str]:
    args = ["chat", "--message", req.message]
    if _is_continuation(sess):
        args += ["--session", sess.session_id] if sess.session_id else ["--continue"]
    return args


def _goose_args(req: MessageRequest, sess: AgentSession) -> List[str]:
    if _is_continuation(sess):
        if sess.session_id:
            return ["session", "resume", sess.session_id, "--message", req.message]
        return ["run", "--resume", "--text", req.message]
    return ["run", "--text", req.message]


def _codex_args(req: MessageRequest, sess: AgentSession) -> List[str]:
    prefix: List[str] = []
    if _is_continuation(sess):
        prefix = ["resume", sess.session_id] if sess.session_id else ["resume", "--last"]
    return prefix + _model_args(req) + [req.message]


def _cursor_args(req: MessageRequest, sess: AgentSession) -> List[str]:
    args = ["--message", req.message]
    if _is_continuation(sess):
        args += ["--resume", sess.session_id] if sess.session_id else ["--resume"]
    return args


@dataclass(frozen=True)
class AgentPolicy:
    """单个 agent CLI 的调用约定。"""

    executable: str
    build_args: ArgsBuilder


AGENT_POLICIES: Dict[str, AgentPolicy] = {
    "claude": AgentPolicy("claude", _claude_args),
    "claude-code": AgentPolicy("claude", _claude_args),
    "opencode": AgentPolicy("opencode", _opencode_args),
    "goose": AgentPolicy("goose", _goose_args),
    "codex": AgentPolicy("codex", _codex_args),
    "cursor": AgentPolicy("cursor-agent", _cursor_args),
    "cursor-agent": AgentPolicy("cursor-agent", _cursor_args),
}


def policy_for(agent: str) -> Optional[AgentPolicy]:
    """返回已登记的策略；未登记返回 None（调用方走默认策略）。"""

    return AGENT_POLICIES.get(agent)


def build_agent_command(req: MessageRequest, sess: AgentSession) -> Command:
    policy = policy_for(req.agent)
    if policy is None:
        return req.agent, [req.message]
    return policy.executable, policy.build_args(req, sess)
