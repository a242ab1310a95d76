"""
请求 / 事件 / spawn 规格的数据模型。

说明：
- `MessageRequest` / `ExecRequest` 为 HTTP body（pydantic 校验）；
- `SpawnSpec` 为完全解析后的不可变执行规格，交给 `ProcessSupervisor`；
- `OutputEvent` 为 SSE 帧的载荷（type/data/code）。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

EventType = Literal["stdout", "stderr", "exit", "error"]


class MessageRequest(BaseModel):
    """POST /api/v1/message 请求体（一次 agent turn）。"""

    model_config = ConfigDict(extra="ignore")

    message: str = ""
    agent: str = Field(min_length=1)
    model: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    # 秒；<= 0 表示使用默认超时
    timeout: int = 0


class ExecRequest(BaseModel):
    """POST /api/v1/exec 请求体（任意命令，绕过 command builder 与 session registry）。"""

    model_config = ConfigDict(extra="ignore")

    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: int = 0


@dataclass(frozen=True)
class SpawnSpec:
    """
    spawn 规格（构造后不可变）。

    字段：
    - command/args：可执行文件名与参数
    - env：环境变量 overlay（覆盖基础环境同名项；构造时复制为只读映射）
    - cwd：工作目录
    - timeout_sec：deadline（秒）
    """

    command: str
    args: tuple[str, ...]
    cwd: str
    timeout_sec: float
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "env", MappingProxyType({str(k): str(v) for k, v in self.env.items()}))

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class OutputEvent:
    """输出事件（stdout/stderr 行、exit、error）。"""

    type: EventType
    data: Optional[str] = None
    code: Optional[int] = None

    @classmethod
    def stdout(cls, line: str) -> "OutputEvent":
        return cls(type="stdout", data=line)

    @classmethod
    def stderr(cls, line: str) -> "OutputEvent":
        return cls(type="stderr", data=line)

    @classmethod
    def exit(cls, code: int) -> "OutputEvent":
        return cls(type="exit", code=int(code))

    @classmethod
    def error(cls, message: str) -> "OutputEvent":
        return cls(type="error", data=message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为帧 JSON：exit 只带 code；其余只带 data。"""

        if self.type == "exit":
            return {"type": self.type, "code": int(self.code or 0)}
        return {"type": self.type, "data": self.data or ""}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
