"""
gateway 内部错误分类（异常类型）与 HTTP 错误构造。

说明：
- 异常仅用于内部控制流（配置加载、slot 争用）；
- 子进程相关失败（spawn/timeout/非零退出）不走异常，而是作为事件写入 SSE 流。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class GatewayError(Exception):
    """gateway 内部错误基类（不建议直接抛出）。"""


class FrameworkError(GatewayError):
    """结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"


class ConfigError(FrameworkError):
    """配置文件/环境变量无法解析或校验失败。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="CONFIG_INVALID", message=message, details=details or {})


class SlotBusyError(GatewayError):
    """execution slot 已被占用（调用方应稍后重试）。"""


def http_error(
    kind: str,
    message: str,
    *,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    构造统一的 HTTP 错误响应。

    参数：
    - kind：错误类型（busy/validation/...，调用方据此区分场景）
    - message：人类可读的错误信息
    - status_code：HTTP 状态码
    - details：结构化详情（用于排障）
    """

    return HTTPException(
        status_code=int(status_code),
        detail={
            "kind": str(kind),
            "message": str(message),
            "details": details or {},
        },
    )
