"""
描述: 结构化日志工具库
主要功能:
    - JSON 格式结构化输出
    - 自动注入执行上下文 (workspace_id, occurrence_id)
    - 统一日志配置初始化
"""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from typing import Any

from src.config import LoggingSettings


# region 上下文变量
workspace_id_var: ContextVar[str] = ContextVar("workspace_id", default="")
occurrence_id_var: ContextVar[str] = ContextVar("occurrence_id", default="")
# endregion


_RESERVED_RECORD_KEYS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    }
)


# region 日志 Formatter
class StructuredJsonFormatter(logging.Formatter):
    """
    JSON 结构化日志格式化器

    功能:
        - 将日志记录转换为单行 JSON
        - 自动注入当前上下文变量与 extra 字段
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if workspace_id := workspace_id_var.get():
            payload["workspace_id"] = workspace_id
        if occurrence_id := occurrence_id_var.get():
            payload["occurrence_id"] = occurrence_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class SimpleFormatter(logging.Formatter):
    """简单文本格式化器（开发环境用）"""

    def format(self, record: logging.LogRecord) -> str:
        base = f"[{self.formatTime(record)}] {record.levelname:5} {record.name}: {record.getMessage()}"

        context_parts = []
        if workspace_id := workspace_id_var.get():
            context_parts.append(f"ws={workspace_id}")
        if occurrence_id := occurrence_id_var.get():
            context_parts.append(f"occ={occurrence_id[:16]}")
        if context_parts:
            base += f" ({', '.join(context_parts)})"

        extras = []
        for key in ("rule_id", "outcome", "status_code", "duration_ms"):
            if hasattr(record, key):
                extras.append(f"{key}={getattr(record, key)}")
        if extras:
            base += f" [{', '.join(extras)}]"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)
        return base
# endregion


# region 上下文管理
def set_request_context(workspace_id: str | None = None, occurrence_id: str | None = None) -> None:
    """
    设置当前执行的上下文信息

    参数:
        workspace_id: 租户工作区标识
        occurrence_id: 当前触发事件的标识
    """
    if workspace_id:
        workspace_id_var.set(workspace_id)
    if occurrence_id:
        occurrence_id_var.set(occurrence_id)


def clear_request_context() -> None:
    """清除执行上下文"""
    workspace_id_var.set("")
    occurrence_id_var.set("")
# endregion


# region 日志初始化
def setup_logging(settings: LoggingSettings) -> None:
    """
    初始化全局日志配置

    参数:
        settings: 日志配置对象
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    if settings.format == "json":
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(SimpleFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
# endregion
