"""
描述: {{path}} 模板渲染
主要功能:
    - 按点分路径从变量字典取值
    - 字符串/字典/列表递归渲染
    - 无法解析的变量渲染为空字符串
"""

from __future__ import annotations

import json
import re
from typing import Any


_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_MISSING = object()


def _lookup(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
            continue
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
            continue
        return _MISSING
    return current


def _stringify(value: Any) -> str:
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def render_text(template: str, context: dict[str, Any]) -> str:
    """渲染字符串模板，始终返回字符串"""
    if not template:
        return ""
    return _PLACEHOLDER_PATTERN.sub(lambda match: _stringify(_lookup(context, match.group(1))), template)


def render_value(value: Any, context: dict[str, Any]) -> Any:
    """
    递归渲染任意 JSON 值

    整个字符串只有一个占位符时返回原始类型的值（例如数字、对象），
    其余情况做文本替换。
    """
    if isinstance(value, str):
        match = _PLACEHOLDER_PATTERN.fullmatch(value.strip())
        if match:
            resolved = _lookup(context, match.group(1))
            if resolved is _MISSING or resolved is None:
                return ""
            return resolved
        return render_text(value, context)
    if isinstance(value, dict):
        return {key: render_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, context) for item in value]
    return value
