"""
描述: Webhook 投递签名
主要功能:
    - 对请求体原始字节计算 HMAC-SHA256（十六进制）
    - 常量时间校验签名
    - 按工作区解析签名密钥
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Callable

from src.automation.errors import AutomationValidationError


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    normalized = str(signature or "").strip()
    if normalized.lower().startswith("sha256="):
        normalized = normalized.split("=", 1)[1].strip()
    if not normalized:
        return False
    return hmac.compare_digest(normalized, sign_body(secret, body))


class DeliverySigner:
    """按工作区密钥签名出站请求体"""

    def __init__(self, secret_resolver: Callable[[str], str | None]) -> None:
        self._secret_resolver = secret_resolver

    def secret_for(self, workspace_id: str) -> str:
        secret = str(self._secret_resolver(workspace_id) or "").strip()
        if not secret:
            raise AutomationValidationError(
                f"no signing secret configured for workspace {workspace_id}",
                details={"workspace_id": workspace_id},
            )
        return secret

    def sign(self, workspace_id: str, body: bytes) -> str:
        return sign_body(self.secret_for(workspace_id), body)
