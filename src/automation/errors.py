"""
描述: 自动化引擎异常定义
主要功能:
    - 统一异常基类（错误码 + 详情）
    - 规则校验、资源缺失、投递失败、存储异常分类
"""

from __future__ import annotations

from typing import Any


# region 基础异常
class AutomationError(Exception):
    """自动化引擎基础异常类"""

    def __init__(
        self,
        message: str,
        code: str = "AUTOMATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"
# endregion


# region 规则与资源
class AutomationValidationError(AutomationError):
    """规则配置或请求校验失败"""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundError(AutomationError):
    """工作区、智能体或规则不存在"""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            message=f"{resource} not found: {identifier}",
            code="NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class DuplicateOccurrenceError(AutomationError):
    """同一规则同一触发已执行（内部信号，不对外暴露）"""

    def __init__(self, rule_id: str, occurrence_key: str, reason: str = "already_executed") -> None:
        super().__init__(
            message=f"rule {rule_id} already handled occurrence {occurrence_key}",
            code="DUPLICATE_OCCURRENCE",
            details={"rule_id": rule_id, "occurrence_key": occurrence_key, "reason": reason},
        )
        self.rule_id = rule_id
        self.occurrence_key = occurrence_key
        self.reason = reason
# endregion


# region 投递异常
class DeliveryError(AutomationError):
    """动作投递失败基类"""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str = "",
        code: str = "DELIVERY_ERROR",
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if response_body:
            details["response_body"] = response_body
        super().__init__(message, code=code, details=details)
        self.status_code = status_code
        self.response_body = response_body


class TransientDeliveryError(DeliveryError):
    """可重试的投递失败（网络、超时、5xx）"""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, response_body: str = "") -> None:
        super().__init__(
            message,
            status_code=status_code,
            response_body=response_body,
            code="TRANSIENT_DELIVERY_ERROR",
        )


class PermanentDeliveryError(DeliveryError):
    """不可重试的投递失败（4xx、签名被拒）"""

    def __init__(self, message: str, *, status_code: int | None = None, response_body: str = "") -> None:
        super().__init__(
            message,
            status_code=status_code,
            response_body=response_body,
            code="PERMANENT_DELIVERY_ERROR",
        )


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def delivery_error_for_status(target: str, status_code: int, response_body: str = "") -> DeliveryError:
    message = f"{target} responded with HTTP {status_code}"
    if is_retryable_status(status_code):
        return TransientDeliveryError(message, status_code=status_code, response_body=response_body)
    return PermanentDeliveryError(message, status_code=status_code, response_body=response_body)
# endregion


# region 存储异常
class RuleStoreUnavailableError(AutomationError):
    """规则存储不可用，整批次无法执行"""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="RULE_STORE_UNAVAILABLE")


class StoreConflictError(AutomationError):
    """存储层条件更新冲突"""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_CONFLICT")
# endregion


def format_error(exc: BaseException) -> str:
    if isinstance(exc, AutomationError):
        return exc.message
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__
