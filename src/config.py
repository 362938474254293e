"""
描述: 自动化引擎全局配置加载器
主要功能:
    - 统一管理服务、日志、自动化与渠道配置
    - 支持 YAML 文件加载与环境变量覆盖
    - 解析运行时文件路径
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


# region 基础配置模型
class ServerSettings(BaseModel):
    """服务监听配置"""
    host: str = "0.0.0.0"
    port: int = 8082
    workers: int = 1
    debug: bool = False


class LoggingSettings(BaseModel):
    """日志系统配置"""
    level: str = "INFO"
    format: str = "json"


class AutomationSettings(BaseModel):
    """自动化引擎配置"""

    enabled: bool = True
    api_key: str = ""
    storage_dir: str = "automation_data"
    db_file: str = "automation_data/automation.db"
    rules_file: str = ""
    action_max_retries: int = 1
    action_retry_delay_seconds: float = 0.5
    action_retry_max_delay_seconds: float = 8.0
    action_timeout_seconds: float = 15.0
    webhook_default_retry_count: int = 2
    webhook_timeout_seconds: float = 10.0
    webhook_signature_header: str = "X-Automation-Signature"
    webhook_signing_secrets: dict[str, str] = Field(default_factory=dict)
    default_signing_secret: str = ""
    response_body_log_limit: int = 500
    default_dm_template: str = "Thank you for your comment!"
    claim_ttl_seconds: int = 86400
    tick_scheduler_enabled: bool = False
    tick_interval_seconds: float = 30.0


class ChannelSettings(BaseModel):
    """渠道发送网关配置"""
    gateway_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


class Settings(BaseModel):
    """自动化服务配置聚合根"""
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)
# endregion


# region 配置加载逻辑


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            expr = match.group(1)
            if ":-" in expr:
                key, default = expr.split(":-", 1)
                return os.getenv(key, default)
            return os.getenv(expr, "")

        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(val) for key, val in value.items()}
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return _expand_env(data)


def _set_nested(data: dict[str, Any], keys: list[str], value: Any) -> None:
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    mapping = {
        "LOG_LEVEL": ["logging", "level"],
        "LOG_FORMAT": ["logging", "format"],
        "AUTOMATION_ENABLED": ["automation", "enabled"],
        "AUTOMATION_API_KEY": ["automation", "api_key"],
        "AUTOMATION_STORAGE_DIR": ["automation", "storage_dir"],
        "AUTOMATION_DB_FILE": ["automation", "db_file"],
        "AUTOMATION_RULES_FILE": ["automation", "rules_file"],
        "AUTOMATION_ACTION_MAX_RETRIES": ["automation", "action_max_retries"],
        "AUTOMATION_ACTION_RETRY_DELAY_SECONDS": ["automation", "action_retry_delay_seconds"],
        "AUTOMATION_ACTION_TIMEOUT_SECONDS": ["automation", "action_timeout_seconds"],
        "AUTOMATION_WEBHOOK_DEFAULT_RETRY_COUNT": ["automation", "webhook_default_retry_count"],
        "AUTOMATION_WEBHOOK_TIMEOUT_SECONDS": ["automation", "webhook_timeout_seconds"],
        "AUTOMATION_WEBHOOK_SIGNATURE_HEADER": ["automation", "webhook_signature_header"],
        "AUTOMATION_WEBHOOK_SECRET": ["automation", "default_signing_secret"],
        "AUTOMATION_TICK_SCHEDULER_ENABLED": ["automation", "tick_scheduler_enabled"],
        "AUTOMATION_TICK_INTERVAL_SECONDS": ["automation", "tick_interval_seconds"],
        "AUTOMATION_CLAIM_TTL_SECONDS": ["automation", "claim_ttl_seconds"],
        "CHANNEL_GATEWAY_URL": ["channels", "gateway_url"],
        "CHANNEL_GATEWAY_API_KEY": ["channels", "api_key"],
    }
    for env_key, path in mapping.items():
        env_value = os.getenv(env_key)
        if env_value is not None and env_value != "":
            _set_nested(data, path, env_value)
    return data


def load_settings(config_path: str | None = None) -> Settings:
    path = Path(config_path or os.getenv("CONFIG_PATH", "config.yaml"))
    data = _load_yaml(path)
    data = _apply_env_overrides(data)
    return Settings.model_validate(data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """获取单例配置对象"""
    return load_settings()
# endregion


# region 运行时路径
def resolve_config_base_dir() -> Path:
    config_path_text = str(os.getenv("CONFIG_PATH", "config.yaml") or "config.yaml").strip() or "config.yaml"
    config_path = Path(config_path_text)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve().parent


def resolve_runtime_path(raw_path: str | Path, *, base_dir: Path | None = None) -> Path:
    path = Path(raw_path)
    if path.is_absolute():
        return path
    resolved_base = base_dir if base_dir is not None else resolve_config_base_dir()
    return (resolved_base / path).resolve()
# endregion
