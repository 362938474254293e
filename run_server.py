"""
描述: 自动化引擎运行脚本
主要功能:
    - 配置 asyncio 策略 (Windows)
    - 使用 uvicorn 启动 ASGI 服务
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

# Windows 兼容性：在任何 asyncio 操作前设置策略
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

BASE_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("CONFIG_PATH", str(BASE_DIR / "config.yaml"))

from dotenv import load_dotenv

load_dotenv(BASE_DIR / ".env")

import uvicorn

from src.config import get_settings


if __name__ == "__main__":
    settings = get_settings()
    port = int(os.getenv("AUTOMATION_PORT", str(settings.server.port)))
    print(f"Starting automation engine on http://{settings.server.host}:{port}")
    print("Press Ctrl+C to stop")
    uvicorn.run(
        "src.main:app",
        host=settings.server.host,
        port=port,
        workers=settings.server.workers,
        log_level="debug" if settings.server.debug else "info",
    )
