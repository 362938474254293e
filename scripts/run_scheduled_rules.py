"""
描述: 定时规则执行脚本（供系统 cron 每分钟调用）
主要功能:
    - 对指定或全部 (workspace, agent) 执行一次定时入口
    - 导入规则 YAML 文件
    - 支持 JSON 输出
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from dotenv import load_dotenv


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.automation.errors import AutomationValidationError, RuleStoreUnavailableError
from src.automation.models import TriggerType, ensure_utc, utc_now
from src.automation.service import build_engine
from src.automation.store import import_rules_file
from src.config import get_settings
from src.utils.logger import setup_logging


def _parse_now(value: str) -> datetime:
    text = str(value or "").strip()
    if not text:
        return utc_now()
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError as exc:
        raise AutomationValidationError(f"invalid --now value: {value}") from exc


async def _run_tick(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    setup_logging(settings.logging)
    engine = build_engine(settings)

    imported = 0
    if args.import_rules:
        imported = import_rules_file(engine.store, args.import_rules)

    if args.import_only:
        return {"ok": True, "imported": imported, "batches": []}

    now = _parse_now(args.now)
    if args.workspace_id and args.agent_id:
        scopes = [(args.workspace_id, args.agent_id)]
    else:
        scopes = engine.store.list_scopes(TriggerType.TIME.value)

    batches: list[dict[str, Any]] = []
    ok = True
    for workspace_id, agent_id in scopes:
        try:
            batch = await engine.coordinator.run_scheduled_rules(workspace_id, agent_id, now)
        except RuleStoreUnavailableError as exc:
            ok = False
            batches.append({"workspace_id": workspace_id, "agent_id": agent_id, "error": exc.message})
            continue
        batches.append({"workspace_id": workspace_id, "agent_id": agent_id, **batch.to_dict()})
    return {"ok": ok, "imported": imported, "now": now.isoformat(), "batches": batches}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one scheduled automation tick")
    parser.add_argument("--workspace-id", type=str, default="", help="limit to one workspace")
    parser.add_argument("--agent-id", type=str, default="", help="limit to one agent (with --workspace-id)")
    parser.add_argument("--now", type=str, default="", help="ISO8601 tick time, default current UTC time")
    parser.add_argument("--import-rules", type=str, default="", help="import rules YAML before running")
    parser.add_argument("--import-only", action="store_true", help="import rules and exit")
    parser.add_argument("--json", action="store_true", help="print JSON only")
    return parser


def main() -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args()

    try:
        result = asyncio.run(_run_tick(args))
    except AutomationValidationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result, ensure_ascii=False, indent=2))
    else:
        print("automation scheduled tick")
        print(f"- ok: {result['ok']}")
        print(f"- imported: {result['imported']}")
        for batch in result["batches"]:
            executed = sum(1 for item in batch.get("outcomes", []) if item["outcome"] == "matched_executed")
            print(
                f"- {batch['workspace_id']}/{batch['agent_id']}: "
                f"rules={len(batch.get('outcomes', []))} executed={executed}"
                + (f" error={batch['error']}" if batch.get("error") else "")
            )

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
