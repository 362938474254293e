"""
描述: 邮件发送队列
主要功能:
    - 定义邮件任务与入队接口
    - SQLite 发件箱实现（状态 queued，由外部投递进程消费）
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, Protocol

from src.automation.errors import TransientDeliveryError


QUEUED = "queued"


@dataclass
class EmailJob:
    workspace_id: str
    agent_id: str
    rule_id: str
    to: list[str]
    subject: str
    body: str
    from_name: str | None = None
    reply_to: str | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = QUEUED
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workspace_id": self.workspace_id,
            "agent_id": self.agent_id,
            "rule_id": self.rule_id,
            "to": list(self.to),
            "subject": self.subject,
            "body": self.body,
            "from_name": self.from_name,
            "reply_to": self.reply_to,
            "status": self.status,
            "created_at": self.created_at,
        }


class EmailQueue(Protocol):
    async def enqueue(self, job: EmailJob) -> str:
        """入队并返回任务 ID"""
        ...


class SQLiteEmailOutbox:
    """邮件发件箱（与规则库共用 SQLite 文件）"""

    def __init__(self, db_path: str | Path = "automation_data/automation.db") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS email_outbox (
                    job_id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    rule_id TEXT NOT NULL,
                    recipients TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    from_name TEXT,
                    reply_to TEXT,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )

    async def enqueue(self, job: EmailJob) -> str:
        try:
            with self._lock:
                with self._session() as conn:
                    conn.execute(
                        """
                        INSERT INTO email_outbox(
                            job_id, workspace_id, agent_id, rule_id, recipients, subject,
                            body, from_name, reply_to, status, created_at
                        ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            job.job_id,
                            job.workspace_id,
                            job.agent_id,
                            job.rule_id,
                            json.dumps(job.to, ensure_ascii=False),
                            job.subject,
                            job.body,
                            job.from_name,
                            job.reply_to,
                            job.status,
                            job.created_at,
                        ),
                    )
        except sqlite3.OperationalError as exc:
            raise TransientDeliveryError(f"email outbox unavailable: {exc}") from exc
        return job.job_id

    def list_jobs(self, status: str | None = None, limit: int = 100) -> list[EmailJob]:
        sql = "SELECT * FROM email_outbox"
        params: list[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            EmailJob(
                job_id=str(row["job_id"]),
                workspace_id=str(row["workspace_id"]),
                agent_id=str(row["agent_id"]),
                rule_id=str(row["rule_id"]),
                to=list(json.loads(row["recipients"] or "[]")),
                subject=str(row["subject"]),
                body=str(row["body"]),
                from_name=row["from_name"],
                reply_to=row["reply_to"],
                status=str(row["status"]),
                created_at=float(row["created_at"]),
            )
            for row in rows
        ]
