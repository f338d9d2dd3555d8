from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..models import Notification, PollResult


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class SqliteStateStore:
    """
    默认状态存储：SQLite

    表设计（最小可用）：
    - last_results：source_id -> 最近一次 PollResult（JSON，不含 previous）
    - deliveries：已投递通知记录
    - delivery_failures：投递失败留痕（不做队列重试，但保证可追踪）

    ":memory:" 时复用同一连接（否则每次连接都是一个新的空库）。
    """

    sqlite_path: str
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _memory_conn: sqlite3.Connection | None = field(default=None, init=False, repr=False)

    def _connect(self) -> sqlite3.Connection:
        if self.sqlite_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._memory_conn.row_factory = sqlite3.Row
            return self._memory_conn
        conn = sqlite3.connect(self.sqlite_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:  # type: ignore[type-arg]
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    rows = conn.execute(sql, params).fetchall()
            finally:
                if conn is not self._memory_conn:
                    conn.close()
            return rows

    def ensure_schema(self) -> None:
        self._execute(
            """
            CREATE TABLE IF NOT EXISTS last_results (
                source_id TEXT PRIMARY KEY,
                result_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._execute(
            """
            CREATE TABLE IF NOT EXISTS deliveries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subscription_id TEXT NOT NULL,
                destination_id TEXT NOT NULL,
                triggers TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._execute(
            """
            CREATE TABLE IF NOT EXISTS delivery_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subscription_id TEXT NOT NULL,
                destination_id TEXT NOT NULL,
                error TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )

    def get_last_result(self, source_id: str) -> PollResult | None:
        rows = self._execute("SELECT result_json FROM last_results WHERE source_id = ?", (source_id,))
        if not rows:
            return None
        return PollResult.from_json_dict(json.loads(rows[0]["result_json"]))

    def save_last_results(self, results: list[PollResult]) -> None:
        now = _utc_now_iso()
        for result in results:
            self._execute(
                """
                INSERT INTO last_results(source_id, result_json, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    result_json=excluded.result_json,
                    updated_at=excluded.updated_at
                """,
                (result.source_id, json.dumps(result.to_json_dict(), ensure_ascii=False), now),
            )

    def delete_source(self, source_id: str) -> None:
        self._execute("DELETE FROM last_results WHERE source_id = ?", (source_id,))

    def record_delivery(self, notification: Notification) -> None:
        sub = notification.subscription
        self._execute(
            """
            INSERT INTO deliveries(subscription_id, destination_id, triggers, content, created_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (
                sub.subscription_id,
                sub.destination_id,
                ",".join(m.trigger_id for m in notification.matches),
                notification.content,
                notification.created_at.isoformat(),
            ),
        )

    def record_delivery_failure(self, *, subscription_id: str, destination_id: str, error: str) -> None:
        self._execute(
            """
            INSERT INTO delivery_failures(subscription_id, destination_id, error, created_at)
            VALUES(?, ?, ?, ?)
            """,
            (subscription_id, destination_id, error, _utc_now_iso()),
        )

    def count(self, table: str) -> int:
        if table not in ("last_results", "deliveries", "delivery_failures"):
            raise ValueError(f"unknown table: {table}")
        rows = self._execute(f"SELECT COUNT(*) AS n FROM {table}")  # noqa: S608
        return int(rows[0]["n"])
