"""SQLite Job-Backend.

Zeilen entsprechen 1:1 den Jobs, dazu eine Append-only-Tabelle für die
Ausführungshistorie. Async-Methoden nutzen asyncio.to_thread um den
Event Loop nicht zu blockieren.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from cronkeeper.errors import StoreError
from cronkeeper.models import BackupDescriptor, ExecutionLogEntry, Job, _utc_now
from cronkeeper.utils.logging import get_logger

log = get_logger("cronkeeper.store.sqlite")

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS crontabs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    command TEXT NOT NULL,
    schedule TEXT NOT NULL,
    stopped INTEGER NOT NULL DEFAULT 0,
    logging INTEGER NOT NULL DEFAULT 0,
    mailing TEXT NOT NULL DEFAULT '{}',
    hook TEXT NOT NULL DEFAULT '',
    created TEXT NOT NULL,
    last_modified TEXT NOT NULL,
    saved INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_crontabs_created ON crontabs(created);

CREATE TABLE IF NOT EXISTS environment (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_logs_job_id ON logs(job_id);

CREATE TABLE IF NOT EXISTS backups (
    filename TEXT PRIMARY KEY,
    size INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT ''
);
"""

_ENV_KEY = "env"


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        name=row["name"],
        command=row["command"],
        schedule=row["schedule"],
        stopped=bool(row["stopped"]),
        logging=bool(row["logging"]),
        mailing=json.loads(row["mailing"] or "{}"),
        hook=row["hook"],
        created=datetime.fromisoformat(row["created"]),
        last_modified=datetime.fromisoformat(row["last_modified"]),
        saved=bool(row["saved"]),
    )


def _job_params(job: Job) -> tuple[Any, ...]:
    return (
        job.name,
        job.command,
        job.schedule,
        int(job.stopped),
        int(job.logging),
        json.dumps(job.mailing),
        job.hook,
        _ts(job.created),
        _ts(job.last_modified),
        int(job.saved),
        job.id,
    )


class SQLiteJobBackend:
    """SQLite-Backend mit Row-Factory."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _ensure_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            log.info("sqlite_connected", path=self._db_path)
        return self._conn

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        def _locked() -> T:
            with self._lock:
                return fn(self._ensure_connection(), *args)

        try:
            return await asyncio.to_thread(_locked)
        except sqlite3.Error as exc:
            raise StoreError(
                f"SQLite {operation} failed: {exc}",
                details={"operation": operation, "backend": "sqlite"},
            ) from exc

    # ── Sync-Hilfsmethoden (für asyncio.to_thread) ──────────────

    @staticmethod
    def _initialize_sync(conn: sqlite3.Connection) -> None:
        conn.executescript(_SCHEMA)
        conn.commit()

    @staticmethod
    def _insert_job_sync(conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """INSERT INTO crontabs
               (name, command, schedule, stopped, logging, mailing, hook,
                created, last_modified, saved, id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            _job_params(job),
        )
        conn.commit()

    @staticmethod
    def _fetch_job_sync(conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute("SELECT * FROM crontabs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    @staticmethod
    def _fetch_jobs_sync(conn: sqlite3.Connection) -> list[Job]:
        rows = conn.execute("SELECT * FROM crontabs ORDER BY created DESC, id DESC").fetchall()
        return [_row_to_job(r) for r in rows]

    @staticmethod
    def _replace_job_sync(conn: sqlite3.Connection, job: Job) -> bool:
        cursor = conn.execute(
            """UPDATE crontabs SET
                 name = ?, command = ?, schedule = ?, stopped = ?, logging = ?,
                 mailing = ?, hook = ?, created = ?, last_modified = ?, saved = ?
               WHERE id = ?""",
            _job_params(job),
        )
        conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _delete_job_sync(conn: sqlite3.Connection, job_id: str) -> bool:
        cursor = conn.execute("DELETE FROM crontabs WHERE id = ?", (job_id,))
        conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _mark_saved_sync(conn: sqlite3.Connection, snapshot: Sequence[tuple[str, datetime]]) -> int:
        # Eine Transaktion für den ganzen Batch
        marked = 0
        with conn:
            for job_id, last_modified in snapshot:
                cursor = conn.execute(
                    "UPDATE crontabs SET saved = 1 WHERE id = ? AND last_modified = ?",
                    (job_id, _ts(last_modified)),
                )
                marked += cursor.rowcount
        return marked

    @staticmethod
    def _get_environment_sync(conn: sqlite3.Connection) -> str:
        row = conn.execute("SELECT value FROM environment WHERE key = ?", (_ENV_KEY,)).fetchone()
        return row["value"] if row is not None else ""

    @staticmethod
    def _set_environment_sync(conn: sqlite3.Connection, text: str, updated_at: str) -> None:
        conn.execute(
            """INSERT INTO environment (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (_ENV_KEY, text, updated_at),
        )
        conn.commit()

    @staticmethod
    def _append_log_sync(conn: sqlite3.Connection, entry: ExecutionLogEntry) -> None:
        conn.execute(
            "INSERT INTO logs (job_id, kind, message, timestamp) VALUES (?, ?, ?, ?)",
            (entry.job_id, entry.kind, entry.message, _ts(entry.timestamp)),
        )
        conn.commit()

    @staticmethod
    def _fetch_logs_sync(conn: sqlite3.Connection, job_id: str, limit: int) -> list[ExecutionLogEntry]:
        rows = conn.execute(
            "SELECT * FROM logs WHERE job_id = ? ORDER BY id DESC LIMIT ?",
            (job_id, limit),
        ).fetchall()
        return [
            ExecutionLogEntry(
                job_id=r["job_id"],
                kind=r["kind"],
                message=r["message"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
            )
            for r in rows
        ]

    @staticmethod
    def _insert_backup_sync(conn: sqlite3.Connection, descriptor: BackupDescriptor) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO backups (filename, size, created_at, description)
               VALUES (?, ?, ?, ?)""",
            (descriptor.filename, descriptor.size, _ts(descriptor.created_at), descriptor.description),
        )
        conn.commit()

    @staticmethod
    def _fetch_backups_sync(conn: sqlite3.Connection) -> list[BackupDescriptor]:
        rows = conn.execute("SELECT * FROM backups ORDER BY created_at DESC").fetchall()
        return [
            BackupDescriptor(
                filename=r["filename"],
                size=r["size"],
                created_at=datetime.fromisoformat(r["created_at"]),
                description=r["description"],
            )
            for r in rows
        ]

    @staticmethod
    def _delete_backup_sync(conn: sqlite3.Connection, filename: str) -> bool:
        cursor = conn.execute("DELETE FROM backups WHERE filename = ?", (filename,))
        conn.commit()
        return cursor.rowcount > 0

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                log.info("sqlite_closed", path=self._db_path)

    # ── Async-Methoden (wrappen sync via to_thread) ─────────────

    async def initialize(self) -> None:
        await self._run("initialize", self._initialize_sync)

    async def insert_job(self, job: Job) -> None:
        await self._run("insert_job", self._insert_job_sync, job)

    async def fetch_job(self, job_id: str) -> Job | None:
        return await self._run("fetch_job", self._fetch_job_sync, job_id)

    async def fetch_jobs(self) -> list[Job]:
        return await self._run("fetch_jobs", self._fetch_jobs_sync)

    async def replace_job(self, job: Job) -> bool:
        return await self._run("replace_job", self._replace_job_sync, job)

    async def delete_job(self, job_id: str) -> bool:
        return await self._run("delete_job", self._delete_job_sync, job_id)

    async def mark_saved(self, snapshot: Sequence[tuple[str, datetime]]) -> int:
        return await self._run("mark_saved", self._mark_saved_sync, list(snapshot))

    async def get_environment(self) -> str:
        return await self._run("get_environment", self._get_environment_sync)

    async def set_environment(self, text: str) -> None:
        await self._run("set_environment", self._set_environment_sync, text, _ts(_utc_now()))

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        await self._run("append_log", self._append_log_sync, entry)

    async def fetch_logs(self, job_id: str, limit: int = 100) -> list[ExecutionLogEntry]:
        return await self._run("fetch_logs", self._fetch_logs_sync, job_id, limit)

    async def insert_backup(self, descriptor: BackupDescriptor) -> None:
        await self._run("insert_backup", self._insert_backup_sync, descriptor)

    async def fetch_backups(self) -> list[BackupDescriptor]:
        return await self._run("fetch_backups", self._fetch_backups_sync)

    async def delete_backup(self, filename: str) -> bool:
        return await self._run("delete_backup", self._delete_backup_sync, filename)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    @property
    def backend_type(self) -> str:
        return "sqlite"

    @property
    def location(self) -> str:
        return self._db_path
