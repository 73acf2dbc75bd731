"""Redis Job-Backend.

Jobs liegen als JSON-Wert pro ID in einem Hash (``<namespace>``), der
Env-Block unter ``<namespace>:environment``, die Ausführungshistorie als
Liste pro Job und die Backup-Deskriptoren in ``<namespace>:backups``.

Nutzt redis.asyncio, der Client kann für Tests injiziert werden.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, WatchError

from cronkeeper.errors import StoreError
from cronkeeper.models import BackupDescriptor, ExecutionLogEntry, Job, _utc_now
from cronkeeper.utils.logging import get_logger

log = get_logger("cronkeeper.store.redis")

T = TypeVar("T")

_MAX_WATCH_RETRIES = 5


class RedisJobBackend:
    """Redis-Backend, ein Hash-Feld pro Job."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 6379,
        db: int = 0,
        password: str = "",
        namespace: str = "crontabs",
        socket_timeout: float = 5.0,
        client: Any | None = None,
    ) -> None:
        self._url = f"redis://{host}:{port}/{db}"
        self._ns = namespace
        if client is None:
            client = aioredis.Redis(
                host=host,
                port=port,
                db=db,
                password=password or None,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
                decode_responses=True,
            )
        self._client = client

    # ── Keys ─────────────────────────────────────────────────────

    @property
    def _jobs_key(self) -> str:
        return self._ns

    @property
    def _env_key(self) -> str:
        return f"{self._ns}:environment"

    @property
    def _backups_key(self) -> str:
        return f"{self._ns}:backups"

    def _logs_key(self, job_id: str) -> str:
        return f"{self._ns}:logs:{job_id}"

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as exc:
            raise StoreError(
                f"Redis {operation} failed: {exc}",
                details={"operation": operation, "backend": "redis"},
            ) from exc

    @staticmethod
    def _decode_job(raw: str) -> Job:
        try:
            return Job.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StoreError(f"Corrupt job record: {exc}", details={"backend": "redis"}) from exc

    # ── Jobs ─────────────────────────────────────────────────────

    async def initialize(self) -> None:
        await self._run("initialize", self._client.ping())
        log.info("redis_connected", url=self._url, namespace=self._ns)

    async def insert_job(self, job: Job) -> None:
        await self._run("insert_job", self._client.hset(self._jobs_key, job.id, job.model_dump_json()))

    async def fetch_job(self, job_id: str) -> Job | None:
        raw = await self._run("fetch_job", self._client.hget(self._jobs_key, job_id))
        return self._decode_job(raw) if raw else None

    async def fetch_jobs(self) -> list[Job]:
        raw_all = await self._run("fetch_jobs", self._client.hgetall(self._jobs_key))
        jobs = [self._decode_job(raw) for raw in raw_all.values()]
        jobs.sort(key=lambda j: (j.created, j.id), reverse=True)
        return jobs

    async def replace_job(self, job: Job) -> bool:
        return await self._swap_job("replace_job", job.id, lambda raw: job.model_dump_json() if raw else None)

    async def delete_job(self, job_id: str) -> bool:
        removed = await self._run("delete_job", self._client.hdel(self._jobs_key, job_id))
        return bool(removed)

    async def mark_saved(self, snapshot: Sequence[tuple[str, datetime]]) -> int:
        marked = 0
        for job_id, last_modified in snapshot:
            if await self._swap_job("mark_saved", job_id, functools.partial(self._saved_value, last_modified)):
                marked += 1
        return marked

    def _saved_value(self, expected: datetime, raw: str | None) -> str | None:
        if not raw:
            return None
        job = self._decode_job(raw)
        if job.last_modified != expected:
            return None
        return job.model_copy(update={"saved": True}).model_dump_json()

    async def _swap_job(self, operation: str, job_id: str, decide: Callable[[str | None], str | None]) -> bool:
        """Read-Compare-Write auf einem Job unter WATCH/MULTI.

        ``decide`` bekommt den aktuellen Wert und liefert den neuen oder
        None (nichts schreiben). Ändert jemand den Job-Hash zwischen Lesen
        und EXEC, verwirft Redis die Transaktion und es wird neu gelesen.

        Returns:
            True wenn geschrieben wurde.
        """
        try:
            for _ in range(_MAX_WATCH_RETRIES):
                async with self._client.pipeline(transaction=True) as pipe:
                    await pipe.watch(self._jobs_key)
                    value = decide(await pipe.hget(self._jobs_key, job_id))
                    if value is None:
                        return False
                    pipe.multi()
                    pipe.hset(self._jobs_key, job_id, value)
                    try:
                        await pipe.execute()
                        return True
                    except WatchError:
                        log.debug("redis_watch_conflict", operation=operation, job_id=job_id)
        except RedisError as exc:
            raise StoreError(
                f"Redis {operation} failed: {exc}",
                details={"operation": operation, "backend": "redis"},
            ) from exc
        raise StoreError(
            f"Redis {operation} gave up after {_MAX_WATCH_RETRIES} conflicting writes",
            details={"operation": operation, "backend": "redis", "job_id": job_id},
        )

    # ── Environment ──────────────────────────────────────────────

    async def get_environment(self) -> str:
        value = await self._run("get_environment", self._client.hget(self._env_key, "value"))
        return value or ""

    async def set_environment(self, text: str) -> None:
        await self._run(
            "set_environment",
            self._client.hset(self._env_key, mapping={"value": text, "updated_at": _utc_now().isoformat()}),
        )

    # ── Ausführungshistorie ──────────────────────────────────────

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        await self._run("append_log", self._client.rpush(self._logs_key(entry.job_id), entry.model_dump_json()))

    async def fetch_logs(self, job_id: str, limit: int = 100) -> list[ExecutionLogEntry]:
        raw = await self._run("fetch_logs", self._client.lrange(self._logs_key(job_id), -limit, -1))
        return [ExecutionLogEntry.model_validate_json(r) for r in reversed(raw)]

    # ── Backups ──────────────────────────────────────────────────

    async def insert_backup(self, descriptor: BackupDescriptor) -> None:
        await self._run(
            "insert_backup",
            self._client.hset(self._backups_key, descriptor.filename, descriptor.model_dump_json()),
        )

    async def fetch_backups(self) -> list[BackupDescriptor]:
        raw_all = await self._run("fetch_backups", self._client.hgetall(self._backups_key))
        backups = [BackupDescriptor.model_validate_json(r) for r in raw_all.values()]
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    async def delete_backup(self, filename: str) -> bool:
        removed = await self._run("delete_backup", self._client.hdel(self._backups_key, filename))
        return bool(removed)

    async def close(self) -> None:
        await self._client.aclose()
        log.info("redis_closed", url=self._url)

    @property
    def backend_type(self) -> str:
        return "redis"

    @property
    def location(self) -> str:
        return f"{self._url}#{self._ns}"
