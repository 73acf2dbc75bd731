"""JobStore: einheitlicher Zugriff auf Jobs, unabhängig vom Backend.

Der Store ist die einzige Stelle, an der Jobs entstehen und sich ändern:

  - Jede Mutation läuft erst durch den Validator, auch das Setzen des
    Env-Blocks. Abgelehnte Werte werden nie gespeichert, die Begründung
    geht unverändert an den Aufrufer (ValidationError).
  - Jede Mutation setzt ``saved`` des betroffenen Jobs auf False. Jeder
    schreibende Backend-Aufruf leert den gesamten Read-Cache, auch wenn
    er scheitert oder erst nach seinem Timeout im Backend ankommt.
  - ``get`` und ``list_jobs`` laufen über den Cache.
  - Jeder Backend-Aufruf hat ein Timeout.
  - Optional wird jede erfolgreiche Mutation zusätzlich an einen
    Secondary-Write-Hook gereicht (Best Effort, Fehler bleiben intern).
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from cronkeeper.cron.schedule import describe_schedule
from cronkeeper.errors import JobNotFoundError, StoreError, ValidationError
from cronkeeper.models import (
    MUTABLE_FIELDS,
    BackupDescriptor,
    ExecutionLogEntry,
    ImportedEntry,
    ImportReport,
    Job,
    JobDraft,
    LogKind,
    ScheduleInfo,
    StoreStats,
    _utc_now,
)
from cronkeeper.security.validator import validate_environment, validate_job
from cronkeeper.store.backend import JobBackend
from cronkeeper.store.cache import QueryCache
from cronkeeper.utils.logging import get_logger
from cronkeeper.utils.telemetry import timed_operation

log = get_logger(__name__)

T = TypeVar("T")

# (operation, payload) → wird nach jeder erfolgreichen Mutation aufgerufen
SecondaryWrite = Callable[[str, dict[str, Any]], Awaitable[None]]


class JobStore:
    """Validierender, cachender Store vor einem JobBackend.

    Attributes:
        backend: Das konkrete Persistenz-Backend.
        cache: Read-Cache, gehört exklusiv zu dieser Instanz.
    """

    def __init__(
        self,
        backend: JobBackend,
        *,
        cache: QueryCache | None = None,
        timeout: float = 5.0,
        secondary_write: SecondaryWrite | None = None,
    ) -> None:
        """Initialisiert den Store.

        Args:
            backend: SQLite- oder Redis-Backend.
            cache: Read-Cache. None = Cache mit Default-Einstellungen.
            timeout: Obergrenze in Sekunden für jeden Backend-Aufruf.
            secondary_write: Optionaler Hook für parallele Schreibvorgänge
                in einen Alt-Store.
        """
        self.backend = backend
        self.cache = cache if cache is not None else QueryCache()
        self._timeout = timeout
        self._secondary_write = secondary_write
        self._pending_writes: set[asyncio.Future[Any]] = set()

    # ── Interna ──────────────────────────────────────────────────

    def _timeout_error(self, operation: str) -> StoreError:
        return StoreError(
            f"{operation} timed out after {self._timeout}s",
            details={"operation": operation, "backend": self.backend.backend_type},
        )

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as exc:
            raise self._timeout_error(operation) from exc

    async def _write(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Schreibender Backend-Aufruf.

        Ein Timeout bricht nur das Warten ab, nicht den Schreibvorgang im
        Backend. Der Cache wird deshalb in jedem Fall geleert und, falls
        der Vorgang noch läuft, ein zweites Mal, sobald er tatsächlich
        endet.
        """
        task = asyncio.ensure_future(awaitable)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except TimeoutError as exc:
            raise self._timeout_error(operation) from exc
        finally:
            self.cache.clear()
            if not task.done():
                self._pending_writes.add(task)
                task.add_done_callback(functools.partial(self._late_write_done, operation))

    def _late_write_done(self, operation: str, task: asyncio.Future[Any]) -> None:
        self._pending_writes.discard(task)
        self.cache.clear()
        if task.cancelled():
            return
        if task.exception() is not None:
            log.warning("late_write_failed", operation=operation, error=str(task.exception()))
        else:
            log.info("late_write_landed", operation=operation)

    async def _after_write(self, operation: str, payload: dict[str, Any]) -> None:
        if self._secondary_write is None:
            return
        try:
            await asyncio.wait_for(self._secondary_write(operation, payload), timeout=self._timeout)
        except Exception:
            log.warning("secondary_write_failed", operation=operation, exc_info=True)

    @staticmethod
    def _reject_if_invalid(draft: JobDraft) -> None:
        result = validate_job(draft)
        if not result.ok:
            log.warning("job_rejected", field=result.field, reason=result.reason)
            raise ValidationError(result.reason, field=result.field)

    async def _require(self, job_id: str) -> Job:
        job = await self._call("fetch_job", self.backend.fetch_job(job_id))
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> None:
        await self._call("initialize", self.backend.initialize())

    async def close(self) -> None:
        if self._pending_writes:
            await asyncio.wait(set(self._pending_writes), timeout=self._timeout)
        await self.backend.close()
        self.cache.clear()

    @property
    def backend_type(self) -> str:
        return self.backend.backend_type

    @property
    def storage_location(self) -> str:
        """Dauerhafter Speicherort, z.B. für externe Backup-Werkzeuge."""
        return self.backend.location

    # ── Jobs: Lesen ──────────────────────────────────────────────

    async def get(self, job_id: str) -> Job | None:
        """Ein Job oder None."""
        key = QueryCache.key("get", {"id": job_id})
        async with timed_operation("store.get", job_id=job_id) as span:
            cached = self.cache.get(key)
            span["cache_hit"] = cached is not None
            if cached is not None:
                return cached
            generation = self.cache.generation
            job = await self._call("fetch_job", self.backend.fetch_job(job_id))
            if job is not None:
                self.cache.set(key, job, generation=generation)
            return job

    async def list_jobs(self) -> list[Job]:
        """Alle Jobs, neueste zuerst."""
        key = QueryCache.key("list")
        async with timed_operation("store.list") as span:
            cached = self.cache.get(key)
            span["cache_hit"] = cached is not None
            if cached is not None:
                return list(cached)
            generation = self.cache.generation
            jobs = await self._call("fetch_jobs", self.backend.fetch_jobs())
            self.cache.set(key, tuple(jobs), generation=generation)
            return jobs

    async def list_annotated(self) -> list[tuple[Job, ScheduleInfo]]:
        """Alle Jobs mit lesbarer Schedule-Beschreibung und nächstem Lauf."""
        now = _utc_now()
        return [(job, describe_schedule(job.schedule, now)) for job in await self.list_jobs()]

    async def stats(self) -> StoreStats:
        jobs = await self.list_jobs()
        active = sum(1 for j in jobs if not j.stopped)
        saved = sum(1 for j in jobs if j.saved)
        return StoreStats(
            total=len(jobs),
            active=active,
            inactive=len(jobs) - active,
            saved=saved,
            unsaved=len(jobs) - saved,
        )

    # ── Jobs: Schreiben ──────────────────────────────────────────

    async def create(self, draft: JobDraft) -> str:
        """Validiert und speichert einen neuen Job.

        Returns:
            Die neu vergebene Job-ID.

        Raises:
            ValidationError: Name, Befehl, Schedule oder Hook abgelehnt.
            StoreError: Backend nicht erreichbar.
        """
        self._reject_if_invalid(draft)
        now = _utc_now()
        job = Job(**draft.model_dump(), created=now, last_modified=now, saved=False)
        async with timed_operation("store.create", job_id=job.id):
            await self._write("insert_job", self.backend.insert_job(job))
        log.info("job_created", job_id=job.id, name=job.name, schedule=job.schedule)
        await self._after_write("create", job.model_dump(mode="json"))
        return job.id

    async def update(self, job_id: str, **fields: Any) -> Job:
        """Ändert Felder eines Jobs.

        Erlaubt sind name, command, schedule, logging, mailing, hook. Der
        zusammengeführte Stand wird komplett neu validiert.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"unknown job field(s): {', '.join(sorted(unknown))}", field="")
        async with timed_operation("store.update", job_id=job_id):
            existing = await self._require(job_id)
            merged = existing.model_dump(include=set(JobDraft.model_fields))
            merged.update(fields)
            draft = JobDraft(**merged)
            self._reject_if_invalid(draft)
            updated = existing.model_copy(
                update={**draft.model_dump(), "last_modified": _utc_now(), "saved": False}
            )
            if not await self._write("replace_job", self.backend.replace_job(updated)):
                raise JobNotFoundError(job_id)
        log.info("job_updated", job_id=job_id, fields=sorted(fields))
        await self._after_write("update", updated.model_dump(mode="json"))
        return updated

    async def set_stopped(self, job_id: str, stopped: bool) -> Job:
        """Stoppt oder startet einen Job (wirkt erst nach dem nächsten Publish)."""
        async with timed_operation("store.set_stopped", job_id=job_id, stopped=stopped):
            existing = await self._require(job_id)
            updated = existing.model_copy(
                update={"stopped": stopped, "last_modified": _utc_now(), "saved": False}
            )
            if not await self._write("replace_job", self.backend.replace_job(updated)):
                raise JobNotFoundError(job_id)
        log.info("job_status_changed", job_id=job_id, stopped=stopped)
        await self._after_write("set_stopped", {"id": job_id, "stopped": stopped})
        return updated

    async def delete(self, job_id: str) -> bool:
        """Entfernt einen Job.

        Returns:
            True wenn der Job existierte.
        """
        async with timed_operation("store.delete", job_id=job_id):
            removed = await self._write("delete_job", self.backend.delete_job(job_id))
        log.info("job_deleted", job_id=job_id, existed=removed)
        await self._after_write("delete", {"id": job_id})
        return removed

    async def mark_saved(self, snapshot: Sequence[tuple[str, datetime]]) -> int:
        """Markiert veröffentlichte Jobs als saved.

        Nur Jobs, deren ``last_modified`` noch dem Snapshot entspricht;
        wer während des Publish geändert wurde, bleibt unsaved.
        """
        async with timed_operation("store.mark_saved", jobs=len(snapshot)):
            marked = await self._write("mark_saved", self.backend.mark_saved(snapshot))
        return marked

    async def import_entries(self, entries: Iterable[ImportedEntry], name_prefix: str = "") -> ImportReport:
        """Übernimmt Zeilen einer bestehenden Crontab.

        Gibt es bereits einen Job mit gleichem Befehl und Schedule, wird
        dieser aktualisiert, sonst neu angelegt. Abgelehnte Zeilen landen
        mit Begründung im Report.
        """
        prefix = name_prefix or str(int(_utc_now().timestamp()))
        created: list[str] = []
        updated: list[str] = []
        rejected: list[str] = []
        for entry in entries:
            existing = next(
                (
                    j for j in await self.list_jobs()
                    if j.command == entry.command and j.schedule == entry.schedule
                ),
                None,
            )
            try:
                if existing is None:
                    draft = JobDraft(
                        name=f"{prefix}_{entry.line_no}",
                        command=entry.command,
                        schedule=entry.schedule,
                    )
                    created.append(await self.create(draft))
                else:
                    await self.update(existing.id, command=entry.command, schedule=entry.schedule)
                    updated.append(existing.id)
            except ValidationError as exc:
                rejected.append(f"line {entry.line_no}: {exc.reason}")
        log.info("crontab_imported", created=len(created), updated=len(updated), rejected=len(rejected))
        return ImportReport(created=created, updated=updated, rejected=rejected)

    # ── Environment ──────────────────────────────────────────────

    async def get_environment(self) -> str:
        return await self._call("get_environment", self.backend.get_environment())

    async def set_environment(self, text: str) -> None:
        """Speichert den Env-Block.

        Raises:
            ValidationError: Eine Zeile ist weder leer, Kommentar noch
                gültige Zuweisung.
        """
        result = validate_environment(text)
        if not result.ok:
            log.warning("environment_rejected", reason=result.reason)
            raise ValidationError(result.reason, field=result.field)
        async with timed_operation("store.set_environment"):
            await self._write("set_environment", self.backend.set_environment(text))
        await self._after_write("set_environment", {"environment": text})

    # ── Ausführungshistorie ──────────────────────────────────────

    async def append_log(self, job_id: str, kind: LogKind, message: str = "") -> None:
        entry = ExecutionLogEntry(job_id=job_id, kind=kind, message=message)
        await self._call("append_log", self.backend.append_log(entry))

    async def get_logs(self, job_id: str, limit: int = 100) -> list[ExecutionLogEntry]:
        return await self._call("fetch_logs", self.backend.fetch_logs(job_id, limit))

    # ── Backups ──────────────────────────────────────────────────

    async def add_backup(self, descriptor: BackupDescriptor) -> None:
        await self._call("insert_backup", self.backend.insert_backup(descriptor))

    async def list_backups(self) -> list[BackupDescriptor]:
        """Backup-Deskriptoren, neueste zuerst."""
        return await self._call("fetch_backups", self.backend.fetch_backups())

    async def remove_backup(self, filename: str) -> bool:
        return await self._call("delete_backup", self.backend.delete_backup(filename))
