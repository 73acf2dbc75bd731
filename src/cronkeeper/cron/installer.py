"""Installer: veröffentlicht den aktuellen Job-Bestand beim Cron-Daemon.

Ablauf eines Publish (linear, kein Rücksprung):

    COLLECT → VALIDATE_SNAPSHOT → COMPILE → WRITE_ENV_FILE
        → WRITE_SCHEDULE_FILE → RELOAD_HOST_SCHEDULER → MARK_SAVED

Ein Fehler in einem Schritt bricht den Lauf ab, spätere Schritte laufen
nicht. Die Schedule-Datei wird überschrieben, nie vorher geleert; ein
fehlgeschlagener Schreibvorgang hinterlässt also nie eine leere aktive
Crontab. Es gibt kein automatisches Rollback und keinen automatischen
Retry.

Publishes sind serialisiert, systemweit läuft höchstens einer: innerhalb
eines Prozesses über einen asyncio.Lock, prozessübergreifend über eine
``flock``-Sperre auf ``publish.lock`` im Datenverzeichnis. Beide werden
über den gesamten Lauf gehalten. Je nach ``HostConfig.wait_for_publish``
wartet ein zweiter Aufruf oder wird mit PublishInProgressError
abgewiesen.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from typing import TYPE_CHECKING

from cronkeeper.cron.compiler import CompilerSettings, compile_schedule
from cronkeeper.cron.lock import PublishLock
from cronkeeper.errors import CronkeeperError, PublishInProgressError
from cronkeeper.models import CompileSkip, InstallStep, Job, PublishResult
from cronkeeper.security.validator import validate_environment, validate_schedule
from cronkeeper.utils.logging import get_logger
from cronkeeper.utils.telemetry import timed_operation

if TYPE_CHECKING:
    from pathlib import Path

    from cronkeeper.config import CronkeeperConfig
    from cronkeeper.store.jobs import JobStore

log = get_logger(__name__)


class _StepFailed(Exception):
    """Interner Abbruch eines Schritts, wird zu einem PublishResult."""

    def __init__(self, step: InstallStep, reason: str) -> None:
        super().__init__(reason)
        self.step = step
        self.reason = reason


def _write_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class Installer:
    """Kompiliert, schreibt und aktiviert die Crontab.

    Attributes:
        store: Quelle der Jobs und des Env-Blocks.
        settings: Pfade für Capture- und Log-Dateien im Compiler.
    """

    def __init__(self, store: JobStore, config: CronkeeperConfig) -> None:
        self.store = store
        self._config = config
        self._host = config.host
        self.settings = CompilerSettings(
            cron_path=config.host.cron_path,
            log_folder=config.log_folder,
            mailer_command=config.host.mailer_command,
        )
        self._lock = asyncio.Lock()
        self._file_lock = PublishLock(config.publish_lock_file)

    @property
    def schedule_file(self) -> Path:
        return self._host.schedule_file

    @property
    def env_file(self) -> Path:
        return self._config.env_file

    @property
    def busy(self) -> bool:
        """True während ein Publish läuft."""
        return self._lock.locked()

    async def publish(self, environment: str | None = None) -> PublishResult:
        """Führt einen vollständigen Publish aus.

        Args:
            environment: Neuer Env-Block. Wird vor dem Kompilieren im
                Store gespeichert. None = gespeicherten Block verwenden.

        Returns:
            PublishResult; bei Misserfolg mit dem abbrechenden Schritt.

        Raises:
            PublishInProgressError: Nur wenn ``wait_for_publish`` aus ist
                und bereits ein Publish läuft, in diesem oder einem
                anderen Prozess.
        """
        blocking = self._host.wait_for_publish
        if not blocking and self._lock.locked():
            log.warning("publish_rejected_in_progress")
            raise PublishInProgressError(step=InstallStep.COLLECT)

        async with self._lock:
            start = time.perf_counter()
            async with timed_operation("installer.publish") as span:
                try:
                    acquired = await self._file_lock.acquire(blocking=blocking)
                except OSError as exc:
                    reason = f"cannot lock {self._file_lock.path}: {exc.strerror or exc}"
                    log.error("publish_failed", step=InstallStep.COLLECT.value, reason=reason)
                    result = PublishResult(success=False, step=InstallStep.COLLECT, reason=reason)
                else:
                    if not acquired:
                        log.warning("publish_rejected_in_progress", lock=str(self._file_lock.path))
                        raise PublishInProgressError(step=InstallStep.COLLECT)
                    try:
                        result = await self._run(environment)
                    except _StepFailed as exc:
                        log.error("publish_failed", step=exc.step.value, reason=exc.reason)
                        result = PublishResult(success=False, step=exc.step, reason=exc.reason)
                    finally:
                        self._file_lock.release()
                result = result.model_copy(
                    update={"duration_ms": round((time.perf_counter() - start) * 1000, 3)}
                )
                span["success"] = result.success
                span["step"] = result.step.value
            return result

    async def _run(self, environment: str | None) -> PublishResult:
        # COLLECT
        step = InstallStep.COLLECT
        try:
            if environment is not None:
                await self.store.set_environment(environment)
            else:
                environment = await self.store.get_environment()
            jobs = await self.store.list_jobs()
        except CronkeeperError as exc:
            raise _StepFailed(step, str(exc)) from exc
        # Auch ein am Store vorbei geschriebener Block erreicht nie die Crontab
        check = validate_environment(environment)
        if not check.ok:
            raise _StepFailed(step, check.reason)
        log.info("publish_collected", jobs=len(jobs))

        # VALIDATE_SNAPSHOT
        accepted, skipped = self._validate_snapshot(jobs)

        # COMPILE
        compiled = compile_schedule(accepted, environment, self.settings)
        skipped.extend(compiled.skipped)
        log.info("publish_compiled", included=len(compiled.included), skipped=len(skipped))

        # WRITE_ENV_FILE
        await self._write(InstallStep.WRITE_ENV_FILE, self.env_file, environment or "")

        # WRITE_SCHEDULE_FILE
        await self._write(InstallStep.WRITE_SCHEDULE_FILE, self.schedule_file, compiled.text)

        # RELOAD_HOST_SCHEDULER
        await self._reload()

        # MARK_SAVED
        step = InstallStep.MARK_SAVED
        included = set(compiled.included)
        snapshot = [(job.id, job.last_modified) for job in accepted if job.id in included]
        try:
            marked = await self.store.mark_saved(snapshot)
        except CronkeeperError as exc:
            raise _StepFailed(step, str(exc)) from exc
        if marked != len(snapshot):
            log.info("publish_jobs_changed_meanwhile", expected=len(snapshot), marked=marked)

        log.info("publish_succeeded", file=str(self.schedule_file), included=len(snapshot))
        return PublishResult(
            success=True,
            step=step,
            included=compiled.included,
            skipped=skipped,
            schedule_file=str(self.schedule_file),
        )

    @staticmethod
    def _validate_snapshot(jobs: list[Job]) -> tuple[list[Job], list[CompileSkip]]:
        """Schedules erneut prüfen; Fehlschläge werden ausgelassen, nicht fatal."""
        accepted: list[Job] = []
        skipped: list[CompileSkip] = []
        for job in jobs:
            if job.stopped:
                accepted.append(job)
                continue
            check = validate_schedule(job.schedule)
            if check.ok:
                accepted.append(job)
            else:
                log.warning("publish_job_excluded", job_id=job.id, reason=check.reason)
                skipped.append(CompileSkip(job_id=job.id, schedule=job.schedule, reason=check.reason))
        return accepted, skipped

    async def _write(self, step: InstallStep, path: Path, text: str) -> None:
        try:
            await asyncio.to_thread(_write_file, path, text)
        except OSError as exc:
            raise _StepFailed(step, f"cannot write {path}: {exc.strerror or exc}") from exc
        log.debug("publish_file_written", step=step.value, path=str(path), size=len(text))

    async def _reload(self) -> None:
        step = InstallStep.RELOAD_HOST_SCHEDULER
        argv = [*shlex.split(self._host.install_command), str(self.schedule_file)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise _StepFailed(step, f"cannot run {argv[0]}: {exc.strerror or exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._host.reload_timeout_seconds
            )
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise _StepFailed(
                step, f"{argv[0]} timed out after {self._host.reload_timeout_seconds}s"
            ) from exc

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            reason = f"{argv[0]} exited with status {proc.returncode}"
            raise _StepFailed(step, f"{reason}: {detail}" if detail else reason)
        log.info("host_scheduler_reloaded", command=argv[0], file=str(self.schedule_file))
