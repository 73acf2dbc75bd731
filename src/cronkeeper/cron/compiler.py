"""Compiler: Jobs → ausführbare Shell-Fragmente → Crontab-Text.

Reine String-Konstruktion. Jedes Fragment schreibt stdout und stderr
des Jobs zusätzlich in eigene Capture-Dateien, ohne die sichtbaren
Streams des äußeren Prozesses zu verändern. Dafür wird stdout per tee
dupliziert und anschließend stdout/stderr über fd 3 getauscht
(``3>&1 1>&2 2>&3``), damit der zweite tee stderr sieht.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from cronkeeper.models import CompiledSchedule, CompileSkip, ImportedEntry, Job
from cronkeeper.security.validator import validate_schedule
from cronkeeper.utils.logging import get_logger

log = get_logger(__name__)

_FD_SWAP = "3>&1 1>&2 2>&3"
_NEWLINES = re.compile(r"\s*\n\s*")


@dataclass(frozen=True)
class CapturePaths:
    """Dateien, die ein einzelner Job-Lauf beschreibt."""

    stdout: Path
    stderr: Path
    log_stderr: Path
    log_stdout: Path


@dataclass(frozen=True)
class CompilerSettings:
    """Pfade und externe Kommandos, die in die Fragmente eingesetzt werden."""

    cron_path: Path
    log_folder: Path
    mailer_command: str = "cronkeeper-mailer"

    def capture_paths(self, job_id: str) -> CapturePaths:
        return CapturePaths(
            stdout=self.cron_path / f"{job_id}.stdout",
            stderr=self.cron_path / f"{job_id}.stderr",
            log_stderr=self.log_folder / f"{job_id}.log",
            log_stdout=self.log_folder / f"{job_id}.stdout.log",
        )


def _q(path: Path) -> str:
    return shlex.quote(str(path))


def _terminate(command: str) -> str:
    """Hängt ein ``;`` an, außer der Befehl ist bereits abgeschlossen."""
    stripped = command.rstrip()
    if stripped.endswith(";"):
        return stripped
    if stripped.endswith("&") and not stripped.endswith("&&"):
        return stripped
    return stripped + ";"


def _append_to_log(capture: Path, log_file: Path) -> str:
    return (
        f"; if test -f {_q(capture)}"
        f"; then date >> {_q(log_file)}"
        f"; cat {_q(capture)} >> {_q(log_file)}"
        "; fi"
    )


def compile_job(job: Job, settings: CompilerSettings) -> str:
    """Erzeugt das Shell-Fragment für einen validierten Job.

    Args:
        job: Der Job, dessen Befehl bereits die Validierung passiert hat.
        settings: Pfade für Capture- und Log-Dateien.

    Returns:
        Das Fragment ohne Schedule-Präfix.
    """
    paths = settings.capture_paths(job.id)

    fragment = "{ " + _terminate(job.command) + " }"
    fragment = f"({fragment} | tee {_q(paths.stdout)})"
    fragment = f"( {fragment} {_FD_SWAP} | tee {_q(paths.stderr)}) {_FD_SWAP}"
    # Leerzeichen trennen die Klammern, "((" wäre in bash Arithmetik
    fragment = f"( {fragment} )"

    if job.logging:
        fragment += _append_to_log(paths.stderr, paths.log_stderr)
        fragment += _append_to_log(paths.stdout, paths.log_stdout)

    if job.hook:
        fragment += f"; if test -f {_q(paths.stdout)}; then {job.hook} < {_q(paths.stdout)}; fi"

    if job.wants_mail:
        fragment += (
            f"; {settings.mailer_command} {shlex.quote(job.id)}"
            f" {_q(paths.stdout)} {_q(paths.stderr)}"
        )

    return fragment


def normalize_environment(environment: str) -> str:
    """Env-Block auf eine logische Zeile bringen.

    Kommentar- und Leerzeilen fallen weg, da ein ``#`` mitten in der
    Zeile den Rest des Befehls auskommentieren würde.
    """
    lines = [
        line for line in environment.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
    return _NEWLINES.sub(" ", "\n".join(lines)).strip()


def wrap_environment(environment: str | None, command: str) -> str:
    """Setzt die Env-Zuweisungen als Präfix in dieselbe Subshell."""
    if not environment:
        return command
    assignments = normalize_environment(environment)
    if not assignments:
        return command
    return f"({assignments}; ({command}))"


def compile_command(job: Job, settings: CompilerSettings, environment: str | None = None) -> str:
    """Vollständiger, direkt ausführbarer Befehl eines Jobs inkl. Env-Präfix."""
    return wrap_environment(environment, compile_job(job, settings))


def escape_percent(fragment: str) -> str:
    """cron wandelt ein nacktes ``%`` in einen Zeilenumbruch um."""
    return re.sub(r"(?<!\\)%", r"\\%", fragment)


def compile_schedule(
    jobs: Iterable[Job],
    environment: str | None,
    settings: CompilerSettings,
) -> CompiledSchedule:
    """Baut den vollständigen Crontab-Text.

    Der Env-Block steht unverändert in der ersten Zeile, danach folgt
    pro nicht gestopptem Job eine Zeile ``<schedule> <fragment>`` in der
    Reihenfolge von ``jobs``. Jobs mit nicht mehr parsebarem Schedule
    werden übersprungen und gemeldet.
    """
    parts: list[str] = []
    included: list[str] = []
    skipped: list[CompileSkip] = []

    if environment:
        parts.append(environment if environment.endswith("\n") else environment + "\n")

    for job in jobs:
        if job.stopped:
            continue
        check = validate_schedule(job.schedule)
        if not check.ok:
            log.warning("compile_job_skipped", job_id=job.id, schedule=job.schedule, reason=check.reason)
            skipped.append(CompileSkip(job_id=job.id, schedule=job.schedule, reason=check.reason))
            continue
        parts.append(f"{job.schedule} {escape_percent(compile_job(job, settings))}\n")
        included.append(job.id)

    return CompiledSchedule(text="".join(parts), included=included, skipped=skipped)


_COMPILED_LINE_RE = re.compile(
    r"^(?P<schedule>@[a-zA-Z]+|(?:\S+\s+){4,5}?\S+)\s+(?P<fragment>\( \( \(\{ .*)$"
)


def parse_schedule_text(text: str) -> list[ImportedEntry]:
    """Liest die Job-Zeilen eines mit compile_schedule erzeugten Textes zurück.

    Erkennt Fragmente an ihrem festen Anfang, daher funktioniert das
    auch für 6-Feld-Schedules. Der Env-Block wird übersprungen.
    """
    entries: list[ImportedEntry] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        match = _COMPILED_LINE_RE.match(line)
        if match is None:
            continue
        entries.append(
            ImportedEntry(
                schedule=match.group("schedule"),
                command=match.group("fragment").replace("\\%", "%"),
                line_no=line_no,
            )
        )
    return entries
