"""
Cronkeeper · Central data models.

All Pydantic models used across modules.

Design principles:
  - Immutable (frozen) for everything the store hands out, so cached
    copies can never be changed in place
  - JSON-serializable (for the key-value backend and for logging)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from cronkeeper.errors import PublishError

# ============================================================================
# Hilfsfunktionen
# ============================================================================


def _utc_now() -> datetime:
    """Aktuelle Zeit in UTC. Einheitlich im gesamten System."""
    return datetime.now(UTC)


def _new_id() -> str:
    """Neue UUID als String. Für alle Job-IDs im System."""
    return uuid.uuid4().hex


# ============================================================================
# Enums
# ============================================================================


class InstallStep(StrEnum):
    """Steps of the publish protocol, in execution order."""

    COLLECT = "collect"
    VALIDATE_SNAPSHOT = "validate_snapshot"
    COMPILE = "compile"
    WRITE_ENV_FILE = "write_env_file"
    WRITE_SCHEDULE_FILE = "write_schedule_file"
    RELOAD_HOST_SCHEDULER = "reload_host_scheduler"
    MARK_SAVED = "mark_saved"


LogKind = Literal["stdout", "stderr", "info", "error"]


# ============================================================================
# Jobs
# ============================================================================


class JobDraft(BaseModel, frozen=True):
    """User-supplied fields of a job before the store assigns identity."""

    name: str = ""
    command: str
    schedule: str
    stopped: bool = False
    logging: bool = False
    mailing: dict[str, Any] = Field(default_factory=dict)
    hook: str = ""


class Job(BaseModel, frozen=True):
    """A periodic task definition as persisted by the store.

    ``saved`` is only true while the stored state equals what the last
    successful publish installed on the host.
    """

    id: str = Field(default_factory=_new_id)
    name: str = ""
    command: str
    schedule: str
    stopped: bool = False
    logging: bool = False
    mailing: dict[str, Any] = Field(default_factory=dict)
    hook: str = ""
    created: datetime = Field(default_factory=_utc_now)
    last_modified: datetime = Field(default_factory=_utc_now)
    saved: bool = False

    @property
    def display_name(self) -> str:
        """Name für die Anzeige, fällt auf die ID zurück."""
        return self.name or self.id

    @property
    def wants_mail(self) -> bool:
        return bool(self.mailing)


# Felder, die über update() geändert werden dürfen
MUTABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "command", "schedule", "logging", "mailing", "hook"}
)


# ============================================================================
# Validierung & Kompilierung
# ============================================================================


class ValidationResult(BaseModel, frozen=True):
    """Outcome of a single Validator check."""

    ok: bool
    reason: str = ""
    field: str = ""

    @classmethod
    def accept(cls, field: str = "") -> ValidationResult:
        return cls(ok=True, field=field)

    @classmethod
    def reject(cls, reason: str, field: str = "") -> ValidationResult:
        return cls(ok=False, reason=reason, field=field)


class CompileSkip(BaseModel, frozen=True):
    """A job left out of a compile because its schedule no longer parses."""

    job_id: str
    schedule: str
    reason: str


class CompiledSchedule(BaseModel, frozen=True):
    """Full schedule text plus which jobs made it in."""

    text: str
    included: list[str] = Field(default_factory=list)
    skipped: list[CompileSkip] = Field(default_factory=list)


class ScheduleInfo(BaseModel, frozen=True):
    """Human-readable description and next occurrence of a schedule."""

    human: str
    next: str


class ImportedEntry(BaseModel, frozen=True):
    """One schedule line read back from an existing crontab."""

    schedule: str
    command: str
    line_no: int = 0


# ============================================================================
# Publish
# ============================================================================


class PublishResult(BaseModel, frozen=True):
    """Outcome of an Installer run.

    On failure ``step`` names the step that aborted the run.
    """

    success: bool
    step: InstallStep
    reason: str = ""
    included: list[str] = Field(default_factory=list)
    skipped: list[CompileSkip] = Field(default_factory=list)
    schedule_file: str = ""
    duration_ms: float = 0.0

    def raise_for_failure(self) -> PublishResult:
        """Wirft PublishError, wenn der Lauf abgebrochen wurde."""
        if not self.success:
            raise PublishError(self.reason, step=self.step, details={"skipped": len(self.skipped)})
        return self


# ============================================================================
# Store-Hilfsdaten
# ============================================================================


class BackupDescriptor(BaseModel, frozen=True):
    """Metadata about a copy of the durable store file."""

    filename: str
    size: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    description: str = ""


class ExecutionLogEntry(BaseModel, frozen=True):
    """One append-only execution history record."""

    job_id: str
    kind: LogKind
    message: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)


class StoreStats(BaseModel, frozen=True):
    """Zählerstände über alle Jobs."""

    total: int = 0
    active: int = 0
    inactive: int = 0
    saved: int = 0
    unsaved: int = 0


class ImportReport(BaseModel, frozen=True):
    """Ergebnis eines Crontab-Imports."""

    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)
