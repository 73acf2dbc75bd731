"""Persistence protocol shared by all job backends."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from cronkeeper.models import BackupDescriptor, ExecutionLogEntry, Job


@runtime_checkable
class JobBackend(Protocol):
    """Abstraktes Interface für Job-Backends.

    Backends speichern nur, sie validieren nicht und cachen nicht. Fehler
    der darunterliegenden Technik werden als StoreError gemeldet.
    """

    async def initialize(self) -> None:
        """Legt Tabellen bzw. Namespaces an."""
        ...

    async def insert_job(self, job: Job) -> None:
        ...

    async def fetch_job(self, job_id: str) -> Job | None:
        ...

    async def fetch_jobs(self) -> list[Job]:
        """Alle Jobs, neueste zuerst (created absteigend, dann id)."""
        ...

    async def replace_job(self, job: Job) -> bool:
        """Überschreibt einen vorhandenen Job. False wenn unbekannt."""
        ...

    async def delete_job(self, job_id: str) -> bool:
        ...

    async def mark_saved(self, snapshot: Sequence[tuple[str, datetime]]) -> int:
        """Setzt saved für (id, last_modified)-Paare, deren Stand unverändert ist.

        Returns:
            Anzahl tatsächlich markierter Jobs.
        """
        ...

    async def get_environment(self) -> str:
        ...

    async def set_environment(self, text: str) -> None:
        ...

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        ...

    async def fetch_logs(self, job_id: str, limit: int = 100) -> list[ExecutionLogEntry]:
        """Neueste Einträge zuerst."""
        ...

    async def insert_backup(self, descriptor: BackupDescriptor) -> None:
        ...

    async def fetch_backups(self) -> list[BackupDescriptor]:
        """Neueste zuerst."""
        ...

    async def delete_backup(self, filename: str) -> bool:
        ...

    async def close(self) -> None:
        ...

    @property
    def backend_type(self) -> str:
        """Name des Backends: 'sqlite' oder 'redis'."""
        ...

    @property
    def location(self) -> str:
        """Dauerhafter Speicherort (Dateipfad bzw. Redis-URL)."""
        ...
