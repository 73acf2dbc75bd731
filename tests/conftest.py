"""
Cronkeeper · Shared Test-Fixtures.

Alle Tests nutzen ein temporäres Verzeichnis statt ~/.cronkeeper/.
So sind Tests isoliert und reproduzierbar.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cronkeeper.config import CronkeeperConfig, HostConfig, ensure_directory_structure
from cronkeeper.store.cache import QueryCache
from cronkeeper.store.jobs import JobStore
from cronkeeper.store.sqlite_backend import SQLiteJobBackend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture
def tmp_cronkeeper_home(tmp_path: Path) -> Path:
    """Temporäres Cronkeeper-Home-Verzeichnis."""
    return tmp_path / ".cronkeeper"


@pytest.fixture
def config(tmp_cronkeeper_home: Path, tmp_path: Path) -> CronkeeperConfig:
    """Config mit temporärem Home und Cron-Verzeichnis, Reload per ``true``."""
    return CronkeeperConfig(
        home=tmp_cronkeeper_home,
        host=HostConfig(cron_path=tmp_path / "cron", install_command="true"),
    )


@pytest.fixture
def initialized_config(config: CronkeeperConfig) -> CronkeeperConfig:
    """Config mit erstellter Verzeichnisstruktur."""
    ensure_directory_structure(config)
    return config


@pytest.fixture
async def store(initialized_config: CronkeeperConfig) -> AsyncIterator[JobStore]:
    """Initialisierter JobStore auf SQLite im temporären Home."""
    job_store = JobStore(SQLiteJobBackend(initialized_config.db_path), cache=QueryCache())
    await job_store.initialize()
    yield job_store
    await job_store.close()
