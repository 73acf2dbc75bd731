"""
Cronkeeper · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. ~/.cronkeeper/config.yaml (overrides defaults)
  3. Environment variables CRONKEEPER_* (overrides everything)

Automatically creates the storage directory structure on first start.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class DatabaseConfig(BaseModel):
    """Datenbank-Konfiguration."""

    backend: str = Field(default="sqlite", description="'sqlite' oder 'redis'")
    redis_host: str = "127.0.0.1"
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_password: str = ""
    namespace: str = "crontabs"
    # Obergrenze für jeden einzelnen Backend-Aufruf
    timeout_seconds: float = Field(default=5.0, gt=0, le=120)


class CacheConfig(BaseModel):
    """Read-Cache vor dem Store."""

    enabled: bool = True
    ttl_seconds: float = Field(default=300.0, gt=0)
    max_entries: int = Field(default=1000, ge=1)


class HostConfig(BaseModel):
    """Anbindung an den Cron-Daemon des Hosts."""

    # Verzeichnis für Capture-Dateien und die kompilierte Crontab
    cron_path: Path = Path("/tmp")
    # Im Container läuft alles als root, die Datei heißt dann "root"
    in_docker: bool = False
    install_command: str = "crontab"
    reload_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    mailer_command: str = "cronkeeper-mailer"
    # True: parallele Publishes warten, False: sofort ablehnen
    wait_for_publish: bool = True

    @property
    def schedule_filename(self) -> str:
        return "root" if self.in_docker else "crontab"

    @property
    def schedule_file(self) -> Path:
        return self.cron_path / self.schedule_filename


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class CronkeeperConfig(BaseModel):
    """Complete Cronkeeper configuration.

    Loaded once at startup and passed to the factory and installer.
    """

    version: str = "0.5.0"

    # Storage root, alles Persistente liegt darunter
    home: Path = Field(default_factory=lambda: Path.home() / ".cronkeeper")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_folder(self) -> Path:
        return self.home / "crontabs"

    @property
    def log_folder(self) -> Path:
        return self.db_folder / "logs"

    @property
    def env_file(self) -> Path:
        return self.db_folder / "env.db"

    @property
    def db_path(self) -> Path:
        return self.db_folder / "crontab.db"

    @property
    def publish_lock_file(self) -> Path:
        """Sperrdatei, die Publishes prozessübergreifend serialisiert."""
        return self.db_folder / "publish.lock"


# ============================================================================
# Config-Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_SECTIONS = ("database", "cache", "host", "logging")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Wendet CRONKEEPER_* Umgebungsvariablen an.

    Konvention: CRONKEEPER_SECTION_KEY → data["section"]["key"]
    Beispiel: CRONKEEPER_DATABASE_REDIS_HOST → data["database"]["redis_host"]
    Ohne bekannte Section landet der Rest als Top-Level-Key (CRONKEEPER_HOME).
    """
    prefix = "CRONKEEPER_"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        parts = key[len(prefix):].lower().split("_")
        if len(parts) >= 2 and parts[0] in _SECTIONS:
            section = data.setdefault(parts[0], {})
            if isinstance(section, dict):
                section["_".join(parts[1:])] = value
        else:
            data["_".join(parts)] = value
    return data


def load_config(config_path: Path | None = None) -> CronkeeperConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. CRONKEEPER_* Umgebungsvariablen

    Args:
        config_path: Expliziter Pfad zur config.yaml. Wenn None: <home>/config.yaml
                (CRONKEEPER_HOME oder ~/.cronkeeper)

    Returns:
        Vollständig validierte CronkeeperConfig.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        home = os.environ.get("CRONKEEPER_HOME") or Path.home() / ".cronkeeper"
        config_path = Path(home) / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = _deep_merge(data, file_data)
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)

    data = _apply_env_overrides(data)

    return CronkeeperConfig(**data)


def ensure_directory_structure(config: CronkeeperConfig) -> list[str]:
    """Legt Store- und Log-Verzeichnis an.

    Returns:
        Liste der neu erstellten Pfade.
    """
    created: list[str] = []
    for directory in (config.home, config.db_folder, config.log_folder):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            created.append(str(directory))
    return created
