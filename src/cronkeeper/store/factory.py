"""Store-Factory: wählt das Backend anhand der Konfiguration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cronkeeper.errors import ConfigError
from cronkeeper.store.cache import QueryCache
from cronkeeper.store.jobs import JobStore, SecondaryWrite
from cronkeeper.utils.logging import get_logger

if TYPE_CHECKING:
    from cronkeeper.config import CronkeeperConfig
    from cronkeeper.store.backend import JobBackend

log = get_logger(__name__)


def create_backend(config: CronkeeperConfig) -> JobBackend:
    """Erstellt das passende Backend.

    Args:
        config: Vollständige Konfiguration, geprüft wird config.database.backend.

    Returns:
        SQLiteJobBackend oder RedisJobBackend.

    Raises:
        ConfigError: Unbekannter Backend-Name.
    """
    db_config = config.database

    if db_config.backend == "sqlite":
        from cronkeeper.store.sqlite_backend import SQLiteJobBackend

        log.info("store_backend_selected", backend="sqlite", path=str(config.db_path))
        return SQLiteJobBackend(config.db_path)

    if db_config.backend == "redis":
        from cronkeeper.store.redis_backend import RedisJobBackend

        log.info(
            "store_backend_selected",
            backend="redis",
            host=db_config.redis_host,
            port=db_config.redis_port,
            db=db_config.redis_db,
        )
        return RedisJobBackend(
            host=db_config.redis_host,
            port=db_config.redis_port,
            db=db_config.redis_db,
            password=db_config.redis_password,
            namespace=db_config.namespace,
            socket_timeout=db_config.timeout_seconds,
        )

    raise ConfigError(
        f"Unknown store backend: {db_config.backend}",
        details={"backend": db_config.backend},
    )


def create_store(
    config: CronkeeperConfig,
    *,
    backend: JobBackend | None = None,
    secondary_write: SecondaryWrite | None = None,
) -> JobStore:
    """Baut einen JobStore mit Cache aus der Konfiguration.

    ``backend`` überschreibt die Auswahl (Tests, eingebettete Nutzung).
    """
    cache = QueryCache(
        ttl_seconds=config.cache.ttl_seconds,
        max_entries=config.cache.max_entries,
        enabled=config.cache.enabled,
    )
    return JobStore(
        backend if backend is not None else create_backend(config),
        cache=cache,
        timeout=config.database.timeout_seconds,
        secondary_write=secondary_write,
    )
