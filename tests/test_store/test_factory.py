"""Tests für store/factory.py – Backend-Auswahl per Konfiguration."""

from __future__ import annotations

import pytest

from cronkeeper.config import CronkeeperConfig, DatabaseConfig
from cronkeeper.errors import ConfigError
from cronkeeper.store.factory import create_backend, create_store
from cronkeeper.store.redis_backend import RedisJobBackend
from cronkeeper.store.sqlite_backend import SQLiteJobBackend


class TestCreateBackend:
    def test_sqlite_default(self, config: CronkeeperConfig) -> None:
        backend = create_backend(config)
        assert isinstance(backend, SQLiteJobBackend)
        assert backend.location == str(config.db_path)

    def test_redis(self, config: CronkeeperConfig) -> None:
        config = config.model_copy(
            update={"database": DatabaseConfig(backend="redis", redis_host="kv", redis_db=3, namespace="jobs")}
        )
        backend = create_backend(config)
        assert isinstance(backend, RedisJobBackend)
        assert backend.location == "redis://kv:6379/3#jobs"

    def test_unknown_backend(self, config: CronkeeperConfig) -> None:
        config = config.model_copy(update={"database": DatabaseConfig(backend="mongodb")})
        with pytest.raises(ConfigError, match="mongodb") as exc_info:
            create_backend(config)
        assert exc_info.value.error_code == "CONFIG_ERROR"


class TestCreateStore:
    def test_cache_settings_applied(self, config: CronkeeperConfig) -> None:
        config = config.model_copy(update={"cache": config.cache.model_copy(update={"enabled": False})})
        store = create_store(config)
        assert store.cache.enabled is False
        assert store.backend_type == "sqlite"
