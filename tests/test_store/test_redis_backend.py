"""Tests für den RedisJobBackend.

Läuft gegen einen In-Memory-Client mit der Teilmenge der redis.asyncio-API,
die das Backend nutzt. Ein echter Redis-Server wird nicht benötigt.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from cronkeeper.errors import StoreError
from cronkeeper.models import BackupDescriptor, ExecutionLogEntry, Job
from cronkeeper.store.backend import JobBackend
from cronkeeper.store.redis_backend import RedisJobBackend

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)


class FakeRedis:
    """Minimaler asynchroner Redis-Ersatz (Hashes und Listen)."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        # Schreibzähler pro Key, Grundlage für WATCH
        self.versions: dict[str, int] = {}
        self.closed = False
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _touch(self, name: str) -> None:
        self.versions[name] = self.versions.get(name, 0) + 1

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def hset(self, name: str, key: str | None = None, value: str | None = None,
                   mapping: dict[str, str] | None = None) -> int:
        self._check()
        bucket = self.hashes.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = sum(1 for k in items if k not in bucket)
        bucket.update(items)
        self._touch(name)
        return added

    async def hget(self, name: str, key: str) -> str | None:
        self._check()
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(name, {}))

    async def hdel(self, name: str, *keys: str) -> int:
        self._check()
        bucket = self.hashes.get(name, {})
        removed = sum(1 for k in keys if bucket.pop(k, None) is not None)
        if removed:
            self._touch(name)
        return removed

    async def rpush(self, name: str, *values: str) -> int:
        self._check()
        items = self.lists.setdefault(name, [])
        items.extend(values)
        return len(items)

    async def lrange(self, name: str, start: int, end: int) -> list[str]:
        self._check()
        items = self.lists.get(name, [])
        start = max(len(items) + start, 0) if start < 0 else start
        end = len(items) + end if end < 0 else end
        return items[start:end + 1]

    async def aclose(self) -> None:
        self.closed = True


class FakePipeline:
    """WATCH/MULTI/EXEC über FakeRedis: EXEC scheitert, wenn sich ein
    beobachteter Key seit WATCH geändert hat."""

    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._watched: dict[str, int] = {}
        self._queued: list[tuple[str, str, str]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.reset()

    def reset(self) -> None:
        self._watched.clear()
        self._queued.clear()

    async def watch(self, *names: str) -> None:
        self._client._check()
        for name in names:
            self._watched[name] = self._client.versions.get(name, 0)

    async def hget(self, name: str, key: str) -> str | None:
        return await self._client.hget(name, key)

    def multi(self) -> None:
        return None

    def hset(self, name: str, key: str, value: str) -> FakePipeline:
        self._queued.append((name, key, value))
        return self

    async def execute(self) -> list[int]:
        self._client._check()
        changed = any(self._client.versions.get(n, 0) != v for n, v in self._watched.items())
        queued = list(self._queued)
        self.reset()
        if changed:
            raise WatchError("Watched variable changed.")
        return [await self._client.hset(name, key, value) for name, key, value in queued]


class InterferingRedis(FakeRedis):
    """Führt beim nächsten HGET einen fremden Schreibvorgang aus, nachdem
    der alte Wert bereits gelesen wurde."""

    def __init__(self) -> None:
        super().__init__()
        self.interfere: Callable[[], Awaitable[Any]] | None = None

    async def hget(self, name: str, key: str) -> str | None:
        raw = await super().hget(name, key)
        if self.interfere is not None:
            action, self.interfere = self.interfere, None
            await action()
        return raw


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def backend(client: FakeRedis) -> RedisJobBackend:
    db = RedisJobBackend(host="redis.local", port=6380, db=2, namespace="ck", client=client)
    await db.initialize()
    return db


def _job(job_id: str, minutes: int = 0, **kwargs: Any) -> Job:
    stamp = T0 + timedelta(minutes=minutes)
    return Job(id=job_id, command="echo hi", schedule="@daily", created=stamp, last_modified=stamp, **kwargs)


# ============================================================================
# Tests
# ============================================================================


class TestRedisProperties:
    def test_satisfies_protocol(self, client: FakeRedis) -> None:
        assert isinstance(RedisJobBackend(client=client), JobBackend)

    def test_location(self, client: FakeRedis) -> None:
        db = RedisJobBackend(host="redis.local", port=6380, db=2, namespace="ck", client=client)
        assert db.location == "redis://redis.local:6380/2#ck"
        assert db.backend_type == "redis"

    @pytest.mark.asyncio
    async def test_close_closes_client(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        await backend.close()
        assert client.closed is True


class TestRedisJobs:
    @pytest.mark.asyncio
    async def test_one_encoded_value_per_job(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        job = _job("a", name="backup", mailing={"to": "ops@example.com"})
        await backend.insert_job(job)
        assert set(client.hashes["ck"]) == {"a"}
        assert await backend.fetch_job("a") == job

    @pytest.mark.asyncio
    async def test_newest_first(self, backend: RedisJobBackend) -> None:
        await backend.insert_job(_job("old", minutes=0))
        await backend.insert_job(_job("new", minutes=5))
        await backend.insert_job(_job("mid", minutes=2))
        assert [j.id for j in await backend.fetch_jobs()] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_replace_missing(self, backend: RedisJobBackend) -> None:
        assert await backend.replace_job(_job("ghost")) is False

    @pytest.mark.asyncio
    async def test_delete(self, backend: RedisJobBackend) -> None:
        await backend.insert_job(_job("a"))
        assert await backend.delete_job("a") is True
        assert await backend.delete_job("a") is False

    @pytest.mark.asyncio
    async def test_mark_saved_respects_snapshot(self, backend: RedisJobBackend) -> None:
        a, b = _job("a"), _job("b")
        await backend.insert_job(a)
        await backend.insert_job(b)
        await backend.replace_job(b.model_copy(update={"last_modified": T0 + timedelta(hours=1)}))
        marked = await backend.mark_saved([(a.id, a.last_modified), (b.id, b.last_modified)])
        assert marked == 1
        assert (await backend.fetch_job("a")).saved is True
        assert (await backend.fetch_job("b")).saved is False

    @pytest.mark.asyncio
    async def test_mark_saved_never_overwrites_concurrent_update(self) -> None:
        client = InterferingRedis()
        backend = RedisJobBackend(namespace="ck", client=client)
        job = _job("a").model_copy(update={"command": "echo old"})
        await backend.insert_job(job)
        changed = job.model_copy(update={"command": "echo new", "last_modified": T0 + timedelta(hours=1)})
        client.interfere = lambda: backend.replace_job(changed)

        marked = await backend.mark_saved([(job.id, job.last_modified)])

        assert marked == 0
        stored = await backend.fetch_job("a")
        assert stored.command == "echo new"
        assert stored.saved is False

    @pytest.mark.asyncio
    async def test_replace_never_resurrects_deleted_job(self) -> None:
        client = InterferingRedis()
        backend = RedisJobBackend(namespace="ck", client=client)
        job = _job("a")
        await backend.insert_job(job)
        client.interfere = lambda: backend.delete_job("a")

        assert await backend.replace_job(job.model_copy(update={"name": "renamed"})) is False
        assert await backend.fetch_job("a") is None

    @pytest.mark.asyncio
    async def test_mark_saved_connection_error_wrapped(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        await backend.insert_job(_job("a"))
        client.fail = True
        with pytest.raises(StoreError) as exc_info:
            await backend.mark_saved([("a", T0)])
        assert exc_info.value.details == {"operation": "mark_saved", "backend": "redis"}

    @pytest.mark.asyncio
    async def test_corrupt_record_is_store_error(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        client.hashes["ck"]["bad"] = "{not json"
        with pytest.raises(StoreError):
            await backend.fetch_job("bad")

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        client.fail = True
        with pytest.raises(StoreError) as exc_info:
            await backend.fetch_jobs()
        assert exc_info.value.details == {"operation": "fetch_jobs", "backend": "redis"}


class TestRedisAuxiliary:
    @pytest.mark.asyncio
    async def test_environment(self, backend: RedisJobBackend, client: FakeRedis) -> None:
        assert await backend.get_environment() == ""
        await backend.set_environment("A=1")
        assert await backend.get_environment() == "A=1"
        assert "updated_at" in client.hashes["ck:environment"]

    @pytest.mark.asyncio
    async def test_logs(self, backend: RedisJobBackend) -> None:
        for i in range(4):
            await backend.append_log(ExecutionLogEntry(job_id="a", kind="info", message=f"run {i}"))
        logs = await backend.fetch_logs("a", limit=3)
        assert [entry.message for entry in logs] == ["run 3", "run 2", "run 1"]

    @pytest.mark.asyncio
    async def test_backups(self, backend: RedisJobBackend) -> None:
        await backend.insert_backup(BackupDescriptor(filename="old.db", created_at=T0))
        await backend.insert_backup(BackupDescriptor(filename="new.db", created_at=T0 + timedelta(days=1)))
        assert [b.filename for b in await backend.fetch_backups()] == ["new.db", "old.db"]
        assert await backend.delete_backup("old.db") is True
