"""Tests für cron/lock.py – prozessübergreifende Publish-Sperre."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from typing import TYPE_CHECKING

import pytest

from cronkeeper.cron.lock import PublishLock

if TYPE_CHECKING:
    from pathlib import Path


class TestPublishLock:
    @pytest.mark.asyncio
    async def test_second_holder_rejected_without_waiting(self, tmp_path: Path) -> None:
        path = tmp_path / "data" / "publish.lock"
        first, second = PublishLock(path), PublishLock(path)

        assert await first.acquire() is True
        assert path.exists()
        assert await second.acquire(blocking=False) is False
        assert second.held is False

        first.release()
        assert await second.acquire(blocking=False) is True
        second.release()

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self, tmp_path: Path) -> None:
        path = tmp_path / "publish.lock"
        first, second = PublishLock(path), PublishLock(path, poll_interval=0.01)
        await first.acquire()

        waiter = asyncio.create_task(second.acquire())
        await asyncio.sleep(0.05)
        assert not waiter.done()

        first.release()
        assert await asyncio.wait_for(waiter, timeout=2) is True
        second.release()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_lock_free(self, tmp_path: Path) -> None:
        path = tmp_path / "publish.lock"
        first, second = PublishLock(path), PublishLock(path, poll_interval=0.01)
        await first.acquire()

        waiter = asyncio.create_task(second.acquire())
        await asyncio.sleep(0.03)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        first.release()

        assert second.held is False
        third = PublishLock(path)
        assert await third.acquire(blocking=False) is True
        third.release()

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, tmp_path: Path) -> None:
        lock = PublishLock(tmp_path / "publish.lock")
        lock.release()
        await lock.acquire()
        lock.release()
        lock.release()
        assert lock.held is False

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which("flock") is None, reason="flock nicht verfügbar")
    async def test_lock_of_other_process_respected(self, tmp_path: Path) -> None:
        path = tmp_path / "publish.lock"
        path.touch()
        holder = subprocess.Popen(["flock", str(path), "sleep", "0.5"])
        try:
            await asyncio.sleep(0.2)
            assert await PublishLock(path).acquire(blocking=False) is False
        finally:
            holder.wait(timeout=5)
        lock = PublishLock(path)
        assert await lock.acquire(blocking=False) is True
        lock.release()
