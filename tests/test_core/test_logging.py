"""
Tests für cronkeeper.utils.logging und utils.telemetry.

Testet:
  - Setup mit verschiedenen Konfigurationen
  - JSON-Lines in der Log-Datei
  - Context-Binding
  - timed_operation: Dauer, Ergebnis, Weiterreichen von Fehlern
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest

from cronkeeper.utils.logging import (
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
)
from cronkeeper.utils.telemetry import timed_operation

if TYPE_CHECKING:
    from pathlib import Path


def _flush() -> None:
    for handler in logging.root.handlers:
        handler.flush()


class TestLoggingSetup:
    def test_default_setup(self) -> None:
        """Logging initialisiert ohne Fehler."""
        setup_logging(level="INFO", console=True)
        get_logger("test").info("test_event", key="value")

    def test_json_mode(self) -> None:
        setup_logging(level="INFO", json_logs=True, console=True)
        get_logger("test.json").info("json_test", number=42)

    def test_file_logging_writes_json_lines(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        setup_logging(level="DEBUG", log_dir=log_dir, console=False)
        get_logger("test.file").info("file_event", path="x")
        _flush()

        lines = (log_dir / "cronkeeper.jsonl").read_text().splitlines()
        records = [json.loads(line) for line in lines]
        assert any(r["event"] == "file_event" and r["path"] == "x" for r in records)


class TestContextBinding:
    def test_bound_context_in_records(self, tmp_path: Path) -> None:
        setup_logging(level="INFO", log_dir=tmp_path, console=False)
        bind_context(command="publish")
        try:
            get_logger("test.context").info("with_context")
        finally:
            clear_context()
        get_logger("test.context").info("without_context")
        _flush()

        records = [json.loads(line) for line in (tmp_path / "cronkeeper.jsonl").read_text().splitlines()]
        by_event = {r["event"]: r for r in records}
        assert by_event["with_context"]["command"] == "publish"
        assert "command" not in by_event["without_context"]


class TestTimedOperation:
    @pytest.mark.asyncio
    async def test_success_logged(self, tmp_path: Path) -> None:
        setup_logging(level="DEBUG", log_dir=tmp_path, console=False)
        async with timed_operation("store.get", job_id="abc") as span:
            span["cache_hit"] = True
        _flush()

        records = [json.loads(line) for line in (tmp_path / "cronkeeper.jsonl").read_text().splitlines()]
        [record] = [r for r in records if r.get("operation") == "store.get"]
        assert record["outcome"] == "ok"
        assert record["job_id"] == "abc"
        assert record["cache_hit"] is True
        assert record["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_error_reraised_and_logged(self, tmp_path: Path) -> None:
        setup_logging(level="DEBUG", log_dir=tmp_path, console=False)
        with pytest.raises(KeyError):
            async with timed_operation("store.update"):
                raise KeyError("x")
        _flush()

        records = [json.loads(line) for line in (tmp_path / "cronkeeper.jsonl").read_text().splitlines()]
        [record] = [r for r in records if r.get("operation") == "store.update"]
        assert record["outcome"] == "error"
        assert record["error"] == "KeyError"
