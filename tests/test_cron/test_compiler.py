"""Tests für cron/compiler.py – Shell-Fragmente und Crontab-Text.

Testet:
  - Aufbau des Fragments (Capture-Dateien, Logging, Hook, Mailer)
  - Env-Wrapping auf eine logische Zeile
  - Idempotenz und Reihenfolge von compile_schedule
  - Gestoppte und veraltete Jobs
  - Rücklesen per parse_schedule_text und tatsächliche Ausführung
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from cronkeeper.cron.compiler import (
    CompilerSettings,
    compile_command,
    compile_job,
    compile_schedule,
    escape_percent,
    normalize_environment,
    parse_schedule_text,
    wrap_environment,
)
from cronkeeper.models import Job

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> CompilerSettings:
    return CompilerSettings(
        cron_path=tmp_path / "cron",
        log_folder=tmp_path / "logs",
        mailer_command="cronkeeper-mailer",
    )


def _job(**kwargs: object) -> Job:
    defaults: dict[str, object] = {"command": 'echo "hi"', "schedule": "0 2 * * *"}
    defaults.update(kwargs)
    return Job(**defaults)


# ============================================================================
# compile_job
# ============================================================================


class TestCompileJob:
    def test_tees_both_streams(self, settings: CompilerSettings) -> None:
        job = _job(id="j1")
        fragment = compile_job(job, settings)
        assert fragment.startswith('( ( ({ echo "hi"; }')
        assert f"tee {settings.cron_path / 'j1.stdout'}" in fragment
        assert f"tee {settings.cron_path / 'j1.stderr'}" in fragment
        assert fragment.count("3>&1 1>&2 2>&3") == 2

    def test_no_double_semicolon(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(command='echo "hi";'), settings)
        assert '{ echo "hi"; }' in fragment
        assert ";;" not in fragment

    def test_background_command_kept(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(command="sleep 5 &"), settings)
        assert "{ sleep 5 & }" in fragment

    def test_plain_job_has_no_extras(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(), settings)
        assert "date >>" not in fragment
        assert "cronkeeper-mailer" not in fragment

    def test_logging_appends_to_log_files(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(id="j2", logging=True), settings)
        assert f"date >> {settings.log_folder / 'j2.log'}" in fragment
        assert f"cat {settings.cron_path / 'j2.stdout'} >> {settings.log_folder / 'j2.stdout.log'}" in fragment

    def test_hook_reads_stdout_capture(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(id="j3", hook="wc -l"), settings)
        assert f"then wc -l < {settings.cron_path / 'j3.stdout'}; fi" in fragment

    def test_mailer_invoked_with_paths(self, settings: CompilerSettings) -> None:
        fragment = compile_job(_job(id="j4", mailing={"to": "ops@example.com"}), settings)
        assert fragment.endswith(
            f"; cronkeeper-mailer j4 {settings.cron_path / 'j4.stdout'} {settings.cron_path / 'j4.stderr'}"
        )

    def test_no_mailer_without_recipients(self, settings: CompilerSettings) -> None:
        job = _job(id="j6")
        assert job.wants_mail is False
        assert "cronkeeper-mailer" not in compile_job(job, settings)

    def test_paths_with_spaces_are_quoted(self, tmp_path: Path) -> None:
        spaced = CompilerSettings(cron_path=tmp_path / "my cron", log_folder=tmp_path / "logs")
        fragment = compile_job(_job(id="j5"), spaced)
        assert f"'{tmp_path / 'my cron' / 'j5.stdout'}'" in fragment


# ============================================================================
# Environment
# ============================================================================


class TestEnvironment:
    def test_normalize_collapses_lines(self) -> None:
        assert normalize_environment("A=1\n  B=2\n\nC=3\n") == "A=1 B=2 C=3"

    def test_normalize_drops_comments(self) -> None:
        assert normalize_environment("# paths\nPATH=/usr/bin\n") == "PATH=/usr/bin"

    def test_wrap_prefix_same_subshell(self) -> None:
        assert wrap_environment("A=1\nB=2", "run") == "(A=1 B=2; (run))"

    def test_wrap_without_env(self) -> None:
        assert wrap_environment("", "run") == "run"
        assert wrap_environment(None, "run") == "run"
        assert wrap_environment("# only a comment", "run") == "run"

    def test_compile_command(self, settings: CompilerSettings) -> None:
        job = _job(id="j6")
        assert compile_command(job, settings, "A=1") == f"(A=1; ({compile_job(job, settings)}))"


# ============================================================================
# compile_schedule
# ============================================================================


class TestCompileSchedule:
    def test_env_first_then_one_line_per_job(self, settings: CompilerSettings) -> None:
        jobs = [_job(id="a", schedule="0 2 * * *"), _job(id="b", schedule="@daily")]
        compiled = compile_schedule(jobs, "MAILTO=\"\"", settings)
        lines = compiled.text.splitlines()
        assert lines[0] == 'MAILTO=""'
        assert lines[1].startswith("0 2 * * * ")
        assert lines[2].startswith("@daily ")
        assert compiled.text.endswith("\n")
        assert compiled.included == ["a", "b"]

    def test_stopped_jobs_have_no_line(self, settings: CompilerSettings) -> None:
        jobs = [_job(id="a"), _job(id="b", stopped=True)]
        compiled = compile_schedule(jobs, None, settings)
        assert compiled.included == ["a"]
        assert "b.stdout" not in compiled.text
        assert compiled.skipped == []

    def test_idempotent(self, settings: CompilerSettings) -> None:
        jobs = [_job(id=f"j{i}", schedule=f"{i} * * * *", logging=i % 2 == 0) for i in range(5)]
        first = compile_schedule(jobs, "A=1", settings)
        second = compile_schedule(jobs, "A=1", settings)
        assert first.text == second.text

    def test_stale_schedule_skipped_not_fatal(self, settings: CompilerSettings) -> None:
        jobs = [_job(id="good"), _job(id="stale", schedule="0 25 * * *")]
        compiled = compile_schedule(jobs, None, settings)
        assert compiled.included == ["good"]
        assert len(compiled.skipped) == 1
        assert compiled.skipped[0].job_id == "stale"
        assert "out of range" in compiled.skipped[0].reason

    def test_percent_escaped(self, settings: CompilerSettings) -> None:
        compiled = compile_schedule([_job(command="date +%F")], None, settings)
        assert "date +\\%F" in compiled.text

    def test_escape_percent_idempotent(self) -> None:
        assert escape_percent(escape_percent("a%b")) == "a\\%b"

    def test_empty(self, settings: CompilerSettings) -> None:
        compiled = compile_schedule([], None, settings)
        assert compiled.text == ""
        assert compiled.included == []


# ============================================================================
# Rücklesen & Ausführung
# ============================================================================


class TestRoundTrip:
    def test_parse_reproduces_schedules(self, settings: CompilerSettings) -> None:
        jobs = [
            _job(id="a", schedule="*/5 * * * *"),
            _job(id="b", schedule="@weekly", command="date +%s"),
            _job(id="c", schedule="0 12 * * * 30", logging=True),
        ]
        compiled = compile_schedule(jobs, "A=1\nB=2", settings)
        entries = parse_schedule_text(compiled.text)
        assert [e.schedule for e in entries] == ["*/5 * * * *", "@weekly", "0 12 * * * 30"]
        assert entries[1].command == compile_job(jobs[1], settings)
        assert entries[2].command == compile_job(jobs[2], settings)

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash nicht verfügbar")
    def test_fragment_writes_own_capture_files(self, settings: CompilerSettings) -> None:
        settings.cron_path.mkdir(parents=True)
        jobs = [
            _job(id="one", command="echo out-one; echo err-one >&2"),
            _job(id="two", command="echo out-two"),
        ]
        entries = parse_schedule_text(compile_schedule(jobs, None, settings).text)

        subprocess.run(["bash", "-c", entries[0].command], check=True, capture_output=True)

        assert (settings.cron_path / "one.stdout").read_text() == "out-one\n"
        assert (settings.cron_path / "one.stderr").read_text() == "err-one\n"
        assert not (settings.cron_path / "two.stdout").exists()

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash nicht verfügbar")
    def test_outer_streams_unchanged(self, settings: CompilerSettings) -> None:
        settings.cron_path.mkdir(parents=True)
        fragment = compile_job(_job(id="s", command="echo visible; echo problem >&2"), settings)
        proc = subprocess.run(["bash", "-c", fragment], capture_output=True, text=True, check=True)
        assert proc.stdout == "visible\n"
        assert proc.stderr == "problem\n"

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash nicht verfügbar")
    def test_env_assignments_visible_to_job(self, settings: CompilerSettings) -> None:
        settings.cron_path.mkdir(parents=True)
        command = compile_command(_job(id="e", command="echo $GREETING"), settings, "GREETING=hello")
        subprocess.run(["bash", "-c", command], check=True, capture_output=True)
        assert (settings.cron_path / "e.stdout").read_text() == "hello\n"
