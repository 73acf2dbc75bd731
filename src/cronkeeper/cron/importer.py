"""Import bestehender Crontab-Zeilen.

Zerlegt den Text von ``crontab -l`` (oder eine kompilierte Crontab) in
Schedule und Befehl. Kommentare, Leerzeilen, Env-Zuweisungen und Zeilen
mit ungültigem Schedule werden übersprungen.
"""

from __future__ import annotations

import asyncio
import re

from cronkeeper.errors import HostCommandError
from cronkeeper.models import ImportedEntry
from cronkeeper.security.validator import validate_schedule
from cronkeeper.utils.logging import get_logger

log = get_logger(__name__)

_LINE_RE = re.compile(r"^(?P<schedule>@[a-zA-Z]+|(?:\S+\s+){4}\S+)\s+(?P<command>.+)$")
_ENV_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*=")


def parse_crontab_lines(text: str) -> list[ImportedEntry]:
    """Liest alle Job-Zeilen aus einem Crontab-Text.

    Args:
        text: Inhalt einer Crontab.

    Returns:
        Einträge in Dateireihenfolge.
    """
    entries: list[ImportedEntry] = []
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.replace("\t", " ").strip()
        if not line or line.startswith("#") or _ENV_RE.match(line):
            continue
        match = _LINE_RE.match(line)
        if match is None:
            log.debug("crontab_line_ignored", line_no=line_no)
            continue
        schedule = " ".join(match.group("schedule").split())
        command = match.group("command").strip().replace("\\%", "%")
        if not validate_schedule(schedule).ok:
            log.info("crontab_line_invalid_schedule", line_no=line_no, schedule=schedule)
            continue
        entries.append(ImportedEntry(schedule=schedule, command=command, line_no=line_no))
    return entries


async def read_host_crontab(install_command: str = "crontab", timeout: float = 30.0) -> str:
    """Liest die aktive Crontab des Hosts (``crontab -l``).

    Ein Host ohne Crontab liefert einen leeren String.

    Raises:
        HostCommandError: Befehl nicht startbar oder Timeout.
    """
    details = {"command": install_command}
    try:
        proc = await asyncio.create_subprocess_exec(
            install_command,
            "-l",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise HostCommandError(
            f"cannot run {install_command}: {exc.strerror or exc}", details=details
        ) from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise HostCommandError(f"{install_command} -l timed out after {timeout}s", details=details) from exc
    if proc.returncode != 0:
        log.info("host_crontab_empty", returncode=proc.returncode, stderr=stderr.decode(errors="replace").strip())
        return ""
    return stdout.decode(errors="replace")
