"""Validator: Prüfung von Name, Befehl und Schedule eines Jobs.

Reine Funktionen ohne I/O. Jede Prüfung liefert ein ValidationResult
mit Begründung, der Store verweigert bei Ablehnung das Speichern und
reicht die Begründung unverändert weiter.

Die Befehlsprüfung ist ein Deny-List-Scan und kein Shell-Parser: ein
einziges passendes Pattern irgendwo im String genügt zur Ablehnung,
unabhängig von Quoting oder Escaping. Lieber ein Fehlalarm zu viel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from cronkeeper.cron.schedule import check_field, field_specs, is_macro, next_run, split_fields
from cronkeeper.models import JobDraft, ValidationResult

MAX_COMMAND_LENGTH = 2000
MAX_NAME_LENGTH = 100

_NAME_RE = re.compile(r"^[A-Za-z0-9_\-\s.]+$")
_ENV_ASSIGNMENT_RE = re.compile(r"^(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")
# Ein Wort ohne Shell-Metazeichen oder ein vollständig gequoteter Wert
_ENV_VALUE_RE = re.compile(r"""^(?:[^\s'"`;|&<>$\\()]*|"[^"`$\\]*"|'[^']*')$""")


# ============================================================================
# Blockierte Befehls-Patterns
# ============================================================================


@dataclass(frozen=True)
class BlockedPattern:
    """Ein als gefährlich eingestuftes Befehls-Pattern."""

    name: str
    category: str
    pattern: re.Pattern[str]


_DESTRUCTIVE = r"(?:rm|mv|cp|chmod|chown|dd|mkfs|sudo|su)"

# Reihenfolge ist relevant: das erste Pattern bestimmt die Begründung
BLOCKED_PATTERNS: tuple[BlockedPattern, ...] = (
    # Markup, das in einer Weboberfläche ausgeführt würde
    BlockedPattern("script_tag", "script injection", re.compile(r"<\s*/?\s*script\b", re.IGNORECASE)),
    BlockedPattern("javascript_uri", "script injection", re.compile(r"javascript\s*:", re.IGNORECASE)),
    # Root-Pfade
    BlockedPattern("rm_root", "root path removal", re.compile(r"\brm\s+(?:-[a-zA-Z]+\s+)*/")),
    BlockedPattern("mv_root", "root path move", re.compile(r"\bmv\s+.*\s+/")),
    BlockedPattern("cp_root", "root path copy", re.compile(r"\bcp\s+.*\s+/")),
    # Rechte & Besitz
    BlockedPattern("chmod_open", "dangerous permissions", re.compile(r"\bchmod\s+(?:-[a-zA-Z]+\s+)*(?:777|666)")),
    BlockedPattern("chown_root", "dangerous ownership", re.compile(r"\bchown\s+(?:-[a-zA-Z]+\s+)*root")),
    # Rechteausweitung
    BlockedPattern("su", "privilege escalation", re.compile(r"\bsu(?:\s+|$)")),
    BlockedPattern("sudo", "privilege escalation", re.compile(r"\bsudo\s+")),
    BlockedPattern("doas", "privilege escalation", re.compile(r"\bdoas\s+")),
    # Download & Ausführen
    BlockedPattern(
        "download_exec",
        "download and execute",
        re.compile(r"\b(?:wget|curl)\b.*\|\s*(?:sh|bash|zsh|dash)\b"),
    ),
    # Reverse Shells
    BlockedPattern("netcat_exec", "reverse shell", re.compile(r"\b(?:nc|ncat|netcat)\b.*\s-[a-zA-Z]*e")),
    BlockedPattern("dev_tcp", "reverse shell", re.compile(r"/dev/(?:tcp|udp)/")),
    # Code-Auswertung
    BlockedPattern("eval_call", "code evaluation", re.compile(r"\beval\s*\(")),
    BlockedPattern("exec_call", "code evaluation", re.compile(r"\bexec\s*\(")),
    # Umleitung in Systemverzeichnisse
    BlockedPattern(
        "system_redirect",
        "redirection into system directory",
        re.compile(r">\s*.*/(?:etc|bin|sbin|usr/bin|usr/sbin|boot)\b"),
    ),
    # Verkettung in destruktive Befehle
    BlockedPattern("chain_semicolon", "chained destructive command", re.compile(rf";\s*{_DESTRUCTIVE}\s+")),
    BlockedPattern("chain_pipe", "chained destructive command", re.compile(rf"\|\s*{_DESTRUCTIVE}\s+")),
    BlockedPattern("chain_and", "chained destructive command", re.compile(rf"&&\s*{_DESTRUCTIVE}\s+")),
    # Destruktive Systemoperationen
    BlockedPattern(
        "destructive_system",
        "destructive system operation",
        re.compile(
            r"\b(?:format|mkfs(?:\.\w+)?|fdisk|parted|wipefs|halt|poweroff|reboot|shutdown|init\s+[06])\b",
            re.IGNORECASE,
        ),
    ),
    BlockedPattern("dd_device", "destructive system operation", re.compile(r"\bdd\b.*\bof=/dev/")),
    BlockedPattern("fork_bomb", "destructive system operation", re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
    # Dienste & Container
    BlockedPattern(
        "systemctl",
        "service lifecycle",
        re.compile(r"\bsystemctl\s+(?:-\S+\s+)*(?:stop|restart|disable|mask|kill|isolate)\b"),
    ),
    BlockedPattern("service", "service lifecycle", re.compile(r"\bservice\s+\S+\s+(?:stop|restart)\b")),
    BlockedPattern(
        "container",
        "container lifecycle",
        re.compile(r"\b(?:docker|podman)\s+(?:container\s+)?(?:rm|rmi|kill|stop|restart|system\s+prune)\b"),
    ),
    BlockedPattern("kubectl_delete", "container lifecycle", re.compile(r"\bkubectl\s+delete\b")),
)


# ============================================================================
# Prüfungen
# ============================================================================


def scan_command(command: str) -> list[BlockedPattern]:
    """Alle Patterns, die im Befehl vorkommen (ohne Abbruch beim ersten)."""
    return [bp for bp in BLOCKED_PATTERNS if bp.pattern.search(command)]


def validate_command(command: Any) -> ValidationResult:
    """Prüft einen Befehl auf Länge und gefährliche Patterns."""
    if not isinstance(command, str):
        return ValidationResult.reject("command must be a string", field="command")
    if not command.strip():
        return ValidationResult.reject("command must not be empty", field="command")
    if len(command) > MAX_COMMAND_LENGTH:
        return ValidationResult.reject(
            f"command exceeds {MAX_COMMAND_LENGTH} characters", field="command"
        )
    for bp in BLOCKED_PATTERNS:
        if bp.pattern.search(command):
            return ValidationResult.reject(
                f"command matches blocked pattern: {bp.category}", field="command"
            )
    return ValidationResult.accept(field="command")


def validate_schedule(schedule: Any) -> ValidationResult:
    """Prüft ein Makro oder einen 5/6-Feld-Ausdruck.

    Nach der Grammatikprüfung entscheidet die tatsächliche Auswertung:
    der Ausdruck muss mindestens eine zukünftige Ausführung haben.
    """
    if not isinstance(schedule, str) or not schedule.strip():
        return ValidationResult.reject("schedule must be a non-empty string", field="schedule")
    if schedule.startswith("@"):
        if is_macro(schedule):
            return ValidationResult.accept(field="schedule")
        return ValidationResult.reject(f"unknown schedule macro '{schedule}'", field="schedule")

    parts = split_fields(schedule)
    if len(parts) not in (5, 6):
        return ValidationResult.reject(
            f"schedule must have 5 or 6 fields, got {len(parts)}", field="schedule"
        )
    for position, (value, spec) in enumerate(zip(parts, field_specs(len(parts))), start=1):
        problem = check_field(value, spec)
        if problem is not None:
            return ValidationResult.reject(
                f"schedule field {position} ({spec.name}) {problem}", field="schedule"
            )

    try:
        upcoming = next_run(schedule)
    except ValueError as exc:
        return ValidationResult.reject(str(exc), field="schedule")
    if upcoming is None:
        return ValidationResult.reject("schedule has no future occurrence", field="schedule")
    return ValidationResult.accept(field="schedule")


def validate_name(name: Any) -> ValidationResult:
    """Leer ist erlaubt, sonst 1-100 Zeichen aus [A-Za-z0-9_- .]."""
    if name is None or name == "":
        return ValidationResult.accept(field="name")
    if not isinstance(name, str):
        return ValidationResult.reject("name must be a string", field="name")
    if len(name) > MAX_NAME_LENGTH:
        return ValidationResult.reject(f"name exceeds {MAX_NAME_LENGTH} characters", field="name")
    if not _NAME_RE.match(name):
        return ValidationResult.reject(
            "name may only contain letters, digits, spaces and - _ .", field="name"
        )
    return ValidationResult.accept(field="name")


def validate_hook(hook: Any) -> ValidationResult:
    """Der Hook läuft in derselben Shell wie der Job und unterliegt denselben Regeln."""
    if hook is None or hook == "":
        return ValidationResult.accept(field="hook")
    result = validate_command(hook)
    if not result.ok:
        return ValidationResult.reject(result.reason.replace("command", "hook", 1), field="hook")
    return ValidationResult.accept(field="hook")


def validate_environment(text: Any) -> ValidationResult:
    """Prüft den Env-Block zeilenweise.

    Erlaubt sind nur Leerzeilen, Kommentare (``#``) und Zuweisungen
    ``KEY=value``. Der Block landet sowohl in der Crontab als auch als
    Präfix vor dem Job-Befehl, eine Job-Zeile oder ein Shell-Befehl darf
    sich darin also nicht verstecken. Werte sind ein einzelnes Wort ohne
    Shell-Metazeichen oder vollständig gequotet und durchlaufen zusätzlich
    die Deny-List.
    """
    if not isinstance(text, str):
        return ValidationResult.reject("environment must be a string", field="environment")
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _ENV_ASSIGNMENT_RE.match(line)
        if match is None:
            return ValidationResult.reject(
                f"environment line {line_no} is not a KEY=value assignment", field="environment"
            )
        key, value = match.group("key"), match.group("value")
        if not _ENV_VALUE_RE.match(value):
            return ValidationResult.reject(
                f"environment line {line_no}: value of {key} must be a single word or quoted",
                field="environment",
            )
        for bp in BLOCKED_PATTERNS:
            if bp.pattern.search(value):
                return ValidationResult.reject(
                    f"environment line {line_no}: value of {key} matches blocked pattern: {bp.category}",
                    field="environment",
                )
    return ValidationResult.accept(field="environment")


def validate_job(draft: JobDraft) -> ValidationResult:
    """Name, Befehl, Schedule und Hook in dieser Reihenfolge; erste Ablehnung gewinnt."""
    for result in (
        validate_name(draft.name),
        validate_command(draft.command),
        validate_schedule(draft.schedule),
        validate_hook(draft.hook),
    ):
        if not result.ok:
            return result
    return ValidationResult.accept()
