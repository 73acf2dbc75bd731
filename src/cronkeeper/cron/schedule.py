"""Schedule-Ausdrücke: Makros, Feld-Grammatik, nächste Ausführung.

Ein Schedule ist entweder ein benanntes Makro (``@daily``) oder ein
Cron-Ausdruck mit 5 Feldern (Minute Stunde Tag Monat Wochentag) bzw.
6 Feldern mit Sekunden als letztem Feld. Die Auswertung der nächsten
Ausführung übernimmt croniter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime

from croniter import CroniterError, croniter

from cronkeeper.models import ScheduleInfo

# ============================================================================
# Makros
# ============================================================================

REBOOT = "@reboot"

# Makro → äquivalenter 5-Feld-Ausdruck (@reboot hat keinen)
MACROS: dict[str, str | None] = {
    REBOOT: None,
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MACRO_TEXT: dict[str, str] = {
    REBOOT: "At system startup",
    "@yearly": "Once a year (0 0 1 1 *)",
    "@annually": "Once a year (0 0 1 1 *)",
    "@monthly": "Once a month (0 0 1 * *)",
    "@weekly": "Once a week (0 0 * * 0)",
    "@daily": "Once a day (0 0 * * *)",
    "@midnight": "Once a day (0 0 * * *)",
    "@hourly": "Once an hour (0 * * * *)",
}


# ============================================================================
# Feld-Grammatik
# ============================================================================


@dataclass(frozen=True)
class FieldSpec:
    """Erlaubter Wertebereich eines Cron-Feldes."""

    name: str
    low: int
    high: int
    names: tuple[str, ...] = ()
    allow_question: bool = False

    def resolve(self, token: str) -> int | None:
        """Zahl oder Name (jan, mon) in einen Integer auflösen."""
        if token.isdigit():
            return int(token)
        lowered = token.lower()
        if lowered in self.names:
            return self.names.index(lowered) + self.low
        return None


_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("minute", 0, 59),
    FieldSpec("hour", 0, 23),
    FieldSpec("day-of-month", 1, 31, allow_question=True),
    FieldSpec("month", 1, 12, names=_MONTHS),
    FieldSpec("day-of-week", 0, 7, names=_WEEKDAYS, allow_question=True),
    FieldSpec("second", 0, 59),
)

_ITEM_RE = re.compile(
    r"^(?P<base>\*|\?|[A-Za-z0-9]+(?:-[A-Za-z0-9]+)?)(?:/(?P<step>[^/]*))?$"
)


def check_field(value: str, spec: FieldSpec) -> str | None:
    """Prüft ein einzelnes Feld gegen seine Grammatik.

    Returns:
        None wenn gültig, sonst eine Fehlerbeschreibung.
    """
    for item in value.split(","):
        match = _ITEM_RE.match(item)
        if match is None:
            return f"malformed {spec.name} value '{item}'"
        base, step = match.group("base"), match.group("step")
        if step is not None:
            if not step.isdigit():
                return f"malformed step in {spec.name} value '{item}'"
            if int(step) == 0:
                return f"step must be positive in {spec.name} value '{item}'"
        if base == "*":
            continue
        if base == "?":
            if not spec.allow_question:
                return f"'?' not allowed in {spec.name}"
            continue
        bounds = base.split("-")
        resolved = [spec.resolve(b) for b in bounds]
        for raw, number in zip(bounds, resolved):
            if number is None:
                return f"unknown {spec.name} value '{raw}'"
            if not spec.low <= number <= spec.high:
                return f"out of range: {raw} (allowed {spec.low}-{spec.high})"
        if len(resolved) == 2 and resolved[0] > resolved[1]:  # type: ignore[operator]
            return f"inverted range '{base}' in {spec.name}"
    return None


def split_fields(expression: str) -> list[str]:
    return expression.split()


def field_specs(count: int) -> tuple[FieldSpec, ...]:
    """5 Felder ohne, 6 Felder mit Sekunden am Ende."""
    return FIELDS[:count]


# ============================================================================
# Auswertung
# ============================================================================


def is_macro(schedule: str) -> bool:
    return schedule in MACROS


def next_run(schedule: str, now: datetime | None = None) -> datetime | None:
    """Nächste Ausführung nach ``now``.

    Returns:
        None für ``@reboot``.

    Raises:
        ValueError: Wenn der Ausdruck nicht auswertbar ist oder nie feuert.
    """
    if schedule == REBOOT:
        return None
    expression = MACROS.get(schedule) or schedule
    base = now or datetime.now(UTC)
    try:
        return croniter(expression, base).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as exc:
        msg = f"schedule does not parse: {exc}"
        raise ValueError(msg) from exc


def describe_schedule(schedule: str, now: datetime | None = None) -> ScheduleInfo:
    """Beschreibung und nächster Lauf eines gespeicherten Schedules.

    Wirft nie: kaputte Altdaten werden als "invalid" markiert.
    """
    human = _MACRO_TEXT.get(schedule, schedule)
    if schedule == REBOOT:
        return ScheduleInfo(human=human, next="Next Reboot")
    try:
        upcoming = next_run(schedule, now)
    except ValueError:
        return ScheduleInfo(human="Invalid schedule", next="invalid")
    return ScheduleInfo(human=human, next=upcoming.isoformat() if upcoming else "invalid")
