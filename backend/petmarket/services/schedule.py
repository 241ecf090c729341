"""Backward-compatibility folding of deprecated listing time fields.

Older clients send ``start_time`` / ``end_time`` (or a top-level
``scheduled_date``) on listings. Those columns no longer exist; the date now
lives in ``availability_schedule.scheduled_date`` with a readable copy in the
schedule notes. Remove this module once no client sends the old fields.
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

DEPRECATED_SCHEDULE_FIELDS = ("start_time", "end_time", "scheduled_date")

SCHEDULE_NOTE_PREFIX = "Scheduled for "


def _parse_iso(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def render_schedule_date(value: str, end_value: Optional[str] = None) -> str:
    parsed = _parse_iso(value)
    if parsed is None:
        line = f"{SCHEDULE_NOTE_PREFIX}{value.strip()}"
    else:
        line = f"{SCHEDULE_NOTE_PREFIX}{parsed:%A, %B %d, %Y at %H:%M}"
        if parsed.tzname():
            line += f" {parsed.tzname()}"
    if end_value:
        parsed_end = _parse_iso(end_value)
        line += f" until {parsed_end:%H:%M}" if parsed_end else f" until {end_value.strip()}"
    return line


def _merge_notes(notes: str, schedule_line: str) -> str:
    kept = [line for line in notes.splitlines() if not line.startswith(SCHEDULE_NOTE_PREFIX)]
    while kept and not kept[-1].strip():
        kept.pop()
    kept.append(schedule_line)
    return "\n".join(kept)


def normalize_schedule_fields(
    data: Mapping[str, Any],
    existing: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Return a copy of ``data`` with deprecated time fields folded away.

    ``existing`` is the stored ``availability_schedule`` for updates, so that
    folding a date into a partial patch keeps the stored days and hours.
    The returned dict never contains any of ``DEPRECATED_SCHEDULE_FIELDS`` at
    the top level.
    """
    normalized = {key: value for key, value in data.items() if key not in DEPRECATED_SCHEDULE_FIELDS}

    start_value = data.get("start_time") or data.get("scheduled_date")
    end_value = data.get("end_time")
    incoming_schedule = data.get("availability_schedule")
    if hasattr(incoming_schedule, "model_dump"):
        incoming_schedule = incoming_schedule.model_dump()

    if not start_value and incoming_schedule is None:
        return normalized

    schedule: Dict[str, Any] = dict(existing or {})
    explicit_date = None
    if isinstance(incoming_schedule, Mapping):
        schedule.update(incoming_schedule)
        explicit_date = incoming_schedule.get("scheduled_date")

    # An explicit schedule date wins over the deprecated top-level fields.
    scheduled_date = explicit_date or start_value or schedule.get("scheduled_date")
    if scheduled_date:
        scheduled_date = str(scheduled_date)
        schedule["scheduled_date"] = scheduled_date
        schedule["notes"] = _merge_notes(
            str(schedule.get("notes") or ""),
            render_schedule_date(scheduled_date, str(end_value) if end_value else None),
        )

    normalized["availability_schedule"] = schedule
    return normalized
