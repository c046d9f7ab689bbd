from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

_TIME_RANGE_RE = re.compile(r"(\d{1,2}:\d{2})\s*[-–]\s*(\d{1,2}:\d{2})")
_CLOCK_RE = re.compile(r"(\d{1,2}):(\d{2})")

DEFAULT_ACTIVITY = "Available"


@dataclass
class ScheduleEntry:
    time_range: str
    activity: str
    start_minutes: Optional[int] = None
    end_minutes: Optional[int] = None

    def covers(self, minute_of_day: int) -> bool:
        if self.start_minutes is None or self.end_minutes is None:
            return False
        return self.start_minutes <= minute_of_day <= self.end_minutes


def clock_to_minutes(value: str) -> int:
    m = _CLOCK_RE.search(value or "")
    if not m:
        return 0
    return int(m.group(1)) * 60 + int(m.group(2))


def parse_schedule(text: str) -> list[ScheduleEntry]:
    """
    Parse lines like "09:00-12:00: Coding" (24-hour clock).

    Clocks contain colons themselves, so the range is matched up front and the
    activity is whatever follows it. Lines without a recognizable range are
    kept for the context text but never match the current time.
    """
    entries: list[ScheduleEntry] = []
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line or ":" not in line:
            continue
        m = _TIME_RANGE_RE.match(line)
        if m:
            time_range = line[: m.end()].strip()
            activity = line[m.end() :].lstrip().lstrip(":").strip()
            entries.append(
                ScheduleEntry(
                    time_range=time_range,
                    activity=activity,
                    start_minutes=clock_to_minutes(m.group(1)),
                    end_minutes=clock_to_minutes(m.group(2)),
                )
            )
            continue
        head, _, tail = line.partition(":")
        entries.append(ScheduleEntry(time_range=head.strip(), activity=tail.strip()))
    return entries


def current_activity(entries: list[ScheduleEntry], minute_of_day: int) -> str:
    """Fold over every line; a later matching line overrides an earlier one."""
    activity = DEFAULT_ACTIVITY
    for entry in entries:
        if entry.covers(minute_of_day):
            activity = entry.activity
    return activity


def activity_hint(activity: str) -> str:
    if any(tok in activity for tok in ("Study", "Homework", "Programming", "Coding")):
        return "The user is busy. Tell when they will be free. Ask if urgent."
    if "School" in activity:
        return "The user is at school. Will reply later."
    if "Sleep" in activity:
        return "The user is sleeping. Will reply in the morning."
    return "The user is available."


def build_schedule_context(schedule_text: str, now: datetime) -> str:
    """Clause appended to the assistant instruction; empty when no schedule is set."""
    if not (schedule_text or "").strip():
        return ""

    entries = parse_schedule(schedule_text)
    minute_of_day = now.hour * 60 + now.minute

    context = f"\n\nCurrent Context: Today is {now.strftime('%A')}. Current time is {now.strftime('%H:%M')}."
    for entry in entries:
        context += f" {entry.time_range}: {entry.activity}. "

    activity = current_activity(entries, minute_of_day)
    context += f"\n\nCurrent Status: Currently {activity}."
    context += " " + activity_hint(activity)
    return context
