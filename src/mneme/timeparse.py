"""Relative date phrases: event timestamps and query time windows."""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from mneme.types import TimeRange
from mneme.utils import ensure_utc, utcnow

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

_WEEKDAY_ALT = "|".join(WEEKDAYS)
_MONTH_ALT = "|".join(MONTHS)

_DAY_WORD_RE = re.compile(r"\b(yesterday|today|tonight|tomorrow)\b", re.IGNORECASE)
_LAST_WEEK_RE = re.compile(r"\blast\s+week\b", re.IGNORECASE)
_REL_WEEKDAY_RE = re.compile(rf"\b(last|next|this)\s+({_WEEKDAY_ALT})\b", re.IGNORECASE)
_MONTH_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\s+(\d{{1,2}})(?:st|nd|rd|th)?\b", re.IGNORECASE)

_WINDOW_PHRASES = [
    "last week", "last month", "last year",
    "this week", "this month", "this year",
    "yesterday", "today", "tomorrow",
    "recently", "lately",
]
_WINDOW_RE = re.compile(
    r"\b(" + "|".join(p.replace(" ", r"\s+") for p in _WINDOW_PHRASES) + r")\b",
    re.IGNORECASE,
)

# recall(time_range=...) shorthands
RANGE_ALIASES = {
    "today": "today",
    "yesterday": "yesterday",
    "week": "last week",
    "month": "last month",
    "year": "last year",
}


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def resolve_date_phrase(text: str, now: datetime | None = None) -> tuple[datetime | None, str]:
    """Find the earliest date phrase in ``text`` and resolve it against ``now``.

    Returns ``(timestamp, matched_text)``; ``(None, "")`` when nothing matches.
    """
    now = ensure_utc(now or utcnow())
    today = start_of_day(now)
    candidates: list[tuple[int, datetime, str]] = []

    for m in _DAY_WORD_RE.finditer(text):
        word = m.group(1).lower()
        offset = {"yesterday": -1, "today": 0, "tonight": 0, "tomorrow": 1}[word]
        candidates.append((m.start(), today + timedelta(days=offset), m.group(0)))

    for m in _LAST_WEEK_RE.finditer(text):
        candidates.append((m.start(), today - timedelta(days=7), m.group(0)))

    for m in _REL_WEEKDAY_RE.finditer(text):
        which = m.group(1).lower()
        wd = WEEKDAYS.index(m.group(2).lower())
        if which == "last":
            delta = -((now.weekday() - wd) % 7 or 7)
        elif which == "next":
            delta = (wd - now.weekday()) % 7 or 7
        else:
            delta = (wd - now.weekday()) % 7
        candidates.append((m.start(), today + timedelta(days=delta), m.group(0)))

    for m in _MONTH_DAY_RE.finditer(text):
        month = MONTHS.index(m.group(1).lower()) + 1
        try:
            ts = today.replace(month=month, day=int(m.group(2)))
        except ValueError:
            continue
        candidates.append((m.start(), ts, m.group(0)))

    if not candidates:
        return None, ""
    _, ts, matched = min(candidates, key=lambda c: c[0])
    return ts, matched


def find_time_reference(text: str) -> str | None:
    """Return the first window phrase in ``text``, normalised to single spaces."""
    m = _WINDOW_RE.search(text or "")
    if not m:
        return None
    return " ".join(m.group(1).lower().split())


def time_window(phrase: str, now: datetime | None = None) -> TimeRange | None:
    """Map a window phrase to a concrete ``[start, end)`` range."""
    now = ensure_utc(now or utcnow())
    today = start_of_day(now)
    key = " ".join((phrase or "").lower().split())
    key = RANGE_ALIASES.get(key, key)

    if key == "today":
        return TimeRange(today, today + timedelta(days=1))
    if key == "yesterday":
        return TimeRange(today - timedelta(days=1), today)
    if key == "tomorrow":
        return TimeRange(today + timedelta(days=1), today + timedelta(days=2))
    if key == "last week":
        return TimeRange(now - timedelta(days=7), now)
    if key == "last month":
        return TimeRange(now - timedelta(days=30), now)
    if key == "last year":
        return TimeRange(now - timedelta(days=365), now)
    if key == "this week":
        return TimeRange(today - timedelta(days=now.weekday()), now)
    if key == "this month":
        return TimeRange(today.replace(day=1), now)
    if key == "this year":
        return TimeRange(today.replace(month=1, day=1), now)
    if key in {"recently", "lately"}:
        return TimeRange(now - timedelta(days=14), now)
    return None
