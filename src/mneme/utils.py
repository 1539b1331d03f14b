"""Shared utilities."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

import orjson


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def iso_str(dt: datetime) -> str:
    return ensure_utc(dt).isoformat(timespec="microseconds")


def iso_or_none(dt: datetime | None) -> str | None:
    return iso_str(dt) if dt is not None else None


def parse_iso(s: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(s))


def parse_iso_or_none(s: str | None) -> datetime | None:
    return parse_iso(s) if s else None


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
