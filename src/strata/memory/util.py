"""Small helpers for timestamps, tag sets and line counting."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp. Naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_timestamp(dt: datetime | None = None) -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-02T03:04:05.678Z."""
    dt = (dt or utc_now()).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def unique(items: Iterable[str]) -> list[str]:
    """De-duplicate preserving first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def normalize_tags(tags: Iterable | None) -> list[str]:
    if not tags:
        return []
    return unique(str(t).strip() for t in tags if t is not None and str(t).strip())


def merge_unique(existing: Iterable | None, incoming: Iterable | None) -> list[str]:
    return normalize_tags([*(existing or []), *(incoming or [])])


def count_lines(text: str) -> int:
    """Count lines the way the size bounds do: a trailing newline adds one."""
    return len(text.split("\n"))


def format_duration(minutes: int | float | None) -> str:
    if minutes is None:
        return "unknown"
    total = max(0, int(round(minutes)))
    if total < 60:
        return f"{total}m"
    hours, rest = divmod(total, 60)
    return f"{hours}h {rest}m" if rest else f"{hours}h"
