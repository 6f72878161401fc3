from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime


class Clock:
    """Time source for the engine; tests substitute a fake implementation."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def to_iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def seconds_between(start: str | None, end: str | None) -> float:
    started = parse_iso(start)
    ended = parse_iso(end)
    if started is None or ended is None:
        return 0.0
    return max(0.0, (ended - started).total_seconds())
