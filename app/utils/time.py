"""Time utilities (UTC now, elapsed formatting, local date stamps)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    delta: timedelta = (end or utc_now()) - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

def br_date(value: datetime | None = None) -> str:
    """DD/MM/YYYY stamp written into member import notes."""
    return (value or utc_now()).strftime("%d/%m/%Y")

__all__ = ["utc_now", "format_elapsed", "br_date"]
