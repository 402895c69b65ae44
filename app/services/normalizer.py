"""Boundary normalization for extracted member rows.

Documents arrive with identifiers formatted every possible way
("111.222.333-44", "11122233344 ", None) and dates in a handful of
regional formats or as spreadsheet serial numbers. Everything here is
forgiving: nothing raises, bad values collapse to ``""`` / ``None`` and the
reconciliation rules decide what to do with them afterwards.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any, Mapping

_NON_DIGITS = re.compile(r"\D")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_BR_DATE = re.compile(r"^(\d{2})[/-](\d{2})[/-](\d{4})$")
_SERIAL = re.compile(r"^\d+(\.\d+)?$")

# Day zero of spreadsheet serial dates (serial 25569 == 1970-01-01).
_SERIAL_EPOCH = date(1899, 12, 30)


def canonicalize(raw: Any) -> str:
    """Strip every non-digit character; ``None`` becomes ``""``."""
    if raw is None:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def clean_text(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(raw: Any) -> date | None:
    """Parse ``YYYY-MM-DD``, ``DD/MM/YYYY``, ``DD-MM-YYYY`` or a serial number.

    Returns ``None`` for anything else, including impossible calendar dates.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)):
        return _from_serial(float(raw))

    value = str(raw).strip()
    if not value:
        return None
    m = _ISO_DATE.match(value)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _BR_DATE.match(value)
    if m:
        return _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    if _SERIAL.match(value):
        return _from_serial(float(value))
    return None


def _from_serial(serial: float) -> date | None:
    if serial <= 0:
        return None
    try:
        return _SERIAL_EPOCH + timedelta(days=int(serial))
    except OverflowError:
        return None


def normalize_candidate(row: Mapping[str, Any]):
    """Build a ``CandidateRecord`` from a loosely-typed mapping.

    Unknown keys are ignored; the model validators take care of stripping
    and date parsing.
    """
    from app.models.schemas.imports import CandidateRecord

    known = CandidateRecord.model_fields.keys()
    return CandidateRecord(**{k: v for k, v in row.items() if k in known})


__all__ = ["canonicalize", "clean_text", "parse_date", "normalize_candidate"]
