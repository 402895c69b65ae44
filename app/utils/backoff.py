"""Retry backoff helpers (linear by default, exponential available)."""
from __future__ import annotations

import random
from typing import Optional

from app.config import IMPORT_RETRY_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, strategy: Optional[str] = None, factor: int = 2, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute the delay before retry number ``attempt`` (1-based).

    linear: ``attempt * base``; exponential: ``base * factor ** (attempt - 1)``.
    """
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else IMPORT_RETRY_POLICY["base_seconds"])  # type: ignore[arg-type]
    strategy = str(strategy if strategy is not None else IMPORT_RETRY_POLICY["strategy"])
    max_seconds = float(max_seconds if max_seconds is not None else IMPORT_RETRY_POLICY["max_seconds"])  # type: ignore[arg-type]
    jitter_pct = float(jitter_pct if jitter_pct is not None else IMPORT_RETRY_POLICY["jitter_pct"])  # type: ignore[arg-type]

    if strategy == "exponential":
        delay = base * (factor ** (attempt - 1))
    else:
        delay = attempt * base
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
