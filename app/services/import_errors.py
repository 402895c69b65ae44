"""Error taxonomy for the import pipeline.

Row-level problems are never raised; they end up as rejected records or row
errors in the aggregated result. Only the cases below travel as exceptions.
"""
from __future__ import annotations

import asyncio
import re

from sqlalchemy import exc as sa_exc

# Matched against the driver message only, never against SQL text or bound parameters.
_TRANSIENT_PATTERN = re.compile(
    r"timeout|timed out|network|connection|temporarily unavailable|\b(?:status|http)\D{0,3}5\d\d\b",
    re.IGNORECASE,
)

# Bad data or bad SQL: retrying the same rows cannot succeed.
_PERMANENT_TYPES = (sa_exc.IntegrityError, sa_exc.DataError, sa_exc.ProgrammingError)

_TRANSIENT_TYPES = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    sa_exc.OperationalError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)


class ImportSetupError(Exception):
    """Raised before any chunk runs (missing clinic id, empty input, unknown run, illegal transition)."""


class TransientInfraError(Exception):
    """Persistence failure expected to clear up on retry."""


class HardChunkFailure(Exception):
    """A chunk could not be applied even after retries; the run halts at ``chunk_index``."""

    def __init__(self, chunk_index: int, cause: BaseException | None = None):
        self.chunk_index = chunk_index
        self.cause = cause
        super().__init__(f"chunk {chunk_index} failed: {cause}")


def _driver_message(exc: BaseException) -> str:
    if isinstance(exc, sa_exc.DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    text = str(exc)
    for marker in ("[SQL:", "[parameters:"):
        text = text.split(marker, 1)[0]
    return text


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TransientInfraError):
        return True
    if isinstance(exc, _PERMANENT_TYPES):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    return bool(_TRANSIENT_PATTERN.search(_driver_message(exc)))


__all__ = ["ImportSetupError", "TransientInfraError", "HardChunkFailure", "is_transient_error"]
