"""CSV export of the row errors collected during an import."""
from __future__ import annotations

import csv
import io
from typing import Iterable

from app.services.batch_executor import ImportResultSnapshot, RowError

ERROR_REPORT_COLUMNS = ("row", "field", "message", "person_key", "org_key", "person_name")


def iter_error_rows(errors: Iterable[RowError]) -> Iterable[list[str]]:
    for error in sorted(errors, key=lambda e: e.row):
        values = error.to_dict()
        yield ["" if values[col] is None else str(values[col]) for col in ERROR_REPORT_COLUMNS]


def build_error_report(snapshot: ImportResultSnapshot) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(ERROR_REPORT_COLUMNS)
    writer.writerows(iter_error_rows(snapshot.errors))
    return buffer.getvalue()


__all__ = ["ERROR_REPORT_COLUMNS", "iter_error_rows", "build_error_report"]
