import csv
import io

from app.services.batch_executor import ImportResultSnapshot, RowError
from app.services.error_report import ERROR_REPORT_COLUMNS, build_error_report


def test_report_lists_errors_sorted_by_row():
    snapshot = ImportResultSnapshot(errors=(
        RowError(row=9, field="member", message="could not update member: boom", person_key="12345678901"),
        RowError(row=2, field="validation", message="invalid name, \"quoted\"", person_name="Al"),
    ))
    rows = list(csv.reader(io.StringIO(build_error_report(snapshot))))
    assert tuple(rows[0]) == ERROR_REPORT_COLUMNS
    assert [r[0] for r in rows[1:]] == ["2", "9"]
    assert rows[1][2] == 'invalid name, "quoted"'
    assert rows[1][3] == ""
    assert rows[2][3] == "12345678901"


def test_empty_report_has_only_header():
    assert build_error_report(ImportResultSnapshot()) == ",".join(ERROR_REPORT_COLUMNS) + "\n"
