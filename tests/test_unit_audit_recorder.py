import asyncio

from app.models.db.enums import AuditAction, EntityKind
from app.services.audit_recorder import AuditRecorder


def test_entries_are_kept_in_order():
    recorder = AuditRecorder(run_id="run-1", persist=False)

    async def _write():
        await recorder.record(AuditAction.RUN_STARTED, EntityKind.IMPORT_RUN, "run-1")
        await recorder.record(AuditAction.BATCH_COMPLETED, EntityKind.IMPORT_RUN, "run-1", {"chunk_index": 0})
        await recorder.record(AuditAction.RUN_COMPLETED, EntityKind.IMPORT_RUN, "run-1")

    asyncio.run(_write())
    assert [e.action for e in recorder.entries] == [
        AuditAction.RUN_STARTED,
        AuditAction.BATCH_COMPLETED,
        AuditAction.RUN_COMPLETED,
    ]
    assert recorder.entries[1].to_dict()["details"] == {"chunk_index": 0}
    assert [e.action for e in recorder.terminal_entries()] == [AuditAction.RUN_COMPLETED]


def test_failing_sink_never_raises():
    calls = []

    async def _broken_sink(run_id, entry):
        calls.append((run_id, entry.action))
        raise RuntimeError("audit table unavailable")

    recorder = AuditRecorder(run_id="run-2", sink=_broken_sink)
    entry = asyncio.run(recorder.record(AuditAction.RUN_FAILED, EntityKind.IMPORT_RUN, "run-2", {"message": "boom"}))
    assert entry.action == AuditAction.RUN_FAILED
    assert recorder.entries == [entry]
    assert calls == [("run-2", AuditAction.RUN_FAILED)]


def test_sqlalchemy_sink_persists_rows(db_session):
    from app.models.db import AuditEntryRow

    recorder = AuditRecorder(run_id="run-db", persist=True)
    asyncio.run(recorder.record(AuditAction.RUN_CANCELLED, EntityKind.IMPORT_RUN, "run-db", {"message": "stopped"}))
    rows = db_session.query(AuditEntryRow).filter(AuditEntryRow.run_id == "run-db").all()
    assert len(rows) == 1
    assert rows[0].action == AuditAction.RUN_CANCELLED.value
    assert rows[0].message == "stopped"
