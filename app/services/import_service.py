"""Run registry and orchestration for bulk member imports.

``ImportManager`` is the entry point used by the API layer:

    run = manager.create_run(clinic_id, records, options)
    await manager.execute(run.run_id)          # or start_import() for a task
    async for snapshot in run.stream(): ...
    await manager.cancel(run.run_id)
    await manager.resume(run.run_id)

Runs live in process memory; their history (``import_logs``) and audit
trail (``audit_entries``) are persisted through SQLAlchemy.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Optional

from app.config import AUDIT_SETTINGS
from app.models.db.enums import AuditAction, EntityKind, RunState
from app.models.schemas.imports import CandidateRecord, ImportOptions
from app.services.audit_recorder import AuditRecorder, AuditSink
from app.services.batch_executor import BatchExecutor, ImportResultSnapshot
from app.services.enrichment_client import EnrichmentClient
from app.services.import_errors import ImportSetupError
from app.services.normalizer import normalize_candidate
from app.services.persistence import ExistingEntityReader, PersistencePort, SqlAlchemyImportStore
from app.services.reconciliation_engine import collect_keys, reconcile_records
from app.utils import get_logger
from app.utils.time import format_elapsed, utc_now

logger = get_logger(__name__)


@dataclass
class ImportRun:
    run_id: str
    clinic_id: str
    candidates: list[CandidateRecord]
    options: ImportOptions
    audit: AuditRecorder
    file_name: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    executor: Optional[BatchExecutor] = None
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False
    last_error: Optional[str] = None
    setup_failed: bool = False
    _events: list[tuple[ImportResultSnapshot, bool]] = field(default_factory=list, repr=False)
    _pass_offset: int = 0
    _subscribers: list[asyncio.Queue] = field(default_factory=list, repr=False)

    @property
    def state(self) -> RunState:
        if self.executor is not None:
            return self.executor.state
        return RunState.FAILED if self.setup_failed else RunState.IDLE

    @property
    def failed_chunk_index(self) -> int | None:
        return self.executor.failed_chunk_index if self.executor is not None else None

    @property
    def total_chunks(self) -> int:
        return self.executor.total_chunks if self.executor is not None else 0

    @property
    def latest(self) -> ImportResultSnapshot | None:
        if self.executor is not None:
            return self.executor.result.snapshot()
        return self._events[-1][0] if self._events else None

    def _begin_pass(self) -> None:
        self._pass_offset = len(self._events)

    def _publish(self, snapshot: ImportResultSnapshot, terminal: bool = False) -> None:
        self._events.append((snapshot, terminal))
        for queue in list(self._subscribers):
            queue.put_nowait((snapshot, terminal))

    async def stream(self) -> AsyncIterator[ImportResultSnapshot]:
        """Yield one snapshot per completed chunk of the current pass, ending after the terminal one."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            for snapshot, terminal in self._events[self._pass_offset:]:
                yield snapshot
                if terminal:
                    return
            while True:
                snapshot, terminal = await queue.get()
                yield snapshot
                if terminal:
                    return
        finally:
            self._subscribers.remove(queue)


class ImportManager:
    """Creates, executes, cancels and resumes import runs (one process, in memory)."""

    def __init__(
        self,
        store: PersistencePort | None = None,
        reader: ExistingEntityReader | None = None,
        enrichment: EnrichmentClient | None = None,
        audit_sink: AuditSink | None = None,
        persist_audit: bool | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        default_store = SqlAlchemyImportStore()
        self.store = store or default_store
        self.reader = reader or (self.store if hasattr(self.store, "read_snapshot") else default_store)
        self.enrichment = enrichment or EnrichmentClient()
        self.audit_sink = audit_sink
        self.persist_audit = bool(AUDIT_SETTINGS["persist"]) if persist_audit is None else persist_audit
        self._sleep = sleep
        self.runs: dict[str, ImportRun] = {}

    # ------------------------------------------------------------------ #
    def get_run(self, run_id: str) -> ImportRun:
        run = self.runs.get(run_id)
        if run is None:
            raise ImportSetupError(f"unknown import run {run_id}")
        return run

    def create_run(
        self,
        clinic_id: str,
        records: Iterable[CandidateRecord | Mapping[str, Any]],
        options: ImportOptions | None = None,
        file_name: str | None = None,
    ) -> ImportRun:
        if not clinic_id or not str(clinic_id).strip():
            raise ImportSetupError("clinic id is required")
        candidates = [r if isinstance(r, CandidateRecord) else normalize_candidate(r) for r in records]
        if not candidates:
            raise ImportSetupError("no records to import")
        run_id = str(uuid.uuid4())
        run = ImportRun(
            run_id=run_id,
            clinic_id=str(clinic_id).strip(),
            candidates=candidates,
            options=options or ImportOptions(),
            file_name=file_name,
            audit=AuditRecorder(
                run_id=run_id,
                sink=self.audit_sink,
                persist=self.persist_audit,
            ),
        )
        self.runs[run_id] = run
        logger.info("Import run created", run_id=run_id, clinic_id=run.clinic_id, records=len(candidates))
        return run

    async def execute(self, run_id: str) -> ImportResultSnapshot | None:
        """Reconcile and execute a created run (first pass)."""
        run = self.get_run(run_id)
        if run.executor is not None or run.setup_failed:
            raise ImportSetupError(f"import run {run_id} already started")
        run._begin_pass()
        started = utc_now()

        try:
            person_keys, org_keys = collect_keys(run.candidates)
            snapshot = await self.reader.read_snapshot(run.clinic_id, person_keys, org_keys)
            outcome = reconcile_records(run.candidates, snapshot)
        except Exception as e:
            run.setup_failed = True
            run.last_error = str(e)
            logger.error("Import run setup failed", run_id=run_id, error=str(e), exc_info=True)
            await run.audit.record(
                AuditAction.RUN_FAILED,
                EntityKind.IMPORT_RUN,
                run_id,
                {"clinic_id": run.clinic_id, "total_records": len(run.candidates), "stage": "setup", "error": str(e)},
            )
            await self._finish_pass(run, ImportResultSnapshot(total_records=len(run.candidates)), started)
            return None

        executor = BatchExecutor(
            run.clinic_id,
            self.store,
            snapshot,
            run_id=run_id,
            audit=run.audit,
            enrichment=self.enrichment,
            enable_enrichment=run.options.enable_enrichment,
            sleep=self._sleep,
        )
        executor.add_observer(run._publish)
        run.executor = executor
        if run.cancel_requested:
            executor.cancel()

        result = await executor.run(
            outcome.records,
            run.options.chunk_size,
            run.options.concurrency,
            total_records=outcome.total_records,
            duplicates_dropped=outcome.duplicates_dropped,
        )
        await self._finish_pass(run, result, started)
        return result

    async def start_import(
        self,
        clinic_id: str,
        records: Iterable[CandidateRecord | Mapping[str, Any]],
        options: ImportOptions | None = None,
        file_name: str | None = None,
    ) -> ImportRun:
        """Create a run and execute it as a background task on the running loop."""
        run = self.create_run(clinic_id, records, options, file_name)
        run.task = asyncio.create_task(self.execute(run.run_id))
        return run

    def check_resumable(self, run_id: str) -> ImportRun:
        run = self.get_run(run_id)
        if run.state != RunState.FAILED_PENDING_RESUME:
            raise ImportSetupError(f"cannot resume a run in state {run.state.value}")
        return run

    async def resume(self, run_id: str, from_chunk_index: int | None = None) -> ImportResultSnapshot:
        run = self.check_resumable(run_id)
        run._begin_pass()
        started = utc_now()
        result = await run.executor.resume(from_chunk_index)  # type: ignore[union-attr]
        await self._finish_pass(run, result, started)
        return result

    async def cancel(self, run_id: str) -> ImportRun:
        run = self.get_run(run_id)
        if run.state == RunState.FAILED:
            raise ImportSetupError(f"cannot cancel a run in state {run.state.value}")
        if run.executor is None:
            run.cancel_requested = True
            logger.info("Cancellation requested before execution", run_id=run_id)
            return run
        halted = run.state == RunState.FAILED_PENDING_RESUME
        run.executor.cancel()
        if halted:
            run._begin_pass()
            await self._finish_pass(run, run.executor.result.snapshot(), utc_now())
        return run

    # ------------------------------------------------------------------ #
    async def _finish_pass(self, run: ImportRun, result: ImportResultSnapshot, started: datetime) -> None:
        run._publish(result, terminal=True)
        if run.executor is not None and run.executor.last_error:
            run.last_error = run.executor.last_error
        logger.info(
            "Import pass finished",
            run_id=run.run_id,
            state=run.state.value,
            created=result.members_created,
            updated=result.members_updated,
            errors=len(result.errors),
            elapsed=format_elapsed(started),
        )
        save = getattr(self.store, "save_import_log", None)
        if save is None:
            return
        cap = int(AUDIT_SETTINGS["max_error_details"])
        try:
            await save({
                "id": run.run_id,
                "clinic_id": run.clinic_id,
                "import_type": "members",
                "file_name": run.file_name,
                "status": run.state.value.lower(),
                "total_rows": result.total_records,
                "success_count": result.success_count,
                "error_count": len(result.errors),
                "error_details": {
                    "errors": [e.to_dict() for e in result.errors[:cap]],
                    "truncated": len(result.errors) > cap,
                    "failed_chunk_index": run.failed_chunk_index,
                    "counts": {k: v for k, v in result.to_dict().items() if k not in ("errors", "completed_chunks")},
                },
            })
        except Exception as e:
            logger.error("Failed to save import history", run_id=run.run_id, error=str(e), exc_info=True)


__all__ = ["ImportRun", "ImportManager"]
