"""Chunked execution of reconciled import records.

``BatchExecutor`` owns one run:

* records are partitioned into ordered chunks (default 1500) processed
  strictly one after another;
* inside a chunk, missing employers are upserted first, then member creates
  in one multi-row upsert, then member updates one by one with bounded
  concurrency;
* a transient batch failure is retried with linear backoff; a non-transient
  one falls back to one upsert per row so a single bad row only costs itself;
* when retries run out the run halts in ``FAILED_PENDING_RESUME`` keeping
  everything from completed chunks, and ``resume()`` picks up from there.

Chunk work is collected in a ``ChunkOutcome`` and folded into the shared
``AggregatedResult`` only once the chunk has fully completed; concurrent
update tasks never touch the accumulator.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from app.config import ENRICHMENT_SETTINGS, IMPORT_RETRY_POLICY, IMPORT_SETTINGS
from app.models.db.enums import AuditAction, EntityKind, RecordAction, ResultStatus, RunState
from app.services.audit_recorder import AuditRecorder
from app.services.enrichment_client import EnrichmentClient, OrgDetails, build_employer_row
from app.services.import_errors import HardChunkFailure, ImportSetupError, is_transient_error
from app.services.persistence import PersistencePort
from app.services.reconciliation_engine import ExistingEntitySnapshot, ReconciledRecord
from app.utils import get_logger, log_business_event, log_performance
from app.utils.backoff import compute_backoff_seconds
from app.utils.time import br_date

logger = get_logger(__name__)

MEMBER_CONFLICT_KEY = ("cpf", "clinic_id")
EMPLOYER_CONFLICT_KEY = ("cnpj", "clinic_id")


@dataclass(frozen=True)
class RowError:
    row: int
    field: str
    message: str
    person_key: str | None = None
    org_key: str | None = None
    person_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "field": self.field,
            "message": self.message,
            "person_key": self.person_key,
            "org_key": self.org_key,
            "person_name": self.person_name,
        }


@dataclass(frozen=True)
class ImportResultSnapshot:
    total_records: int = 0
    members_created: int = 0
    members_updated: int = 0
    members_skipped: int = 0
    employers_created: int = 0
    employers_skipped: int = 0
    duplicates_dropped: int = 0
    errors: tuple[RowError, ...] = ()
    completed_chunks: tuple[int, ...] = ()

    @property
    def success_count(self) -> int:
        return self.members_created + self.members_updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "members_created": self.members_created,
            "members_updated": self.members_updated,
            "members_skipped": self.members_skipped,
            "employers_created": self.employers_created,
            "employers_skipped": self.employers_skipped,
            "duplicates_dropped": self.duplicates_dropped,
            "errors": [e.to_dict() for e in self.errors],
            "completed_chunks": list(self.completed_chunks),
        }


@dataclass
class ChunkOutcome:
    chunk_index: int
    members_created: int = 0
    members_updated: int = 0
    members_skipped: int = 0
    employers_created: int = 0
    employers_skipped: int = 0
    errors: list[RowError] = field(default_factory=list)
    employer_ids: dict[str, int] = field(default_factory=dict)
    seen_org_keys: set[str] = field(default_factory=set)


@dataclass
class AggregatedResult:
    total_records: int = 0
    members_created: int = 0
    members_updated: int = 0
    members_skipped: int = 0
    employers_created: int = 0
    employers_skipped: int = 0
    duplicates_dropped: int = 0
    errors: list[RowError] = field(default_factory=list)
    completed_chunks: set[int] = field(default_factory=set)

    def apply(self, outcome: ChunkOutcome) -> None:
        self.members_created += outcome.members_created
        self.members_updated += outcome.members_updated
        self.members_skipped += outcome.members_skipped
        self.employers_created += outcome.employers_created
        self.employers_skipped += outcome.employers_skipped
        self.errors.extend(outcome.errors)
        self.completed_chunks.add(outcome.chunk_index)

    def snapshot(self) -> ImportResultSnapshot:
        return ImportResultSnapshot(
            total_records=self.total_records,
            members_created=self.members_created,
            members_updated=self.members_updated,
            members_skipped=self.members_skipped,
            employers_created=self.employers_created,
            employers_skipped=self.employers_skipped,
            duplicates_dropped=self.duplicates_dropped,
            errors=tuple(self.errors),
            completed_chunks=tuple(sorted(self.completed_chunks)),
        )


class CancellationToken:
    """Cooperative cancel flag, read by the chunk loop between chunks."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def partition(records: Sequence[ReconciledRecord], chunk_size: int) -> list[list[ReconciledRecord]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [list(records[i:i + chunk_size]) for i in range(0, len(records), chunk_size)]


def build_member_row(clinic_id: str, record: ReconciledRecord) -> dict[str, Any]:
    c = record.candidate
    address = None
    if c.street:
        address = f"{c.street}, {c.number}" if c.number else c.street
    phone = "".join(ch for ch in (c.phone or "") if ch.isdigit())
    admission = c.admission_date.strftime("%d/%m/%Y") if c.admission_date else "-"
    return {
        "clinic_id": clinic_id,
        "name": (c.person_name or "").strip(),
        "cpf": record.canonical_person_key,
        "phone": phone or str(IMPORT_SETTINGS["placeholder_phone"]),
        "email": c.email.lower() if c.email else None,
        "employer_cnpj": record.canonical_org_key,
        "profession": c.role,
        "is_active": True,
        "is_union_member": True,
        "union_joined_at": c.join_date,
        "birth_date": c.birth_date,
        "gender": c.gender,
        "marital_status": c.marital_status,
        "mother_name": c.mother_name,
        "postal_code": c.postal_code,
        "address": address,
        "neighborhood": c.neighborhood,
        "city": c.city,
        "state": c.state,
        "notes": f"Imported on {br_date()}. Admission: {admission}",
    }


def build_member_update(record: ReconciledRecord) -> dict[str, Any]:
    c = record.candidate
    fields: dict[str, Any] = {
        "employer_cnpj": record.canonical_org_key,
        "is_union_member": True,
    }
    if c.role:
        fields["profession"] = c.role
    if c.join_date:
        fields["union_joined_at"] = c.join_date
    return fields


def _row_error(row: int, field_name: str, message: str, record: ReconciledRecord) -> RowError:
    return RowError(
        row=row,
        field=field_name,
        message=message,
        person_key=record.canonical_person_key or None,
        org_key=record.canonical_org_key or None,
        person_name=record.candidate.person_name,
    )


Observer = Callable[[ImportResultSnapshot], None]


class BatchExecutor:
    """Executes one import run; not reusable across runs."""

    def __init__(
        self,
        clinic_id: str,
        store: PersistencePort,
        snapshot: ExistingEntitySnapshot | None = None,
        *,
        run_id: Optional[str] = None,
        audit: AuditRecorder | None = None,
        enrichment: EnrichmentClient | None = None,
        enable_enrichment: bool | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not clinic_id:
            raise ImportSetupError("clinic id is required")
        self.clinic_id = clinic_id
        self.store = store
        self.snapshot = snapshot or ExistingEntitySnapshot()
        self.run_id = run_id
        self.audit = audit or AuditRecorder(run_id=run_id, persist=False)
        self.enrichment = enrichment
        self.enable_enrichment = bool(ENRICHMENT_SETTINGS["enabled"]) if enable_enrichment is None else enable_enrichment
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self._log = logger.bind(run_id=run_id, clinic_id=clinic_id)

        self.state = RunState.IDLE
        self.result = AggregatedResult()
        self.records: list[ReconciledRecord] = []
        self.chunk_size = int(IMPORT_SETTINGS["chunk_size"])
        self.concurrency = int(IMPORT_SETTINGS["update_concurrency"])
        self.failed_chunk_index: int | None = None
        self.next_chunk_index = 0
        self.last_error: str | None = None

        self._observers: list[Observer] = []
        self._org_details: dict[str, OrgDetails | None] = {}
        self._known_employers: dict[str, int] = {emp_key: emp.id for emp_key, emp in self.snapshot.employers.items()}
        self._seen_org_keys: set[str] = set()
        # Employers inserted by a chunk attempt that later failed hard; still ours on resume.
        self._orphan_employers: dict[str, int] = {}

    # ------------------------------------------------------------------ #
    @property
    def total_chunks(self) -> int:
        if not self.records:
            return 0
        return math.ceil(len(self.records) / self.chunk_size)

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def cancel(self) -> None:
        """Request cancellation.

        A running pass stops at the next chunk boundary; a halted run is
        closed for good.
        """
        if self.state in (RunState.IDLE, RunState.RUNNING):
            self.cancel_token.cancel()
        elif self.state == RunState.FAILED_PENDING_RESUME:
            self.state = RunState.CANCELLED
            self._log.info("Halted import run cancelled", next_chunk_index=self.next_chunk_index)
        else:
            raise ImportSetupError(f"cannot cancel a run in state {self.state.value}")

    async def run(
        self,
        records: Sequence[ReconciledRecord],
        chunk_size: int | None = None,
        concurrency: int | None = None,
        *,
        total_records: int | None = None,
        duplicates_dropped: int = 0,
    ) -> ImportResultSnapshot:
        if self.state != RunState.IDLE:
            raise ImportSetupError(f"cannot start a run in state {self.state.value}")
        if not records:
            raise ImportSetupError("no records to import")
        self.records = list(records)
        self.chunk_size = int(chunk_size or IMPORT_SETTINGS["chunk_size"])
        self.concurrency = max(1, int(concurrency or IMPORT_SETTINGS["update_concurrency"]))
        self.result.total_records = total_records if total_records is not None else len(self.records)
        self.result.duplicates_dropped = duplicates_dropped
        return await self._execute(0, resumed=False)

    async def resume(self, from_chunk_index: int | None = None) -> ImportResultSnapshot:
        if self.state != RunState.FAILED_PENDING_RESUME:
            raise ImportSetupError(f"cannot resume a run in state {self.state.value}")
        start = self.next_chunk_index if from_chunk_index is None else from_chunk_index
        if start < 0 or start > self.total_chunks:
            raise ImportSetupError(f"chunk index {start} out of range")
        return await self._execute(start, resumed=True)

    # ------------------------------------------------------------------ #
    async def _execute(self, start_index: int, resumed: bool) -> ImportResultSnapshot:
        self.state = RunState.RUNNING
        self.failed_chunk_index = None
        self.last_error = None
        if resumed:
            self.cancel_token.reset()
        chunks = partition(self.records, self.chunk_size)

        await self.audit.record(
            AuditAction.RUN_RESUMED if resumed else AuditAction.RUN_STARTED,
            EntityKind.IMPORT_RUN,
            self.run_id,
            {
                "clinic_id": self.clinic_id,
                "records": len(self.records),
                "total_records": self.result.total_records,
                "chunks": len(chunks),
                "start_chunk_index": start_index,
            },
        )
        log_business_event(
            "import_resumed" if resumed else "import_started",
            {"records": len(self.records), "chunks": len(chunks), "start_chunk_index": start_index},
            run_id=self.run_id,
            clinic_id=self.clinic_id,
        )

        if not resumed:
            await self._prefetch_enrichment()

        index = start_index
        while index < len(chunks):
            if self.cancel_token.cancelled:
                break
            started = time.perf_counter()
            try:
                outcome = await self._process_chunk(index, chunks[index])
            except HardChunkFailure as e:
                return await self._halt(e)
            except Exception as e:
                self._log.error("Unexpected chunk error", chunk_index=index, error=str(e), exc_info=True)
                return await self._halt(HardChunkFailure(index, e))

            self.result.apply(outcome)
            self._known_employers.update(outcome.employer_ids)
            self._seen_org_keys.update(outcome.seen_org_keys)
            for key in outcome.employer_ids:
                self._orphan_employers.pop(key, None)
            self.next_chunk_index = index + 1

            log_performance(
                "import_chunk",
                round((time.perf_counter() - started) * 1000, 2),
                {"run_id": self.run_id, "chunk_index": index, "records": len(chunks[index])},
            )
            await self.audit.record(
                AuditAction.BATCH_COMPLETED,
                EntityKind.IMPORT_RUN,
                self.run_id,
                {
                    "chunk_index": index,
                    "records": len(chunks[index]),
                    "members_created": outcome.members_created,
                    "members_updated": outcome.members_updated,
                    "members_skipped": outcome.members_skipped,
                    "errors": len(outcome.errors),
                },
            )
            self._notify()
            index += 1

        snapshot = self.result.snapshot()
        if index < len(chunks):
            self.state = RunState.FAILED_PENDING_RESUME
            self.failed_chunk_index = index
            self.next_chunk_index = index
            self._log.info("Import run cancelled at chunk boundary", next_chunk_index=index)
            await self.audit.record(
                AuditAction.RUN_CANCELLED,
                EntityKind.IMPORT_RUN,
                self.run_id,
                {"next_chunk_index": index, **self._counts(snapshot)},
            )
        else:
            self.state = RunState.COMPLETED
            await self.audit.record(
                AuditAction.RUN_COMPLETED,
                EntityKind.IMPORT_RUN,
                self.run_id,
                self._counts(snapshot),
            )
        log_business_event(
            "import_finished",
            {"state": self.state.value, **self._counts(snapshot)},
            run_id=self.run_id,
            clinic_id=self.clinic_id,
        )
        return snapshot

    async def _halt(self, failure: HardChunkFailure) -> ImportResultSnapshot:
        self.state = RunState.FAILED_PENDING_RESUME
        self.failed_chunk_index = failure.chunk_index
        self.next_chunk_index = failure.chunk_index
        self.last_error = str(failure.cause) if failure.cause is not None else str(failure)
        snapshot = self.result.snapshot()
        self._log.error(
            "Import run halted by chunk failure",
            chunk_index=failure.chunk_index,
            error=self.last_error,
        )
        await self.audit.record(
            AuditAction.RUN_FAILED,
            EntityKind.IMPORT_RUN,
            self.run_id,
            {"failed_chunk_index": failure.chunk_index, "error": self.last_error, **self._counts(snapshot)},
        )
        log_business_event(
            "import_failed",
            {"failed_chunk_index": failure.chunk_index, "error": self.last_error},
            run_id=self.run_id,
            clinic_id=self.clinic_id,
        )
        return snapshot

    @staticmethod
    def _counts(snapshot: ImportResultSnapshot) -> dict[str, int]:
        return {
            "total_records": snapshot.total_records,
            "members_created": snapshot.members_created,
            "members_updated": snapshot.members_updated,
            "members_skipped": snapshot.members_skipped,
            "employers_created": snapshot.employers_created,
            "employers_skipped": snapshot.employers_skipped,
            "errors": len(snapshot.errors),
        }

    def _notify(self) -> None:
        snapshot = self.result.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as e:
                self._log.warning("Import observer failed", error=str(e))

    # ----------------------------- enrichment ----------------------------- #
    async def _prefetch_enrichment(self) -> None:
        if not self.enable_enrichment or self.enrichment is None:
            return
        missing: list[str] = []
        for record in self.records:
            if record.action not in (RecordAction.CREATE, RecordAction.UPDATE):
                continue
            key = record.canonical_org_key
            if key and key not in self._known_employers and key not in missing:
                missing.append(key)
        if not missing:
            return
        started = time.perf_counter()
        self._org_details = await self.enrichment.batch_lookup_organizations(
            missing, concurrency=int(ENRICHMENT_SETTINGS["concurrency"])  # type: ignore[arg-type]
        )
        log_performance(
            "registry_prefetch",
            round((time.perf_counter() - started) * 1000, 2),
            {"run_id": self.run_id, "organizations": len(missing)},
        )

    # ------------------------------- retry -------------------------------- #
    async def _with_retry(self, chunk_index: int, operation: Callable[[], Awaitable[Dict[str, int]]]) -> Dict[str, int]:
        """Run ``operation``, retrying transient failures; non-transient errors propagate unchanged."""
        max_retries = int(IMPORT_RETRY_POLICY["max_retries"])  # type: ignore[arg-type]
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt >= max_retries:
                    raise HardChunkFailure(chunk_index, e) from e
                attempt += 1
                delay = compute_backoff_seconds(attempt)
                self._log.warning(
                    "Transient chunk failure, retry scheduled",
                    chunk_index=chunk_index,
                    attempt=attempt,
                    backoff_seconds=round(delay, 2),
                    error=str(e),
                )
                await self._sleep(delay)

    # ------------------------------- chunk -------------------------------- #
    async def _process_chunk(self, chunk_index: int, chunk: list[ReconciledRecord]) -> ChunkOutcome:
        outcome = ChunkOutcome(chunk_index=chunk_index)
        base_row = chunk_index * self.chunk_size
        creates: list[tuple[int, ReconciledRecord]] = []
        updates: list[tuple[int, ReconciledRecord]] = []

        for i, record in enumerate(chunk):
            row = base_row + i + 1
            if record.action == RecordAction.REJECT:
                record.result_status = ResultStatus.REJECTED
                outcome.errors.append(_row_error(row, "validation", record.error_message or "rejected", record))
            elif record.action == RecordAction.SKIP:
                record.result_status = ResultStatus.SKIPPED
                record.entity_id = record.matched_entity_id
                outcome.members_skipped += 1
            elif record.action == RecordAction.CREATE:
                creates.append((row, record))
            else:
                updates.append((row, record))

        if creates or updates:
            await self._ensure_employers(chunk_index, creates + updates, outcome)
        if creates:
            await self._create_members(chunk_index, creates, outcome)
        if updates:
            await self._apply_updates(updates, outcome)

        self._log.debug(
            "Chunk processed",
            chunk_index=chunk_index,
            creates=len(creates),
            updates=len(updates),
            errors=len(outcome.errors),
        )
        return outcome

    async def _ensure_employers(self, chunk_index: int, work: list[tuple[int, ReconciledRecord]], outcome: ChunkOutcome) -> None:
        first_ref: dict[str, tuple[int, ReconciledRecord]] = {}
        for row, record in sorted(work, key=lambda item: item[0]):
            first_ref.setdefault(record.canonical_org_key, (row, record))

        to_create: list[str] = []
        for key in first_ref:
            already_seen = key in self._seen_org_keys or key in outcome.seen_org_keys
            outcome.seen_org_keys.add(key)
            if key in self._known_employers or key in outcome.employer_ids:
                if not already_seen:
                    outcome.employers_skipped += 1
                continue
            to_create.append(key)
        if not to_create:
            return

        rows = {
            key: build_employer_row(
                self.clinic_id, key, self._org_details.get(key), first_ref[key][1].candidate.org_name
            )
            for key in to_create
        }

        async def _upsert_all() -> Dict[str, int]:
            return await self.store.upsert_batch(EntityKind.EMPLOYER, list(rows.values()), EMPLOYER_CONFLICT_KEY)

        try:
            inserted = await self._with_retry(chunk_index, _upsert_all)
            for key in to_create:
                self._fold_employer(key, inserted, outcome)
        except HardChunkFailure:
            raise
        except Exception as e:
            self._log.warning(
                "Employer batch upsert failed, falling back to single rows",
                chunk_index=chunk_index,
                error=str(e),
            )
            for key in to_create:
                try:
                    inserted = await self.store.upsert_batch(EntityKind.EMPLOYER, [rows[key]], EMPLOYER_CONFLICT_KEY)
                except Exception as row_exc:
                    row, record = first_ref[key]
                    outcome.errors.append(_row_error(row, "employer", f"could not create employer: {row_exc}", record))
                    continue
                self._fold_employer(key, inserted, outcome)

    def _fold_employer(self, key: str, inserted: Dict[str, int], outcome: ChunkOutcome) -> None:
        if key in inserted:
            outcome.employer_ids[key] = inserted[key]
            outcome.employers_created += 1
            self._orphan_employers[key] = inserted[key]
        elif key in self._orphan_employers:
            outcome.employer_ids[key] = self._orphan_employers[key]
            outcome.employers_created += 1
        else:
            # Created concurrently by someone else after the snapshot was read.
            outcome.employers_skipped += 1

    async def _create_members(self, chunk_index: int, creates: list[tuple[int, ReconciledRecord]], outcome: ChunkOutcome) -> None:
        rows = [build_member_row(self.clinic_id, record) for _, record in creates]

        async def _upsert_all() -> Dict[str, int]:
            return await self.store.upsert_batch(EntityKind.MEMBER, rows, MEMBER_CONFLICT_KEY)

        try:
            inserted = await self._with_retry(chunk_index, _upsert_all)
        except HardChunkFailure:
            raise
        except Exception as e:
            self._log.warning(
                "Member batch upsert failed, falling back to single rows",
                chunk_index=chunk_index,
                rows=len(rows),
                error=str(e),
            )
            for (row, record), member_row in zip(creates, rows):
                try:
                    single = await self.store.upsert_batch(EntityKind.MEMBER, [member_row], MEMBER_CONFLICT_KEY)
                except Exception as row_exc:
                    record.result_status = ResultStatus.ERROR
                    outcome.errors.append(_row_error(row, "member", f"could not create member: {row_exc}", record))
                    continue
                self._fold_member_create(record, single, outcome)
            return

        for _, record in creates:
            self._fold_member_create(record, inserted, outcome)

    @staticmethod
    def _fold_member_create(record: ReconciledRecord, inserted: Dict[str, int], outcome: ChunkOutcome) -> None:
        entity_id = inserted.get(record.canonical_person_key)
        if entity_id is None:
            # Natural key already present (re-run or resume): nothing new was written.
            record.result_status = ResultStatus.SKIPPED
            outcome.members_skipped += 1
            return
        record.result_status = ResultStatus.CREATED
        record.entity_id = entity_id
        outcome.members_created += 1

    async def _apply_updates(self, updates: list[tuple[int, ReconciledRecord]], outcome: ChunkOutcome) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _update(row: int, record: ReconciledRecord) -> tuple[int, ReconciledRecord, Exception | None]:
            async with semaphore:
                try:
                    await self.store.update_one(EntityKind.MEMBER, record.matched_entity_id, build_member_update(record))  # type: ignore[arg-type]
                except Exception as e:
                    return row, record, e
                return row, record, None

        results = await asyncio.gather(*(_update(row, record) for row, record in updates))
        for row, record, error in results:
            if error is not None:
                record.result_status = ResultStatus.ERROR
                outcome.errors.append(_row_error(row, "member", f"could not update member: {error}", record))
                self._log.warning("Member update failed", row=row, member_id=record.matched_entity_id, error=str(error))
                continue
            record.result_status = ResultStatus.UPDATED
            record.entity_id = record.matched_entity_id
            outcome.members_updated += 1


__all__ = [
    "RowError",
    "ImportResultSnapshot",
    "ChunkOutcome",
    "AggregatedResult",
    "CancellationToken",
    "BatchExecutor",
    "partition",
    "build_member_row",
    "build_member_update",
]
