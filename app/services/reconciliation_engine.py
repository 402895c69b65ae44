"""Reconciliation engine: decide what to do with every extracted row.

Public entry points:

* ``reconcile_record(candidate, snapshot)``: pure decision for one row.
* ``group_by_person_key(candidates)``: first-wins de-duplication on CPF.
* ``reconcile_records(candidates, snapshot)``: grouping + decisions for a
  whole document, returned as a ``ReconciliationOutcome``.

Rules (first match wins):
1. person key shorter than 11 digits -> reject ("invalid person identifier")
2. org key shorter than 14 digits -> reject ("invalid organization identifier")
3. person name empty or shorter than 3 characters -> reject ("invalid name")
4. member already stored -> update when the employer differs, the member is
   not flagged as union member, or the stored employer name is blank;
   otherwise skip
5. anything else -> create

The snapshot is read once per run and never mutated here. Registry
enrichment happens later and never changes the decision.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from app.config import IMPORT_SETTINGS
from app.models.db.enums import RecordAction, ResultStatus
from app.models.schemas.imports import CandidateRecord
from app.services.normalizer import canonicalize


@dataclass(frozen=True)
class MemberSummary:
    id: int
    name: str
    employer_key: str | None
    employer_name: str | None
    is_union_member: bool


@dataclass(frozen=True)
class EmployerSummary:
    id: int
    name: str


@dataclass(frozen=True)
class ExistingEntitySnapshot:
    """Read-only view of the members/employers already stored for the keys of a document."""
    members: Mapping[str, MemberSummary] = field(default_factory=lambda: MappingProxyType({}))
    employers: Mapping[str, EmployerSummary] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        object.__setattr__(self, "members", MappingProxyType(dict(self.members)))
        object.__setattr__(self, "employers", MappingProxyType(dict(self.employers)))


@dataclass
class ReconciledRecord:
    candidate: CandidateRecord
    canonical_person_key: str
    canonical_org_key: str
    action: RecordAction
    error_message: str | None = None
    matched_entity_id: int | None = None
    # Filled in by the batch executor.
    result_status: ResultStatus = ResultStatus.PENDING
    entity_id: int | None = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    records: list[ReconciledRecord]
    total_records: int
    duplicates_dropped: int


def _is_valid_person_key(key: str) -> bool:
    return len(key) >= int(IMPORT_SETTINGS["min_person_key_digits"])


def _needs_update(existing: MemberSummary, org_key: str) -> bool:
    if existing.employer_key != org_key:
        return True
    if not existing.is_union_member:
        return True
    return not (existing.employer_name or "").strip()


def reconcile_record(candidate: CandidateRecord, snapshot: ExistingEntitySnapshot) -> ReconciledRecord:
    person_key = canonicalize(candidate.person_id)
    org_key = canonicalize(candidate.org_id)

    def _reject(message: str) -> ReconciledRecord:
        return ReconciledRecord(candidate, person_key, org_key, RecordAction.REJECT, error_message=message)

    if not _is_valid_person_key(person_key):
        return _reject("invalid person identifier")
    if len(org_key) < int(IMPORT_SETTINGS["min_org_key_digits"]):
        return _reject("invalid organization identifier")
    name = (candidate.person_name or "").strip()
    if len(name) < int(IMPORT_SETTINGS["min_name_length"]):
        return _reject("invalid name")

    existing = snapshot.members.get(person_key)
    if existing is not None:
        action = RecordAction.UPDATE if _needs_update(existing, org_key) else RecordAction.SKIP
        return ReconciledRecord(candidate, person_key, org_key, action, matched_entity_id=existing.id)
    return ReconciledRecord(candidate, person_key, org_key, RecordAction.CREATE)


def group_by_person_key(candidates: Iterable[CandidateRecord]) -> tuple[list[CandidateRecord], int]:
    """Keep the first candidate per canonical person key, in input order.

    Returns ``(kept, dropped_count)``. Candidates whose person key is invalid
    are kept individually so each one surfaces as its own rejection.
    """
    seen: set[str] = set()
    kept: list[CandidateRecord] = []
    dropped = 0
    for candidate in candidates:
        key = canonicalize(candidate.person_id)
        if _is_valid_person_key(key):
            if key in seen:
                dropped += 1
                continue
            seen.add(key)
        kept.append(candidate)
    return kept, dropped


def collect_keys(candidates: Iterable[CandidateRecord]) -> tuple[set[str], set[str]]:
    """Canonical person and org keys referenced by a document (for the snapshot read)."""
    person_keys: set[str] = set()
    org_keys: set[str] = set()
    for candidate in candidates:
        person_key = canonicalize(candidate.person_id)
        org_key = canonicalize(candidate.org_id)
        if person_key:
            person_keys.add(person_key)
        if org_key:
            org_keys.add(org_key)
    return person_keys, org_keys


def reconcile_records(candidates: Iterable[CandidateRecord], snapshot: ExistingEntitySnapshot) -> ReconciliationOutcome:
    candidates = list(candidates)
    kept, dropped = group_by_person_key(candidates)
    records = [reconcile_record(c, snapshot) for c in kept]
    return ReconciliationOutcome(records=records, total_records=len(candidates), duplicates_dropped=dropped)


__all__ = [
    "MemberSummary",
    "EmployerSummary",
    "ExistingEntitySnapshot",
    "ReconciledRecord",
    "ReconciliationOutcome",
    "reconcile_record",
    "group_by_person_key",
    "collect_keys",
    "reconcile_records",
]
