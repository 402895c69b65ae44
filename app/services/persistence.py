"""Persistence ports used by the import pipeline and their SQLAlchemy implementation.

The executor only talks to the two protocols below so tests can swap in an
in-memory double. ``SqlAlchemyImportStore`` runs every statement in a worker
thread (``asyncio.to_thread``) with its own short-lived session.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

import app.database as database
from app.models.db import Member, Employer, ImportLog
from app.models.db.enums import EntityKind
from app.services.reconciliation_engine import EmployerSummary, ExistingEntitySnapshot, MemberSummary
from app.utils import get_logger

logger = get_logger(__name__)

_MODELS = {
    EntityKind.MEMBER: Member,
    EntityKind.EMPLOYER: Employer,
}

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
_KEY_BATCH = 500


class ExistingEntityReader(Protocol):
    async def read_snapshot(self, clinic_id: str, person_keys: Iterable[str], org_keys: Iterable[str]) -> ExistingEntitySnapshot: ...


class PersistencePort(Protocol):
    async def upsert_batch(self, entity_kind: EntityKind, rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]) -> Dict[str, int]:
        """Insert rows, leaving existing natural keys untouched; return ids of the rows actually inserted."""
        ...

    async def update_one(self, entity_kind: EntityKind, entity_id: int, fields: Dict[str, Any]) -> None: ...


def _batched(keys: Iterable[str]) -> list[list[str]]:
    items = sorted(set(keys))
    return [items[i:i + _KEY_BATCH] for i in range(0, len(items), _KEY_BATCH)]


class SqlAlchemyImportStore:
    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._session_factory = session_factory

    def _session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    # ----------------------------- snapshot ----------------------------- #
    def _read_snapshot_sync(self, clinic_id: str, person_keys: Iterable[str], org_keys: Iterable[str]) -> ExistingEntitySnapshot:
        members: dict[str, MemberSummary] = {}
        employers: dict[str, EmployerSummary] = {}
        with self._session() as session:
            for batch in _batched(person_keys):
                stmt = (
                    select(Member.id, Member.name, Member.cpf, Member.employer_cnpj, Member.is_union_member, Employer.name)
                    .outerjoin(
                        Employer,
                        (Employer.cnpj == Member.employer_cnpj) & (Employer.clinic_id == Member.clinic_id),
                    )
                    .where(Member.clinic_id == clinic_id, Member.cpf.in_(batch))
                )
                for member_id, name, cpf, employer_cnpj, is_union_member, employer_name in session.execute(stmt):
                    members[cpf] = MemberSummary(
                        id=member_id,
                        name=name,
                        employer_key=employer_cnpj,
                        employer_name=employer_name,
                        is_union_member=bool(is_union_member),
                    )
            for batch in _batched(org_keys):
                stmt = select(Employer.id, Employer.name, Employer.cnpj).where(
                    Employer.clinic_id == clinic_id, Employer.cnpj.in_(batch)
                )
                for employer_id, name, cnpj in session.execute(stmt):
                    employers[cnpj] = EmployerSummary(id=employer_id, name=name)
        return ExistingEntitySnapshot(members=members, employers=employers)

    async def read_snapshot(self, clinic_id: str, person_keys: Iterable[str], org_keys: Iterable[str]) -> ExistingEntitySnapshot:
        snapshot = await asyncio.to_thread(self._read_snapshot_sync, clinic_id, list(person_keys), list(org_keys))
        logger.info(
            "Existing entity snapshot loaded",
            clinic_id=clinic_id,
            members=len(snapshot.members),
            employers=len(snapshot.employers),
        )
        return snapshot

    # ------------------------------ writes ------------------------------ #
    def _upsert_batch_sync(self, entity_kind: EntityKind, rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]) -> Dict[str, int]:
        model = _MODELS[EntityKind(entity_kind)]
        key_column = getattr(model, conflict_key[0])
        with self._session() as session:
            dialect = session.get_bind().dialect.name
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = (
                insert(model)
                .values(list(rows))
                .on_conflict_do_nothing(index_elements=list(conflict_key))
                .returning(model.id, key_column)
            )
            try:
                inserted = {str(key): entity_id for entity_id, key in session.execute(stmt).all()}
                session.commit()
            except Exception:
                session.rollback()
                raise
        return inserted

    async def upsert_batch(self, entity_kind: EntityKind, rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]) -> Dict[str, int]:
        if not rows:
            return {}
        return await asyncio.to_thread(self._upsert_batch_sync, entity_kind, list(rows), tuple(conflict_key))

    def _update_one_sync(self, entity_kind: EntityKind, entity_id: int, fields: Dict[str, Any]) -> None:
        model = _MODELS[EntityKind(entity_kind)]
        with self._session() as session:
            try:
                result = session.execute(update(model).where(model.id == entity_id).values(**fields))
                if result.rowcount == 0:
                    raise LookupError(f"{EntityKind(entity_kind).value} {entity_id} not found")
                session.commit()
            except Exception:
                session.rollback()
                raise

    async def update_one(self, entity_kind: EntityKind, entity_id: int, fields: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._update_one_sync, entity_kind, entity_id, dict(fields))

    # ---------------------------- import log ---------------------------- #
    def _save_import_log_sync(self, values: Dict[str, Any]) -> None:
        with self._session() as session:
            try:
                log = session.get(ImportLog, values["id"])
                if log is None:
                    log = ImportLog(**values)
                    session.add(log)
                else:
                    for key, value in values.items():
                        setattr(log, key, value)
                session.commit()
            except Exception:
                session.rollback()
                raise

    async def save_import_log(self, values: Dict[str, Any]) -> None:
        """Create or refresh the import history row of a run (keyed by run id)."""
        payload = dict(values)
        payload.setdefault("completed_at", datetime.now(timezone.utc))
        await asyncio.to_thread(self._save_import_log_sync, payload)


__all__ = ["ExistingEntityReader", "PersistencePort", "SqlAlchemyImportStore"]
