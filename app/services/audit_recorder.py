"""Append-only audit trail for import runs.

Entries are kept in memory for the lifetime of the run and copied to the
``audit_entries`` table on a best-effort basis: a failing sink is logged and
otherwise ignored so auditing can never fail an import.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import app.database as database
from app.config import AUDIT_SETTINGS
from app.models.db import AuditEntryRow
from app.models.db.enums import AuditAction, EntityKind, TERMINAL_AUDIT_ACTIONS
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    action: AuditAction
    entity_kind: EntityKind
    entity_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action.value,
            "entity_kind": self.entity_kind.value,
            "entity_id": self.entity_id,
            "details": dict(self.details),
        }


AuditSink = Callable[[Optional[str], AuditEntry], Awaitable[None]]


def _write_entry_sync(run_id: Optional[str], entry: AuditEntry) -> None:
    with database.SessionLocal() as session:
        try:
            session.add(AuditEntryRow(
                run_id=run_id,
                action=entry.action.value,
                entity_kind=entry.entity_kind.value,
                entity_id=entry.entity_id,
                details=entry.details or None,
                message=entry.details.get("message") if entry.details else None,
                created_at=entry.timestamp,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise


async def sqlalchemy_audit_sink(run_id: Optional[str], entry: AuditEntry) -> None:
    await asyncio.to_thread(_write_entry_sync, run_id, entry)


class AuditRecorder:
    """Collects audit entries for one run and forwards them to a durable sink."""

    def __init__(self, run_id: Optional[str] = None, sink: AuditSink | None = None, persist: bool | None = None):
        self.run_id = run_id
        self.entries: list[AuditEntry] = []
        persist = bool(AUDIT_SETTINGS["persist"]) if persist is None else persist
        self._sink = sink if sink is not None else (sqlalchemy_audit_sink if persist else None)

    async def record(
        self,
        action: AuditAction,
        entity_kind: EntityKind,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=utc_now(),
            action=AuditAction(action),
            entity_kind=EntityKind(entity_kind),
            entity_id=str(entity_id) if entity_id is not None else None,
            details=dict(details or {}),
        )
        self.entries.append(entry)
        if self._sink is not None:
            try:
                await self._sink(self.run_id, entry)
            except Exception as e:
                logger.warning(
                    "Audit sink write failed",
                    run_id=self.run_id,
                    action=entry.action.value,
                    error=str(e),
                )
        return entry

    def terminal_entries(self) -> list[AuditEntry]:
        return [e for e in self.entries if e.action in TERMINAL_AUDIT_ACTIONS]


__all__ = ["AuditEntry", "AuditRecorder", "sqlalchemy_audit_sink"]
