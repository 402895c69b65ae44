"""Central Enum definitions for import domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and the import pipeline.
"""
from __future__ import annotations
import enum


class EntityKind(str, enum.Enum):
    MEMBER = "member"
    EMPLOYER = "employer"
    IMPORT_RUN = "import_run"


# ------------------ Reconciliation / Execution Enums ------------------ #

class RecordAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    REJECT = "reject"


class ResultStatus(str, enum.Enum):
    PENDING = "pending"
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    ERROR = "error"


class RunState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED_PENDING_RESUME = "FAILED_PENDING_RESUME"
    # Existing-entity read or reconciliation failed; no chunk ran and the run cannot resume.
    FAILED = "FAILED"


class AuditAction(str, enum.Enum):
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    BATCH_COMPLETED = "batch_completed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


TERMINAL_AUDIT_ACTIONS = frozenset({
    AuditAction.RUN_COMPLETED,
    AuditAction.RUN_FAILED,
    AuditAction.RUN_CANCELLED,
})

__all__ = [
    "EntityKind",
    "RecordAction",
    "ResultStatus",
    "RunState",
    "AuditAction",
    "TERMINAL_AUDIT_ACTIONS",
]
