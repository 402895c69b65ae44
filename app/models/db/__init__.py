from .members import Member
from .employers import Employer
from .import_logs import ImportLog, AuditEntryRow
from .enums import EntityKind, RecordAction, ResultStatus, RunState, AuditAction

__all__ = [
    "Member",
    "Employer",
    "ImportLog",
    "AuditEntryRow",
    "EntityKind",
    "RecordAction",
    "ResultStatus",
    "RunState",
    "AuditAction",
]
