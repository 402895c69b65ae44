from .base import ResponseBase
from .imports import (
    CandidateRecord,
    ImportOptions,
    StartImportRequest,
    RowErrorRead,
    ImportResultRead,
    ImportRunRead,
    ImportLogRead,
    AuditEntryRead,
)

__all__ = [
    # Base
    "ResponseBase",

    # Imports
    "CandidateRecord",
    "ImportOptions",
    "StartImportRequest",
    "RowErrorRead",
    "ImportResultRead",
    "ImportRunRead",
    "ImportLogRead",
    "AuditEntryRead",
]
