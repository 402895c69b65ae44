"""
Pydantic schemas for bulk member imports.
"""
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator
from app.services.normalizer import clean_text, parse_date
from app.config import IMPORT_SETTINGS

_DATE_FIELDS = ("join_date", "admission_date", "birth_date")


class CandidateRecord(BaseModel):
    """One extracted row: a person, the organization they work for, and optional extras.

    Identifiers are kept as free text here; canonical keys are derived during
    reconciliation. Blank strings become ``None`` and dates that cannot be
    parsed are dropped rather than rejected.
    """
    person_name: Optional[str] = None
    person_id: Optional[str] = None
    org_name: Optional[str] = None
    org_id: Optional[str] = None
    role: Optional[str] = None
    join_date: Optional[date] = None
    admission_date: Optional[date] = None

    street: Optional[str] = None
    number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    phone: Optional[str] = None
    email: Optional[str] = None
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    marital_status: Optional[str] = None
    mother_name: Optional[str] = None

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "person_name": "Maria da Silva",
            "person_id": "111.222.333-44",
            "org_name": "Padaria Central LTDA",
            "org_id": "11.111.111/0001-11",
            "role": "Atendente",
            "join_date": "01/03/2024",
        }
    })

    @field_validator("*", mode="before")
    @classmethod
    def strip_blank(cls, v, info):
        if info.field_name in _DATE_FIELDS:
            return parse_date(v)
        return clean_text(v)


class ImportOptions(BaseModel):
    chunk_size: int = Field(default_factory=lambda: int(IMPORT_SETTINGS["chunk_size"]), ge=1, le=10000)
    concurrency: int = Field(default_factory=lambda: int(IMPORT_SETTINGS["update_concurrency"]), ge=1, le=100)
    enable_enrichment: bool = True


class StartImportRequest(BaseModel):
    clinic_id: str = Field(description="Tenant that owns the imported members")
    file_name: Optional[str] = Field(None, description="Source document name, kept in import history")
    records: List[CandidateRecord] = Field(default_factory=list)
    options: ImportOptions = Field(default_factory=ImportOptions)


class RowErrorRead(BaseModel):
    row: int
    field: str
    message: str
    person_key: Optional[str] = None
    org_key: Optional[str] = None
    person_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ImportResultRead(BaseModel):
    """Counters and row errors accumulated so far for a run."""
    total_records: int = 0
    members_created: int = 0
    members_updated: int = 0
    members_skipped: int = 0
    employers_created: int = 0
    employers_skipped: int = 0
    duplicates_dropped: int = 0
    errors: List[RowErrorRead] = Field(default_factory=list)
    completed_chunks: List[int] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ImportRunRead(BaseModel):
    run_id: str
    clinic_id: str
    state: str = Field(description="IDLE, RUNNING, COMPLETED, CANCELLED, FAILED_PENDING_RESUME or FAILED")
    total_chunks: int
    failed_chunk_index: Optional[int] = None
    last_error: Optional[str] = None
    result: Optional[ImportResultRead] = None


class ImportLogRead(BaseModel):
    id: str
    clinic_id: str
    import_type: str
    file_name: Optional[str]
    status: str
    total_rows: int
    success_count: int
    error_count: int
    error_details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class AuditEntryRead(BaseModel):
    timestamp: datetime
    action: str
    entity_kind: str
    entity_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
