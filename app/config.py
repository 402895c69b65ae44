"""Core application configuration & tunable import rules.

All business rules that may evolve (chunk sizes, validation thresholds, retry
budget, enrichment timeouts, circuit thresholds) are centralized here so they
can be adjusted without diving into service logic. Values may be overridden
via environment variables; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os
from typing import Final

# --------------------------------- Import --------------------------------- #
IMPORT_SETTINGS: dict[str, int | str] = {
	# Rows per persistence round-trip.
	"chunk_size": int(os.getenv("IMPORT_CHUNK_SIZE", "1500")),
	# Concurrent per-record updates inside a chunk.
	"update_concurrency": int(os.getenv("IMPORT_UPDATE_CONCURRENCY", "10")),
	# Natural key / name validation thresholds.
	"min_person_key_digits": 11,  # CPF
	"min_org_key_digits": 14,     # CNPJ
	"min_name_length": 3,
	# Literal shown when neither the registry nor the document names an employer.
	"placeholder_org_name": "Unknown Organization",
	# Member phone is mandatory in the store; documents rarely carry it.
	"placeholder_phone": "00000000000",
}

# ------------------------------- Retry Policy ----------------------------- #
IMPORT_RETRY_POLICY: dict[str, int | float | str] = {
	# Additional attempts after the first failed chunk upsert.
	"max_retries": 3,
	"base_seconds": float(os.getenv("IMPORT_RETRY_BASE_SECONDS", "2")),
	"strategy": "linear",  # attempt * base
	"max_seconds": 60,
	"jitter_pct": 0.0,
}

# ------------------------------- Enrichment ------------------------------- #
ENRICHMENT_SETTINGS: dict[str, float | int | str | bool] = {
	# Registry lookup endpoint; receives {"cnpj": "<14 digits>"}.
	"url": os.getenv("ENRICHMENT_URL", "http://localhost:54321/functions/v1/lookup-cnpj"),
	"api_key": os.getenv("ENRICHMENT_API_KEY", ""),
	"timeout_seconds": float(os.getenv("ENRICHMENT_TIMEOUT", "5")),
	"concurrency": int(os.getenv("ENRICHMENT_CONCURRENCY", "5")),
	"enabled": os.getenv("ENRICHMENT_ENABLED", "true").lower() in ("1", "true", "yes"),
}

# Circuit breaker key used for the registry service.
REGISTRY_CIRCUIT_KEY: Final[str] = "organization_registry"

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 60,     # Stay OPEN for 1 minute
	"half_open_probe_count": 2,      # Probes allowed in HALF_OPEN
}

# --------------------------------- Audit ---------------------------------- #
AUDIT_SETTINGS: dict[str, bool | int] = {
	# Durable write of audit entries (in-memory list is always kept).
	"persist": os.getenv("AUDIT_PERSIST", "true").lower() in ("1", "true", "yes"),
	# Cap on row errors copied into import_logs.error_details.
	"max_error_details": 500,
}

__all__ = [
	"IMPORT_SETTINGS",
	"IMPORT_RETRY_POLICY",
	"ENRICHMENT_SETTINGS",
	"REGISTRY_CIRCUIT_KEY",
	"CIRCUIT_BREAKER",
	"AUDIT_SETTINGS",
]
