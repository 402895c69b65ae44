"""Organization registry client (CNPJ lookup) used to enrich new employers.

Lookups are strictly best-effort: a timeout, a non-2xx answer, a transport
error or a body with ``ok: false`` all come back as ``(None, False)`` and are
logged, never raised. Consecutive failures trip the shared circuit breaker so
a dead registry stops costing a full timeout per organization.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import aiohttp

from app.config import ENRICHMENT_SETTINGS, IMPORT_SETTINGS, REGISTRY_CIRCUIT_KEY
from app.utils import get_logger
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER

logger = get_logger(__name__)


@dataclass(frozen=True)
class OrgDetails:
    legal_name: str | None = None
    trade_name: str | None = None
    street: str | None = None
    number: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    phone: str | None = None
    email: str | None = None
    cnae_code: str | None = None
    cnae_description: str | None = None

    @classmethod
    def from_registry(cls, payload: Dict[str, Any]) -> "OrgDetails":
        def _text(key: str) -> str | None:
            value = payload.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        return cls(
            legal_name=_text("razao_social"),
            trade_name=_text("nome_fantasia"),
            street=_text("logradouro"),
            number=_text("numero"),
            neighborhood=_text("bairro"),
            city=_text("municipio"),
            state=_text("uf"),
            postal_code=_text("cep"),
            phone=_text("telefone"),
            email=_text("email"),
            cnae_code=_text("cnae_fiscal"),
            cnae_description=_text("cnae_fiscal_descricao"),
        )


class EnrichmentClient:
    """Async client for the registry lookup endpoint."""

    def __init__(self, url: str | None = None, api_key: str | None = None):
        self.url = url or str(ENRICHMENT_SETTINGS["url"])
        self.api_key = api_key if api_key is not None else str(ENRICHMENT_SETTINGS["api_key"])

    async def _post_lookup(self, key: str, timeout: float) -> Optional[Dict[str, Any]]:
        """Send the lookup request. Returns the decoded body, or None on a non-2xx answer."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.post(self.url, json={"cnpj": key}, headers=headers) as response:
                if response.status < 200 or response.status >= 300:
                    logger.warning("Registry lookup returned non-2xx", org_key=key, status_code=response.status)
                    return None
                return await response.json(content_type=None)

    async def lookup_organization(self, key: str, timeout: float | None = None) -> tuple[OrgDetails | None, bool]:
        timeout = float(timeout if timeout is not None else ENRICHMENT_SETTINGS["timeout_seconds"])  # type: ignore[arg-type]
        allow, reason = GLOBAL_CIRCUIT_BREAKER.allow_call(REGISTRY_CIRCUIT_KEY)
        if not allow:
            logger.debug("Registry lookup skipped by circuit breaker", org_key=key, reason=reason)
            return None, False

        try:
            body = await asyncio.wait_for(self._post_lookup(key, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Registry lookup timed out", org_key=key, timeout_seconds=timeout)
            GLOBAL_CIRCUIT_BREAKER.record_failure(REGISTRY_CIRCUIT_KEY)
            return None, False
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning("Registry lookup failed", org_key=key, error=str(e))
            GLOBAL_CIRCUIT_BREAKER.record_failure(REGISTRY_CIRCUIT_KEY)
            return None, False
        except Exception as e:  # never let a lookup break an import
            logger.error("Unexpected registry lookup error", org_key=key, error=str(e), exc_info=True)
            GLOBAL_CIRCUIT_BREAKER.record_failure(REGISTRY_CIRCUIT_KEY)
            return None, False

        if not isinstance(body, dict) or not body.get("ok"):
            logger.warning(
                "Registry lookup rejected",
                org_key=key,
                error=body.get("error") if isinstance(body, dict) else None,
            )
            GLOBAL_CIRCUIT_BREAKER.record_failure(REGISTRY_CIRCUIT_KEY)
            return None, False

        GLOBAL_CIRCUIT_BREAKER.record_success(REGISTRY_CIRCUIT_KEY)
        return OrgDetails.from_registry(body), True

    async def batch_lookup_organizations(self, keys: Iterable[str], concurrency: int | None = None) -> dict[str, OrgDetails | None]:
        """Look up many organizations with at most ``concurrency`` requests in flight.

        Every input key is present in the result; failed lookups map to None.
        """
        unique = list(dict.fromkeys(keys))
        if not unique:
            return {}
        limit = int(concurrency or ENRICHMENT_SETTINGS["concurrency"])  # type: ignore[arg-type]
        semaphore = asyncio.Semaphore(max(1, limit))

        async def _one(key: str) -> tuple[str, OrgDetails | None]:
            async with semaphore:
                details, _ok = await self.lookup_organization(key)
                return key, details

        results = await asyncio.gather(*(_one(k) for k in unique), return_exceptions=True)
        found: dict[str, OrgDetails | None] = {k: None for k in unique}
        for item in results:
            if isinstance(item, BaseException):
                logger.error("Registry batch lookup task failed", error=str(item))
                continue
            key, details = item
            found[key] = details
        logger.info(
            "Registry batch lookup finished",
            requested=len(unique),
            enriched=sum(1 for v in found.values() if v is not None),
        )
        return found


def resolve_org_display_name(details: OrgDetails | None, document_name: str | None) -> str:
    """Legal name, then trade name, then the name printed on the document, then a placeholder."""
    for candidate in (
        details.legal_name if details else None,
        details.trade_name if details else None,
        document_name,
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return str(IMPORT_SETTINGS["placeholder_org_name"])


def _format_postal_code(raw: str | None) -> str | None:
    if not raw:
        return None
    digits = "".join(ch for ch in raw if ch.isdigit())
    if len(digits) == 8:
        return f"{digits[:5]}-{digits[5:]}"
    return digits or None


def build_employer_row(clinic_id: str, org_key: str, details: OrgDetails | None, document_name: str | None) -> dict[str, Any]:
    """Column values for a new employer; registry data where available, nulls otherwise."""
    address = None
    if details and details.street:
        address = f"{details.street}, {details.number}" if details.number else details.street
    return {
        "clinic_id": clinic_id,
        "cnpj": org_key,
        "name": resolve_org_display_name(details, document_name),
        "trade_name": details.trade_name if details else None,
        "is_active": True,
        "postal_code": _format_postal_code(details.postal_code) if details else None,
        "address": address,
        "neighborhood": details.neighborhood if details else None,
        "city": details.city if details else None,
        "state": details.state if details else None,
        "phone": details.phone if details else None,
        "email": details.email.lower() if details and details.email else None,
        "cnae_code": details.cnae_code if details else None,
        "cnae_description": details.cnae_description if details else None,
    }


__all__ = [
    "OrgDetails",
    "EnrichmentClient",
    "resolve_org_display_name",
    "build_employer_row",
]
