import asyncio

from app.config import REGISTRY_CIRCUIT_KEY
from app.services.enrichment_client import (
    OrgDetails,
    build_employer_row,
    resolve_org_display_name,
)
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
from fakes import StubEnrichmentClient, make_cnpj  # type: ignore

REGISTRY_ROW = {
    "razao_social": "Padaria Central Ltda",
    "nome_fantasia": "Padaria Central",
    "logradouro": "Rua das Flores",
    "numero": "120",
    "bairro": "Centro",
    "municipio": "Campinas",
    "uf": "SP",
    "cep": "13010001",
    "telefone": "1933334444",
    "email": "CONTATO@PADARIA.COM.BR",
    "cnae_fiscal": 1091102,
    "cnae_fiscal_descricao": "Padaria e confeitaria",
}


def test_successful_lookup_maps_registry_fields():
    client = StubEnrichmentClient({make_cnpj(1): REGISTRY_ROW})
    details, ok = asyncio.run(client.lookup_organization(make_cnpj(1)))
    assert ok is True
    assert details.legal_name == "Padaria Central Ltda"
    assert details.city == "Campinas"
    assert details.cnae_code == "1091102"


def test_not_found_is_a_soft_failure():
    client = StubEnrichmentClient()
    assert asyncio.run(client.lookup_organization(make_cnpj(2))) == (None, False)


def test_transport_error_is_swallowed():
    client = StubEnrichmentClient(fail=True)
    assert asyncio.run(client.lookup_organization(make_cnpj(3))) == (None, False)


def test_slow_registry_times_out():
    client = StubEnrichmentClient({make_cnpj(4): REGISTRY_ROW}, delay=0.5)
    assert asyncio.run(client.lookup_organization(make_cnpj(4), timeout=0.01)) == (None, False)


def test_circuit_opens_after_repeated_failures():
    client = StubEnrichmentClient(fail=True)

    async def _many():
        for n in range(8):
            await client.lookup_organization(make_cnpj(n + 1))

    asyncio.run(_many())
    # Threshold is 5; later calls never reach the transport
    assert len(client.calls) == 5
    assert GLOBAL_CIRCUIT_BREAKER.snapshot()[REGISTRY_CIRCUIT_KEY]["state"] == "OPEN"


def test_batch_lookup_is_bounded_and_complete():
    keys = [make_cnpj(n) for n in range(1, 13)]
    registry = {k: REGISTRY_ROW for k in keys[:9]}
    client = StubEnrichmentClient(registry, delay=0.01)
    found = asyncio.run(client.batch_lookup_organizations(keys + keys[:3], concurrency=3))
    assert set(found) == set(keys)
    assert sum(1 for v in found.values() if v is not None) == 9
    assert client.max_in_flight <= 3
    assert len(client.calls) == len(keys)


def test_batch_lookup_of_nothing():
    assert asyncio.run(StubEnrichmentClient().batch_lookup_organizations([])) == {}


def test_display_name_precedence():
    full = OrgDetails(legal_name="Legal SA", trade_name="Trade")
    assert resolve_org_display_name(full, "Doc Name") == "Legal SA"
    assert resolve_org_display_name(OrgDetails(trade_name="Trade"), "Doc Name") == "Trade"
    assert resolve_org_display_name(None, "  Doc Name ") == "Doc Name"
    assert resolve_org_display_name(None, "   ") == "Unknown Organization"


def test_employer_row_from_registry_details():
    row = build_employer_row("clinic-1", make_cnpj(1), OrgDetails.from_registry(REGISTRY_ROW), "Padaria")
    assert row["name"] == "Padaria Central Ltda"
    assert row["postal_code"] == "13010-001"
    assert row["address"] == "Rua das Flores, 120"
    assert row["email"] == "contato@padaria.com.br"
    assert row["clinic_id"] == "clinic-1"


def test_employer_row_without_registry_data():
    row = build_employer_row("clinic-1", make_cnpj(1), None, "Padaria do Bairro")
    assert row["name"] == "Padaria do Bairro"
    assert row["address"] is None
    assert row["city"] is None
    assert row["is_active"] is True
