"""Persistence double and stub registry client shared by the test suite."""
import asyncio

from app.models.db.enums import EntityKind
from app.services.enrichment_client import EnrichmentClient
from app.services.reconciliation_engine import EmployerSummary, ExistingEntitySnapshot, MemberSummary


def make_cpf(n: int) -> str:
    return f"{n:011d}"


def make_cnpj(n: int) -> str:
    return f"{n:014d}"


class StubEnrichmentClient(EnrichmentClient):
    """Registry client answering from an in-memory table instead of HTTP."""

    def __init__(self, registry: dict[str, dict] | None = None, *, fail: bool = False, delay: float = 0.0):
        super().__init__(url="http://registry.invalid/lookup", api_key="")
        self.registry = registry or {}
        self.fail = fail
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _post_lookup(self, key: str, timeout: float):
        self.calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise ConnectionError("registry unreachable")
            if key not in self.registry:
                return {"ok": False, "error": "not found"}
            return {"ok": True, **self.registry[key]}
        finally:
            self.in_flight -= 1


class FakeImportStore:
    """In-memory persistence double, idempotent on the natural key like the real store.

    ``fail_batch(kind, rows)`` / ``fail_update(entity_id, fields)`` may return an
    exception to raise for that call.
    """

    def __init__(self):
        self.members: dict[str, dict] = {}
        self.employers: dict[str, dict] = {}
        self.batch_calls: list[tuple[str, list[str]]] = []
        self.update_calls: list[tuple[int, dict]] = []
        self.import_logs: dict[str, dict] = {}
        self.fail_batch = None
        self.fail_update = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def add_member(self, cpf: str, *, employer_cnpj: str | None, is_union_member: bool, name: str = "Existing Member") -> int:
        member_id = self._new_id()
        self.members[cpf] = {
            "id": member_id,
            "cpf": cpf,
            "name": name,
            "employer_cnpj": employer_cnpj,
            "is_union_member": is_union_member,
        }
        return member_id

    def add_employer(self, cnpj: str, name: str = "Existing Employer") -> int:
        employer_id = self._new_id()
        self.employers[cnpj] = {"id": employer_id, "cnpj": cnpj, "name": name}
        return employer_id

    def snapshot(self) -> ExistingEntitySnapshot:
        members = {
            cpf: MemberSummary(
                id=row["id"],
                name=row["name"],
                employer_key=row.get("employer_cnpj"),
                employer_name=self.employers.get(row.get("employer_cnpj") or "", {}).get("name"),
                is_union_member=bool(row.get("is_union_member")),
            )
            for cpf, row in self.members.items()
        }
        employers = {cnpj: EmployerSummary(id=row["id"], name=row["name"]) for cnpj, row in self.employers.items()}
        return ExistingEntitySnapshot(members=members, employers=employers)

    async def read_snapshot(self, clinic_id, person_keys, org_keys):
        full = self.snapshot()
        person_keys, org_keys = set(person_keys), set(org_keys)
        return ExistingEntitySnapshot(
            members={k: v for k, v in full.members.items() if k in person_keys},
            employers={k: v for k, v in full.employers.items() if k in org_keys},
        )

    async def upsert_batch(self, entity_kind, rows, conflict_key):
        kind = EntityKind(entity_kind)
        key_column = conflict_key[0]
        self.batch_calls.append((kind.value, [row[key_column] for row in rows]))
        if self.fail_batch is not None:
            exc = self.fail_batch(kind, rows)
            if exc is not None:
                raise exc
        await asyncio.sleep(0)
        table = self.members if kind == EntityKind.MEMBER else self.employers
        inserted = {}
        for row in rows:
            key = row[key_column]
            if key in table:
                continue
            entity_id = self._new_id()
            table[key] = {**row, "id": entity_id}
            inserted[key] = entity_id
        return inserted

    async def update_one(self, entity_kind, entity_id, fields):
        self.update_calls.append((entity_id, dict(fields)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.001)
            if self.fail_update is not None:
                exc = self.fail_update(entity_id, fields)
                if exc is not None:
                    raise exc
            for row in self.members.values():
                if row["id"] == entity_id:
                    row.update(fields)
                    return
            raise LookupError(f"member {entity_id} not found")
        finally:
            self.in_flight -= 1

    async def save_import_log(self, values):
        self.import_logs[values["id"]] = dict(values)


