import csv
import io
import json
import uuid

from app.models.db import Employer, Member
from fakes import make_cpf, make_cnpj  # type: ignore

API = "/api/v1/imports"


def _clinic() -> str:
    return f"clinic-{uuid.uuid4().hex[:8]}"


def _records(count, *, start=1, org=1, **extra):
    return [
        {
            "person_name": f"Member {n:04d}",
            "person_id": make_cpf(n),
            "org_name": "Padaria Central",
            "org_id": make_cnpj(org),
            "admission_date": "2021-03-15",
            **extra,
        }
        for n in range(start, start + count)
    ]


def _start(client, clinic_id, records, **options):
    resp = client.post(API + "/", json={
        "clinic_id": clinic_id,
        "file_name": "members.pdf",
        "records": records,
        "options": {"enable_enrichment": False, **options},
    })
    assert resp.status_code == 202, resp.text
    body = resp.json()
    assert body["success"] is True
    return body["data"]["run_id"]


def test_import_runs_to_completion_and_persists(client, db_session):
    clinic_id = _clinic()
    records = _records(5, start=1001)
    records.append({"person_name": "Al", "person_id": make_cpf(1099), "org_id": make_cnpj(1)})
    run_id = _start(client, clinic_id, records, chunk_size=2)

    resp = client.get(f"{API}/{run_id}")
    assert resp.status_code == 200
    run = resp.json()
    assert run["state"] == "COMPLETED"
    assert run["total_chunks"] == 3
    result = run["result"]
    assert result["members_created"] == 5
    assert result["employers_created"] == 1
    assert result["total_records"] == 6
    assert [e["field"] for e in result["errors"]] == ["validation"]

    members = db_session.query(Member).filter(Member.clinic_id == clinic_id).all()
    assert len(members) == 5
    assert all(m.is_union_member for m in members)
    assert all(m.employer_cnpj == make_cnpj(1) for m in members)
    employer = db_session.query(Employer).filter(Employer.clinic_id == clinic_id).one()
    assert employer.name == "Padaria Central"

    # Same document again: nothing new is written
    rerun_id = _start(client, clinic_id, _records(5, start=1001), chunk_size=2)
    rerun = client.get(f"{API}/{rerun_id}").json()["result"]
    assert rerun["members_created"] == 0
    assert rerun["members_skipped"] == 5
    assert rerun["employers_created"] == 0


def test_existing_member_moves_to_new_employer(client, db_session):
    clinic_id = _clinic()
    _start(client, clinic_id, _records(1, start=2001, org=1))
    run_id = _start(client, clinic_id, _records(1, start=2001, org=2))

    result = client.get(f"{API}/{run_id}").json()["result"]
    assert result["members_updated"] == 1
    assert result["employers_created"] == 1
    member = db_session.query(Member).filter(Member.clinic_id == clinic_id).one()
    assert member.employer_cnpj == make_cnpj(2)


def test_keys_longer_than_national_formats_are_stored_whole(client, db_session):
    # Reconciliation only enforces minimum lengths; storage must not cap them.
    for column in (Member.__table__.c.cpf, Member.__table__.c.employer_cnpj, Employer.__table__.c.cnpj):
        assert column.type.length is None

    clinic_id = _clinic()
    long_cpf = make_cpf(4001) + "7"
    long_cnpj = make_cnpj(9) + "3"
    run_id = _start(client, clinic_id, [{"person_name": "Joana Prado", "person_id": long_cpf, "org_name": "Mercado Sul", "org_id": long_cnpj}])

    result = client.get(f"{API}/{run_id}").json()["result"]
    assert result["members_created"] == 1
    assert result["errors"] == []
    member = db_session.query(Member).filter(Member.clinic_id == clinic_id).one()
    assert member.cpf == long_cpf
    assert member.employer_cnpj == long_cnpj
    assert db_session.query(Employer).filter(Employer.clinic_id == clinic_id).one().cnpj == long_cnpj


def test_error_report_and_audit_trail(client):
    clinic_id = _clinic()
    records = _records(2, start=3001)
    records.insert(1, {"person_name": "Sem Documento", "person_id": "123", "org_id": make_cnpj(1)})
    run_id = _start(client, clinic_id, records)

    resp = client.get(f"{API}/{run_id}/errors.csv")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0][:3] == ["row", "field", "message"]
    assert rows[1][:3] == ["2", "validation", "invalid person identifier"]

    audit = client.get(f"{API}/{run_id}/audit").json()
    actions = [entry["action"] for entry in audit]
    assert actions[0] == "run_started"
    assert actions[-1] == "run_completed"
    assert "batch_completed" in actions


def test_stream_returns_ndjson_snapshots(client):
    run_id = _start(client, _clinic(), _records(3, start=4001), chunk_size=2)
    resp = client.get(f"{API}/{run_id}/stream")
    assert resp.status_code == 200
    lines = [json.loads(line) for line in resp.text.splitlines() if line.strip()]
    assert len(lines) == 3
    assert lines[-1]["state"] == "COMPLETED"
    assert lines[-1]["result"]["members_created"] == 3


def test_history_lists_runs_for_clinic(client):
    clinic_id = _clinic()
    _start(client, clinic_id, _records(1, start=5001))
    _start(client, clinic_id, _records(1, start=5002))
    resp = client.get(f"{API}/history", params={"clinic_id": clinic_id})
    assert resp.status_code == 200
    history = resp.json()
    assert len(history) == 2
    assert {h["status"] for h in history} == {"completed"}
    assert all(h["success_count"] == 1 for h in history)


def test_completed_run_cannot_be_resumed_or_cancelled(client):
    run_id = _start(client, _clinic(), _records(1, start=6001))
    assert client.post(f"{API}/{run_id}/resume").status_code == 409
    assert client.post(f"{API}/{run_id}/cancel").status_code == 409


def test_unknown_run_is_404(client):
    resp = client.get(f"{API}/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["success"] is False
    assert client.get(f"{API}/does-not-exist/errors.csv").status_code == 404


def test_bad_requests_are_rejected(client):
    resp = client.post(API + "/", json={"clinic_id": _clinic(), "records": []})
    assert resp.status_code == 400
    resp = client.post(API + "/", json={"clinic_id": "   ", "records": _records(1)})
    assert resp.status_code == 400
    resp = client.post(API + "/", json={"clinic_id": _clinic(), "records": _records(1), "options": {"chunk_size": 0}})
    assert resp.status_code == 422
    assert resp.json()["success"] is False


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"] == "healthy"
