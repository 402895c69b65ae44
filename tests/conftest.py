"""Pytest fixtures for the import pipeline. Test doubles live in fakes.py."""
import os
import sys
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'app' package resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app  # type: ignore
from app.database import Base  # type: ignore
from app.api import deps  # type: ignore
# Model modules must be imported before Base.metadata.create_all()
from app.models.db import Member, Employer, ImportLog, AuditEntryRow  # noqa: F401
from app.models.schemas.imports import CandidateRecord
from app.services.import_service import ImportManager
from app.services.persistence import SqlAlchemyImportStore
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
from fakes import FakeImportStore, StubEnrichmentClient, make_cpf, make_cnpj  # type: ignore

# File-based SQLite: persistence runs in worker threads (asyncio.to_thread), each with its own connection.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_imports.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# The import store and audit sink resolve app.database.SessionLocal at call time,
# so rebinding the module attribute points them at the test database.
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore

@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_imports.db")
    except OSError:
        pass

@pytest.fixture(autouse=True)
def _isolate_test_state():
    """Reset the process-wide circuit breaker so registry failures never spill across tests."""
    GLOBAL_CIRCUIT_BREAKER.reset()
    yield
    GLOBAL_CIRCUIT_BREAKER.reset()

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

@pytest.fixture()
def fake_store():
    return FakeImportStore()

@pytest.fixture()
def stub_registry():
    return StubEnrichmentClient()

@pytest.fixture()
def recorded_sleeps():
    return []

@pytest.fixture()
def fake_sleep(recorded_sleeps):
    async def _sleep(seconds: float):
        recorded_sleeps.append(seconds)
    return _sleep

# ---------- Data factory helpers ----------

@pytest.fixture()
def candidate_factory():
    def _create(n: int, *, org: int = 1, name: str | None = None, **extra) -> CandidateRecord:
        return CandidateRecord(
            person_name=name if name is not None else f"Member {n:04d}",
            person_id=make_cpf(n),
            org_name=f"Employer {org}",
            org_id=make_cnpj(org),
            **extra,
        )
    return _create

# ---------- HTTP ----------

@pytest.fixture()
def import_manager():
    manager = ImportManager(
        store=SqlAlchemyImportStore(),
        enrichment=StubEnrichmentClient(),
        persist_audit=True,
    )
    app.state.import_manager = manager  # type: ignore[attr-defined]
    yield manager
    app.state.import_manager = None  # type: ignore[attr-defined]

@pytest.fixture()
def client(import_manager):
    return TestClient(app)
