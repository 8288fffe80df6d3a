"""
Fixtures compartidas para los tests.

La base de datos es un SQLite temporal; las variables de entorno se fijan
antes de importar la app porque Settings se instancia al importar.
"""
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="caja-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"

import pytest
from uuid import uuid4
from fastapi.testclient import TestClient

from app.database.database import Base, SessionLocal, sync_engine
from app.main import app
from app.modules.auth.utils import create_access_token
from app.modules.cash.audit import AuditSink, get_audit_sink
from app.modules.cash.services import CashSessionService
from app.modules.cash.queries import CashQueryService
from app.modules.cash.stores import SqlMovementStore, SqlSessionStore


class RecordingAuditSink(AuditSink):
    """Guarda los eventos en memoria para inspeccionarlos en los tests"""

    def __init__(self):
        self.events = []

    def _dispatch(self, event_type, organization_id, actor_id, payload):
        self.events.append((event_type, organization_id, actor_id, payload))


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=sync_engine)
    yield
    Base.metadata.drop_all(bind=sync_engine)


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def service(db_session, audit_sink):
    return CashSessionService(SqlSessionStore(db_session), SqlMovementStore(db_session), audit_sink)


@pytest.fixture
def queries(db_session):
    return CashQueryService(SqlSessionStore(db_session), SqlMovementStore(db_session))


@pytest.fixture
def client(audit_sink):
    app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(org_id, user_id):
    """Headers de un usuario con el rol indicado en la organización de prueba"""
    def _headers(role: str = "cashier", organization_id=None, sub=None):
        token = create_access_token({"sub": str(sub or user_id), "role": role})
        return {
            "Authorization": f"Bearer {token}",
            "X-Company-ID": str(organization_id or org_id),
        }
    return _headers
