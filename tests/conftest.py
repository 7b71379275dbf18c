import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from audit import AuditLogger
from auth import identity_from_user
from config import Settings, get_settings
from database import ensure_indexes, get_db
from lab_service import LabService
from main import app
from patient_service import PatientService
from report_service import ReportService
from security import create_access_token
from tenancy import TenantStore
from user_service import UserService

PASSWORD = "secret123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["lims_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def audit(db):
    return AuditLogger(db)


@pytest.fixture
def system_store(db):
    return TenantStore.system(db)


@pytest.fixture
def settings():
    s = Settings()
    s.SECRET_KEY = "test-secret"
    s.ENVIRONMENT = "development"
    s.MOCK_AUTH = False
    return s


@pytest.fixture
def make_lab(db, audit):
    counter = {"n": 0}

    def _make(name=None, subscription="basic"):
        counter["n"] += 1
        name = name or f"Lab {counter['n']}"
        return LabService(TenantStore.system(db), audit).create_lab({
            "name": name,
            "email": f"lab{counter['n']}@example.com",
            "subscription": subscription,
        })

    return _make


@pytest.fixture
def make_user(db, audit):
    def _make(lab, role="technician", email=None, password=PASSWORD, name="Test User"):
        email = email or f"{role}-{ObjectId()}@example.com"
        lab_id = lab["_id"] if lab else None
        return UserService(TenantStore.system(db), audit).create_user(
            {"name": name, "email": email, "password": password, "role": role}, lab_id
        )

    return _make


@pytest.fixture
def make_patient(db, audit):
    def _make(user, name="Jane Doe"):
        store = TenantStore(db, user["lab"])
        return PatientService(store, identity_from_user(user), audit).create_patient({
            "name": name,
            "age": 42,
            "gender": "female",
            "contact": {"phone": "5551234567"},
        })

    return _make


@pytest.fixture
def report_service_for(db, audit):
    def _make(user, lab_id=None, audit_logger=None):
        caller = identity_from_user(user)
        lab_id = lab_id if lab_id is not None else caller.lab
        return ReportService(TenantStore(db, lab_id), caller, audit_logger or audit)

    return _make


@pytest.fixture
def client(db, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header(settings):
    def _header(user):
        token = create_access_token({"sub": str(user["_id"]), "role": user["role"]}, settings)
        return {"Authorization": f"Bearer {token}"}

    return _header
