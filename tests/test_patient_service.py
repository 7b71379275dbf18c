import re

import pytest

from auth import identity_from_user
from errors import Conflict, NotFound, ValidationError
from patient_service import PatientService
from report_service import ReportService
from tenancy import TenantStore


@pytest.fixture
def tech(make_lab, make_user):
    return make_user(make_lab())


def service_for(db, audit, user):
    return PatientService(TenantStore(db, user["lab"]), identity_from_user(user), audit)


def test_patient_id_format(tech, make_patient):
    patient = make_patient(tech)
    assert re.fullmatch(r"P\d{8}", patient["patient_id"])
    assert patient["lab"] == tech["lab"]
    assert patient["registered_by"] == tech["_id"]


def test_phone_must_have_ten_digits(db, audit, tech):
    with pytest.raises(ValidationError):
        service_for(db, audit, tech).create_patient({
            "name": "Short Phone", "age": 30, "gender": "male", "contact": {"phone": "12345"},
        })


def test_patient_id_collision_is_retried(db, audit, tech, make_patient, monkeypatch):
    first = make_patient(tech)
    ids = iter([first["patient_id"], "P99990001"])
    monkeypatch.setattr("patient_service.generate_patient_id", lambda: next(ids))

    second = service_for(db, audit, tech).create_patient({
        "name": "Second", "age": 30, "gender": "male", "contact": {"phone": "5550000000"},
    })
    assert second["patient_id"] == "P99990001"


def test_update_patient(db, audit, tech, make_patient):
    patient = make_patient(tech)
    updated = service_for(db, audit, tech).update_patient(patient["_id"], {"age": 43, "blood_group": "O+"})
    assert updated["age"] == 43
    assert updated["blood_group"] == "O+"
    with pytest.raises(ValidationError):
        service_for(db, audit, tech).update_patient(patient["_id"], {"lab": "elsewhere"})


def test_search_patients(db, audit, tech, make_patient):
    make_patient(tech, name="Jane Doe")
    make_patient(tech, name="John Roe")
    service = service_for(db, audit, tech)
    assert [p["name"] for p in service.search_patients("jane")] == ["Jane Doe"]
    assert len(service.search_patients("5551234567")) == 2
    assert service.search_patients("(") == []
    assert service.search_patients("  ") == []


def test_other_tenant_patient_is_not_found(db, audit, tech, make_lab, make_user, make_patient):
    patient = make_patient(tech)
    outsider = make_user(make_lab())
    with pytest.raises(NotFound):
        service_for(db, audit, outsider).get_patient(patient["_id"])


def test_patient_with_reports_cannot_be_deleted(db, audit, tech, make_patient):
    patient = make_patient(tech)
    ReportService(TenantStore(db, tech["lab"]), identity_from_user(tech), audit).create_report(
        {"patient": str(patient["_id"]), "test_type": "CBC"}
    )
    with pytest.raises(Conflict):
        service_for(db, audit, tech).delete_patient(patient["_id"])


def test_delete_patient(db, audit, tech, make_patient):
    patient = make_patient(tech)
    service_for(db, audit, tech).delete_patient(patient["_id"])
    assert db["patient"].count_documents({}) == 0


def test_list_patients_pages(db, audit, tech, make_patient):
    for i in range(3):
        make_patient(tech, name=f"Patient {i}")
    page = service_for(db, audit, tech).list_patients(page=2, limit=2)
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["patients"]) == 1
