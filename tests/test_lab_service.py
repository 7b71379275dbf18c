from datetime import datetime, timedelta, timezone

import pytest

from errors import Conflict, NotFound, ValidationError
from lab_service import LabService
from tenancy import TenantStore
from user_service import UserService

LAB = {"name": "Central Lab", "email": "central@example.com"}
ADMIN = {"name": "Ada", "email": "ada@example.com", "password": "secret123"}


def test_create_lab_defaults(db, audit):
    lab = LabService(TenantStore.system(db), audit).create_lab(LAB)
    assert lab["status"] == "active"
    assert lab["subscription"] == "basic"
    assert lab["settings"]["currency"] == "USD"
    assert db["lab"].count_documents({}) == 1


def test_lab_name_is_unique(db, audit, make_lab):
    make_lab(name="Central Lab")
    with pytest.raises(Conflict):
        LabService(TenantStore.system(db), audit).create_lab({"name": "Central Lab", "email": "other@example.com"})


def test_delete_lab_with_users_conflicts(db, audit, make_lab, make_user):
    lab = make_lab()
    make_user(lab)
    with pytest.raises(Conflict):
        LabService(TenantStore.system(db), audit).delete_lab(lab["_id"])
    assert db["lab"].count_documents({"_id": lab["_id"]}) == 1


def test_delete_empty_lab(db, audit, make_lab):
    lab = make_lab()
    LabService(TenantStore.system(db), audit).delete_lab(lab["_id"])
    assert db["lab"].count_documents({}) == 0


def test_create_lab_with_admin(db, audit):
    result = LabService(TenantStore.system(db), audit).create_lab_with_admin(LAB, ADMIN)
    assert result["admin"]["lab"] == result["lab"]["_id"]
    assert result["admin"]["role"] == "admin"
    assert db["user"].count_documents({"lab": result["lab"]["_id"]}) == 1


def test_create_lab_with_admin_rolls_back(db, audit, monkeypatch):
    def broken_create(self, data, lab_id=None):
        raise RuntimeError("store went away")

    monkeypatch.setattr(UserService, "create_user", broken_create)
    with pytest.raises(RuntimeError):
        LabService(TenantStore.system(db), audit).create_lab_with_admin(LAB, ADMIN)
    assert db["lab"].count_documents({}) == 0
    assert db["user"].count_documents({}) == 0


def test_create_lab_with_taken_admin_email(db, audit, make_lab, make_user):
    make_user(make_lab(), email="ada@example.com")
    labs = LabService(TenantStore.system(db), audit)
    with pytest.raises(Conflict):
        labs.create_lab_with_admin(LAB, ADMIN)
    assert db["lab"].count_documents({"name": "Central Lab"}) == 0


def test_bound_store_only_sees_own_lab(db, audit, make_lab):
    lab_a, lab_b = make_lab(), make_lab()
    labs = LabService(TenantStore(db, lab_a["_id"]), audit)
    assert labs.get_lab(lab_a["_id"])["_id"] == lab_a["_id"]
    with pytest.raises(NotFound):
        labs.get_lab(lab_b["_id"])


def test_status_and_subscription_updates(db, audit, make_lab):
    lab = make_lab()
    labs = LabService(TenantStore.system(db), audit)
    assert labs.update_lab_status(lab["_id"], "suspended")["status"] == "suspended"
    assert labs.update_subscription(lab["_id"], "premium")["subscription"] == "premium"
    assert db["systemlog"].count_documents({"category": "lab", "lab": lab["_id"]}) == 3


def test_update_settings_merges(db, audit, make_lab):
    lab = make_lab()
    updated = LabService(TenantStore.system(db), audit).update_settings(lab["_id"], {"report_header": "Hello"})
    assert updated["settings"]["report_header"] == "Hello"
    assert updated["settings"]["currency"] == "USD"


def test_subscription_limits(db, audit, make_lab, make_user):
    lab = make_lab()
    for _ in range(5):
        make_user(lab)
    usage = LabService(TenantStore.system(db), audit).check_subscription_limits(
        lab["_id"], now=datetime.now(timezone.utc)
    )
    assert usage["has_reached_user_limit"] is True
    assert usage["has_reached_report_limit"] is False
    assert usage["current_usage"] == {"users": 5, "reports_this_month": 0}
    assert usage["limits"] == {"users": 5, "reports_per_month": 100}


def test_enterprise_is_unlimited(db, audit, make_lab, make_user):
    lab = make_lab(subscription="enterprise")
    make_user(lab)
    usage = LabService(TenantStore.system(db), audit).check_subscription_limits(lab["_id"])
    assert usage["has_reached_user_limit"] is False
    assert usage["limits"]["users"] is None


def test_lab_stats(db, audit, make_lab, make_user):
    lab = make_lab()
    make_user(lab, role="admin")
    make_user(lab)
    make_user(lab)
    stats = LabService(TenantStore.system(db), audit).lab_stats(lab["_id"])
    assert stats["users"]["total"] == 3
    assert stats["users"]["by_role"] == {"admin": 1, "technician": 2}
    assert stats["reports"]["total"] == 0


def test_admin_email_must_be_text(db, audit):
    with pytest.raises(ValidationError):
        LabService(TenantStore.system(db), audit).create_lab_with_admin(LAB, dict(ADMIN, email=5))
    assert db["lab"].count_documents({}) == 0


def test_lab_performance(db, audit, make_lab, make_user, make_patient, report_service_for):
    lab = make_lab()
    admin = make_user(lab, role="admin")
    fast, idle = make_user(lab, name="Fast Tech"), make_user(lab, name="Idle Tech")
    patient = make_patient(admin)
    managers = report_service_for(admin)
    done = managers.create_report({"patient": str(patient["_id"]), "assigned_to": str(fast["_id"]), "test_type": "CBC"})
    managers.create_report({"patient": str(patient["_id"]), "assigned_to": str(idle["_id"]), "test_type": "CBC"})
    report_service_for(fast).update_report(done["_id"], {"status": "completed"})
    managers.update_report(done["_id"], {"status": "verified"})
    managers.update_report(done["_id"], {"status": "delivered"})

    performance = LabService(TenantStore(db, lab["_id"]), audit).lab_performance(lab["_id"])
    assert performance["report_metrics"]["total_reports"] == 2
    assert performance["report_metrics"]["delivered_reports"] == 1
    assert performance["report_metrics"]["avg_turnaround_time"] >= 0

    first, second = performance["technician_performance"]
    assert (first["name"], first["reports_completed"], first["reports_assigned"]) == ("Fast Tech", 1, 1)
    assert (second["name"], second["reports_completed"]) == ("Idle Tech", 0)
    assert second["avg_completion_time"] == 0


def test_lab_performance_rejects_inverted_period(db, audit, make_lab):
    lab = make_lab()
    now = datetime.now(timezone.utc)
    with pytest.raises(ValidationError):
        LabService(TenantStore.system(db), audit).lab_performance(lab["_id"], start_date=now, end_date=now - timedelta(days=1))
