from unittest.mock import MagicMock

import pytest
from pymongo.errors import PyMongoError

from audit import AuditLogger
from errors import Conflict, Forbidden, NotFound, ValidationError

RESULT = {"parameter": "Hemoglobin", "value": "13.5", "unit": "g/dL", "interpretation": "normal"}


@pytest.fixture
def lab(make_lab):
    return make_lab()


@pytest.fixture
def admin(lab, make_user):
    return make_user(lab, role="admin")


@pytest.fixture
def tech(lab, make_user):
    return make_user(lab)


@pytest.fixture
def other_tech(lab, make_user):
    return make_user(lab)


@pytest.fixture
def report(admin, tech, make_patient, report_service_for):
    patient = make_patient(admin)
    return report_service_for(admin).create_report({
        "patient": str(patient["_id"]),
        "assigned_to": str(tech["_id"]),
        "test_type": "CBC",
        "results": [RESULT],
    })


def test_create_report_defaults(report, tech, admin):
    assert report["status"] == "pending"
    assert report["version"] == 1
    assert report["assigned_to"] == tech["_id"]
    assert report["created_by"] == admin["_id"]


def test_technician_defaults_to_self(tech, make_patient, report_service_for):
    patient = make_patient(tech)
    created = report_service_for(tech).create_report({"patient": str(patient["_id"]), "test_type": "Lipid"})
    assert created["assigned_to"] == tech["_id"]


def test_technician_cannot_assign_others(tech, other_tech, make_patient, report_service_for):
    patient = make_patient(tech)
    with pytest.raises(Forbidden):
        report_service_for(tech).create_report({
            "patient": str(patient["_id"]), "assigned_to": str(other_tech["_id"]), "test_type": "Lipid",
        })


def test_patient_must_be_in_tenant(make_lab, make_user, make_patient, admin, tech, report_service_for):
    outsider = make_patient(make_user(make_lab()))
    with pytest.raises(NotFound):
        report_service_for(admin).create_report({
            "patient": str(outsider["_id"]), "assigned_to": str(tech["_id"]), "test_type": "CBC",
        })


def test_completed_then_verified_sets_timestamps(db, report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    verified = report_service_for(admin).update_report(report["_id"], {"status": "verified"})

    assert verified["status"] == "verified"
    assert verified["completed_at"] is not None
    assert verified["verified_at"] is not None
    assert verified["verified_by"] == admin["_id"]
    assert verified["version"] == 3


def test_pending_to_verified_is_rejected(db, report, admin, report_service_for):
    with pytest.raises(Conflict):
        report_service_for(admin).update_report(report["_id"], {"status": "verified"})
    assert db["report"].find_one({"_id": report["_id"]})["status"] == "pending"


def test_technician_cannot_verify(report, tech, report_service_for):
    service = report_service_for(tech)
    service.update_report(report["_id"], {"status": "completed"})
    with pytest.raises(Forbidden):
        service.update_report(report["_id"], {"status": "verified"})


def test_verify_report_records_notes(report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    verified = report_service_for(admin).verify_report(report["_id"], notes="Looks right")
    assert verified["status"] == "verified"
    assert verified["comments"][-1]["text"] == "Looks right"


def test_technician_access_is_limited_to_assigned(report, tech, other_tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"priority": "urgent"})
    with pytest.raises(Forbidden):
        report_service_for(other_tech).update_report(report["_id"], {"priority": "emergency"})
    with pytest.raises(Forbidden):
        report_service_for(other_tech).get_report(report["_id"])
    updated = report_service_for(admin).update_report(report["_id"], {"priority": "emergency"})
    assert updated["priority"] == "emergency"


def test_technician_lists_only_assigned(report, tech, other_tech, admin, report_service_for):
    assert report_service_for(tech).list_reports()["total"] == 1
    assert report_service_for(other_tech).list_reports()["total"] == 0
    listed = report_service_for(admin).list_reports()
    assert listed["total"] == 1
    assert listed["reports"][0]["patient"]["name"] == "Jane Doe"


def test_delete_only_while_pending(db, report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "in_progress"})
    with pytest.raises(Conflict):
        report_service_for(admin).delete_report(report["_id"])
    row = db["report"].find_one({"_id": report["_id"]})
    assert row["status"] == "in_progress"


def test_delete_pending_report(db, report, admin, report_service_for):
    report_service_for(admin).delete_report(report["_id"])
    assert db["report"].count_documents({}) == 0


def test_comments_are_appended(report, tech, admin, report_service_for):
    report_service_for(tech).add_comment(report["_id"], "first")
    updated = report_service_for(admin).add_comment(report["_id"], "second")
    assert [c["text"] for c in updated["comments"]] == ["first", "second"]
    assert updated["comments"][0]["user"] == tech["_id"]
    with pytest.raises(ValidationError):
        report_service_for(admin).add_comment(report["_id"], "   ")


def test_stale_version_conflicts(report, tech, admin, report_service_for):
    report_service_for(admin).update_report(report["_id"], {"priority": "urgent", "version": 1})
    with pytest.raises(Conflict):
        report_service_for(tech).update_report(report["_id"], {"priority": "routine", "version": 1})


def test_unknown_fields_are_rejected(report, admin, report_service_for):
    with pytest.raises(ValidationError):
        report_service_for(admin).update_report(report["_id"], {"lab": "elsewhere"})


def test_assign_report(report, other_tech, tech, admin, report_service_for):
    assigned = report_service_for(admin).assign_report(report["_id"], str(other_tech["_id"]))
    assert assigned["assigned_to"] == other_tech["_id"]
    with pytest.raises(Forbidden):
        report_service_for(other_tech).assign_report(report["_id"], str(tech["_id"]))


def test_other_tenant_report_is_not_found(make_lab, make_user, report, report_service_for):
    outsider = make_user(make_lab(), role="admin")
    with pytest.raises(NotFound):
        report_service_for(outsider).get_report(report["_id"])


def test_audit_failure_does_not_abort(db, admin, tech, make_patient, report_service_for):
    broken = AuditLogger(db)
    broken.collection = MagicMock()
    broken.collection.insert_one.side_effect = PyMongoError("log store down")
    patient = make_patient(admin)

    created = report_service_for(admin, audit_logger=broken).create_report({
        "patient": str(patient["_id"]), "assigned_to": str(tech["_id"]), "test_type": "CBC",
    })
    assert db["report"].count_documents({"_id": created["_id"]}) == 1
    broken.collection.insert_one.assert_called_once()


def test_report_stats(report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    stats = report_service_for(admin).report_stats()
    assert stats["total_reports"] == 1
    assert stats["completed_reports"] == 1
    assert stats["pending_reports"] == 0
    assert stats["avg_turnaround_time"] >= 0


def test_verified_then_delivered_stamps_delivery(report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    managers = report_service_for(admin)
    managers.update_report(report["_id"], {"status": "verified"})
    delivered = managers.update_report(report["_id"], {"status": "delivered"})

    assert delivered["status"] == "delivered"
    assert delivered["delivered_at"] is not None
    with pytest.raises(Conflict):
        managers.update_report(report["_id"], {"status": "completed"})


def test_technician_cannot_deliver(db, report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    report_service_for(admin).update_report(report["_id"], {"status": "verified"})
    with pytest.raises(Forbidden):
        report_service_for(tech).update_report(report["_id"], {"status": "delivered"})
    assert db["report"].find_one({"_id": report["_id"]})["status"] == "verified"


def test_completed_to_delivered_is_rejected(db, report, tech, admin, report_service_for):
    report_service_for(tech).update_report(report["_id"], {"status": "completed"})
    with pytest.raises(Conflict):
        report_service_for(admin).update_report(report["_id"], {"status": "delivered"})
    row = db["report"].find_one({"_id": report["_id"]})
    assert row["status"] == "completed"
    assert row.get("delivered_at") is None


@pytest.mark.parametrize("text", ["   ", "", 42])
def test_blank_comment_rejected_on_update(db, report, tech, report_service_for, text):
    with pytest.raises(ValidationError):
        report_service_for(tech).update_report(report["_id"], {"comment": text})
    assert db["report"].find_one({"_id": report["_id"]})["comments"] == []


def test_comment_text_is_trimmed(report, tech, report_service_for):
    updated = report_service_for(tech).update_report(report["_id"], {"comment": "  spun twice  "})
    assert updated["comments"][-1]["text"] == "spun twice"
