from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from bson import ObjectId
from pymongo.errors import PyMongoError

from audit import AuditLogger, clean_old_logs, list_logs
from tenancy import TenantStore


def test_log_event_records_context(db):
    user_id, lab_id = ObjectId(), ObjectId()
    logger = AuditLogger(db, user_id=user_id, lab_id=lab_id, ip="10.0.0.1", user_agent="pytest")
    entry_id = logger.log_event("warning", "system", "Disk nearly full", {"free": "5%"})

    entry = db["systemlog"].find_one({"_id": entry_id})
    assert entry["user"] == user_id
    assert entry["lab"] == lab_id
    assert entry["ip"] == "10.0.0.1"
    assert entry["details"] == {"free": "5%"}


def test_log_failure_is_swallowed(db):
    logger = AuditLogger(db)
    logger.collection = MagicMock()
    logger.collection.insert_one.side_effect = PyMongoError("down")
    assert logger.log_event("info", "system", "ignored") is None


def test_invalid_entry_is_swallowed(db):
    assert AuditLogger(db).log_event("chatty", "system", "bad level") is None
    assert db["systemlog"].count_documents({}) == 0


def test_auth_event_levels(db):
    logger = AuditLogger(db)
    logger.auth_event("login", None, False, {"email": "x@example.com"})
    entry = db["systemlog"].find_one()
    assert entry["level"] == "warning"
    assert entry["message"] == "Authentication login - failed"
    assert entry["details"]["success"] is False


def test_list_logs_is_tenant_scoped(db):
    lab_a, lab_b = ObjectId(), ObjectId()
    AuditLogger(db, lab_id=lab_a).log_event("info", "system", "a")
    AuditLogger(db, lab_id=lab_b).log_event("info", "system", "b")
    AuditLogger(db, lab_id=lab_b).log_event("error", "report", "c")

    scoped = list_logs(TenantStore(db, lab_b), {"level": "error"})
    assert [e["message"] for e in scoped["logs"]] == ["c"]
    assert list_logs(TenantStore.system(db), {})["total"] == 3


def test_clean_old_logs_keeps_critical(db):
    now = datetime.now(timezone.utc)
    old = (now - timedelta(days=90)).replace(tzinfo=None)
    db["systemlog"].insert_many([
        {"level": "info", "category": "system", "message": "old", "timestamp": old},
        {"level": "critical", "category": "system", "message": "old critical", "timestamp": old},
        {"level": "info", "category": "system", "message": "recent", "timestamp": now.replace(tzinfo=None)},
    ])

    result = clean_old_logs(db, days_to_keep=30, now=now)
    assert result["deleted_count"] == 1
    assert sorted(e["message"] for e in db["systemlog"].find()) == ["old critical", "recent"]
