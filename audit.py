"""
Audit trail written to the ``systemlog`` collection.

An ``AuditLogger`` is built per request with the acting user, lab and
client details, and handed to the domain services. Writing an audit row
must never break the operation being audited: failures go to the loguru
channel instead.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from loguru import logger
from pydantic import ValidationError as SchemaError
from pymongo.errors import PyMongoError

from database import to_store_time
from schemas import SystemLog, utcnow


class AuditLogger:
    def __init__(
        self,
        db,
        user_id: Optional[ObjectId] = None,
        lab_id: Optional[ObjectId] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.collection = db["systemlog"]
        self.user_id = user_id
        self.lab_id = lab_id
        self.ip = ip
        self.user_agent = user_agent

    def log_event(
        self,
        level: str,
        category: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        lab_id: Optional[ObjectId] = None,
    ) -> Optional[ObjectId]:
        try:
            entry = SystemLog(
                level=level,
                category=category,
                message=message,
                details=details or {},
                user=self.user_id,
                lab=lab_id or self.lab_id,
                ip=self.ip,
                user_agent=self.user_agent,
            )
            res = self.collection.insert_one(entry.model_dump())
        except (PyMongoError, SchemaError) as e:
            logger.error("Error logging system event {}: {} ({})", category, message, e)
            return None
        if level == "critical":
            logger.critical("{} - {}", message, details)
        return res.inserted_id

    def auth_event(self, action: str, user_id: Optional[ObjectId], success: bool, details=None, lab_id=None):
        details = dict(details or {}, user_id=str(user_id) if user_id else None, success=success)
        return self.log_event(
            "info" if success else "warning",
            "auth",
            f"Authentication {action} - {'success' if success else 'failed'}",
            details,
            lab_id=lab_id,
        )

    def lab_event(self, action: str, lab_id: ObjectId, details=None):
        return self.log_event("info", "lab", f"Lab {action}", dict(details or {}, lab_id=str(lab_id)), lab_id=lab_id)

    def user_event(self, action: str, target_user_id: ObjectId, details=None, lab_id=None):
        details = dict(details or {}, target_user_id=str(target_user_id))
        return self.log_event("info", "user", f"User {action}", details, lab_id=lab_id)

    def report_event(self, action: str, report_id: ObjectId, details=None, lab_id=None):
        details = dict(details or {}, report_id=str(report_id))
        return self.log_event("info", "report", f"Report {action}", details, lab_id=lab_id)


def list_logs(store, filters: Dict[str, Any], page: int = 1, limit: int = 10) -> Dict[str, Any]:
    """Logs visible through the tenant store, newest first."""
    query: Dict[str, Any] = {}
    for key in ("level", "category", "user"):
        if filters.get(key):
            query[key] = filters[key]
    if filters.get("start_date") or filters.get("end_date"):
        query["timestamp"] = {}
        if filters.get("start_date"):
            query["timestamp"]["$gte"] = to_store_time(filters["start_date"])
        if filters.get("end_date"):
            query["timestamp"]["$lte"] = to_store_time(filters["end_date"])

    skip = (page - 1) * limit
    logs = store.logs.find(query, sort=[("timestamp", -1)], skip=skip, limit=limit)
    total = store.logs.count(query)
    return {
        "logs": logs,
        "page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total": total,
    }


def clean_old_logs(db, days_to_keep: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    cutoff = to_store_time((now or utcnow()) - timedelta(days=days_to_keep))
    result = db["systemlog"].delete_many({"timestamp": {"$lt": cutoff}, "level": {"$ne": "critical"}})
    logger.info("Pruned {} system log entries older than {} days", result.deleted_count, days_to_keep)
    return {
        "message": f"Cleaned logs older than {days_to_keep} days",
        "deleted_count": result.deleted_count,
    }
