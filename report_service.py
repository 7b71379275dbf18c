"""
Report lifecycle.

Reports move forward through ``pending -> in_progress -> completed ->
verified -> delivered``. Verification needs a completed report, delivery
needs a verified one. Every write is conditional on the version that was
read, so two callers updating the same report cannot silently overwrite
each other.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from audit import AuditLogger
from database import to_object_id, to_store_time
from errors import Conflict, Forbidden, NotFound, ValidationError
from schemas import (
    REPORT_STATUSES,
    Attachment,
    CallerIdentity,
    Comment,
    Report,
    build_document,
    utcnow,
)
from tenancy import TenantStore

ALLOWED_TRANSITIONS = {
    "pending": ("in_progress", "completed"),
    "in_progress": ("completed",),
    "completed": ("verified",),
    "verified": ("delivered",),
    "delivered": (),
}

# status -> timestamp field stamped on entering it
STATUS_TIMESTAMPS = {
    "completed": "completed_at",
    "verified": "verified_at",
    "delivered": "delivered_at",
}

EDITABLE_FIELDS = ("test_type", "category", "priority", "results", "delivery_method", "status", "comment", "version")
CREATE_FIELDS = ("patient", "assigned_to", "test_type", "category", "priority", "results", "delivery_method")
MANAGERS = ("admin", "super_admin")


def check_transition(current: str, new: str) -> None:
    if new not in REPORT_STATUSES:
        raise ValidationError(f"Unknown report status: {new}")
    if new not in ALLOWED_TRANSITIONS[current]:
        raise Conflict(f"Cannot move report from {current} to {new}")


class ReportService:
    def __init__(self, store: TenantStore, caller: CallerIdentity, audit: AuditLogger):
        self.store = store
        self.caller = caller
        self.audit = audit

    @property
    def is_technician(self) -> bool:
        return self.caller.role == "technician"

    def _load(self, report_id) -> Dict[str, Any]:
        report = self.store.reports.find_one({"_id": to_object_id(report_id, "Report")})
        if not report:
            raise NotFound("Report not found")
        return report

    def _check_access(self, report: Dict[str, Any], action: str = "access") -> None:
        if self.is_technician and report["assigned_to"] != self.caller.id:
            raise Forbidden(f"Not authorized to {action} this report")

    def _technician(self, user_id) -> Dict[str, Any]:
        technician = self.store.users.find_one({
            "_id": to_object_id(user_id, "Technician", from_path=False),
            "role": "technician",
            "status": "active",
        })
        if not technician:
            raise NotFound("Technician not found")
        return technician

    def _write(self, report: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        update.setdefault("$set", {})["updated_at"] = utcnow()
        update["$inc"] = {"version": 1}
        updated = self.store.reports.find_one_and_update(
            {"_id": report["_id"], "version": report.get("version", 1)}, update
        )
        if updated is None:
            raise Conflict("Report was modified by another request, reload and retry")
        return updated

    def _populate(self, reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        patient_ids = list({r["patient"] for r in reports})
        user_ids = list({r[k] for r in reports for k in ("assigned_to", "created_by", "verified_by") if r.get(k)})
        patients = {
            p["_id"]: p
            for p in self.store.patients.find(
                {"_id": {"$in": patient_ids}}, {"name": 1, "age": 1, "gender": 1, "patient_id": 1}
            )
        }
        users = {u["_id"]: u for u in self.store.users.find({"_id": {"$in": user_ids}}, {"name": 1})}
        for r in reports:
            r["patient"] = patients.get(r["patient"], {"_id": r["patient"]})
            for key in ("assigned_to", "created_by", "verified_by"):
                if r.get(key):
                    r[key] = users.get(r[key], {"_id": r[key]})
        return reports

    def create_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.store.lab_id is None:
            raise ValidationError("A lab must be selected to create reports")
        fields = {k: v for k, v in data.items() if k in CREATE_FIELDS}

        patient = self.store.patients.find_one(
            {"_id": to_object_id(fields.get("patient"), "Patient", from_path=False)}, {"_id": 1}
        )
        if not patient:
            raise NotFound("Patient not found")

        assignee = fields.get("assigned_to")
        if assignee is None and self.is_technician:
            assignee = self.caller.id
        if assignee is None:
            raise ValidationError("Report must be assigned to a technician")
        technician = self._technician(assignee)
        if self.is_technician and technician["_id"] != self.caller.id:
            raise Forbidden("Technicians can only create reports assigned to themselves")

        doc = build_document(Report, {
            **fields,
            "lab": self.store.lab_id,
            "patient": patient["_id"],
            "assigned_to": technician["_id"],
            "created_by": self.caller.id,
            "status": "pending",
            "version": 1,
        })
        self.store.reports.insert_one(doc)
        self.audit.report_event("created", doc["_id"], {"test_type": doc["test_type"]}, lab_id=doc["lab"])
        return doc

    def list_reports(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        filters = filters or {}
        query: Dict[str, Any] = {k: filters[k] for k in ("status", "priority", "test_type") if filters.get(k)}
        if filters.get("patient"):
            query["patient"] = to_object_id(filters["patient"], "Patient", from_path=False)
        if filters.get("start_date") or filters.get("end_date"):
            query["report_date"] = {}
            if filters.get("start_date"):
                query["report_date"]["$gte"] = to_store_time(filters["start_date"])
            if filters.get("end_date"):
                query["report_date"]["$lte"] = to_store_time(filters["end_date"])
        if self.is_technician:
            query["assigned_to"] = self.caller.id

        total = self.store.reports.count(query)
        reports = self.store.reports.find(query, sort=[("report_date", -1)], skip=(page - 1) * limit, limit=limit)
        return {
            "reports": self._populate(reports),
            "page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "total": total,
        }

    def get_report(self, report_id) -> Dict[str, Any]:
        report = self._load(report_id)
        self._check_access(report)
        return self._populate([report])[0]

    def update_report(self, report_id, data: Dict[str, Any]) -> Dict[str, Any]:
        unknown = sorted(k for k in data if k not in EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Field(s) cannot be updated: {', '.join(unknown)}")

        comment = data.get("comment")
        if comment is not None:
            if not isinstance(comment, str) or not comment.strip():
                raise ValidationError("Please provide comment")
            comment = comment.strip()

        report = self._load(report_id)
        self._check_access(report, "update")
        expected = data.get("version")
        if expected is not None and expected != report.get("version", 1):
            raise Conflict("Report was modified by another request, reload and retry")

        now = utcnow()
        changes = {k: v for k, v in data.items() if k not in ("comment", "version", "status") and v is not None}
        new_status = data.get("status")
        if new_status is not None and new_status != report["status"]:
            check_transition(report["status"], new_status)
            if new_status in ("verified", "delivered") and self.caller.role not in MANAGERS:
                raise Forbidden(f"Only an admin can mark a report {new_status}")
            changes["status"] = new_status
            if new_status in STATUS_TIMESTAMPS:
                changes[STATUS_TIMESTAMPS[new_status]] = now
            if new_status == "verified":
                changes["verified_by"] = self.caller.id

        update: Dict[str, Any] = {}
        if changes:
            merged = build_document(Report, {**report, **changes})
            update["$set"] = {k: merged[k] for k in changes}
        if comment:
            entry = build_document(Comment, {"user": self.caller.id, "text": comment, "timestamp": now})
            update["$push"] = {"comments": entry}
        if not update:
            raise ValidationError("Nothing to update")

        updated = self._write(report, update)
        self.audit.report_event(
            "updated",
            report["_id"],
            {"status": updated["status"], "updated_fields": sorted(k for k in data if k != "version")},
            lab_id=report["lab"],
        )
        return updated

    def assign_report(self, report_id, technician_id) -> Dict[str, Any]:
        report = self._load(report_id)
        if self.caller.role not in MANAGERS:
            raise Forbidden("Only an admin can assign reports")
        if report["status"] in ("verified", "delivered"):
            raise Conflict(f"Cannot reassign a {report['status']} report")
        technician = self._technician(technician_id)
        updated = self._write(report, {"$set": {"assigned_to": technician["_id"], "assigned_at": utcnow()}})
        self.audit.report_event(
            "assigned", report["_id"], {"assigned_to": str(technician["_id"])}, lab_id=report["lab"]
        )
        return updated

    def verify_report(self, report_id, notes: Optional[str] = None, version: Optional[int] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": "verified", "version": version}
        if notes and notes.strip():
            data["comment"] = notes
        return self.update_report(report_id, data)

    def add_comment(self, report_id, text: str) -> Dict[str, Any]:
        return self.update_report(report_id, {"comment": text})

    def add_attachment(self, report_id, name: str, url: str, type: Optional[str] = None) -> Dict[str, Any]:
        report = self._load(report_id)
        self._check_access(report, "update")
        attachment = build_document(Attachment, {"name": name, "url": url, "type": type})
        updated = self._write(report, {"$push": {"attachments": attachment}})
        self.audit.report_event("attachment added", report["_id"], {"name": name}, lab_id=report["lab"])
        return updated

    def delete_report(self, report_id) -> Dict[str, str]:
        report = self._load(report_id)
        self._check_access(report, "delete")
        if report["status"] != "pending":
            raise Conflict("Cannot delete non-pending reports")
        if not self.store.reports.delete_one({"_id": report["_id"], "status": "pending"}):
            raise Conflict("Cannot delete non-pending reports")
        self.audit.report_event("deleted", report["_id"], {"status": report["status"]}, lab_id=report["lab"])
        return {"message": "Report deleted successfully"}

    def report_stats(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> Dict[str, Any]:
        end_date = end_date or utcnow()
        start_date = start_date or end_date - timedelta(days=30)
        query: Dict[str, Any] = {
            "report_date": {"$gte": to_store_time(start_date), "$lte": to_store_time(end_date)},
        }
        if self.is_technician:
            query["assigned_to"] = self.caller.id
        reports = self.store.reports.find(query, {"status": 1, "report_date": 1, "completed_at": 1})

        by_status = {status: 0 for status in REPORT_STATUSES}
        turnaround: List[float] = []
        for r in reports:
            by_status[r["status"]] = by_status.get(r["status"], 0) + 1
            if r.get("completed_at") and r.get("report_date"):
                turnaround.append((r["completed_at"] - r["report_date"]).total_seconds() / 3600)

        return {
            "total_reports": len(reports),
            "pending_reports": by_status["pending"],
            "completed_reports": by_status["completed"],
            "verified_reports": by_status["verified"],
            "by_status": by_status,
            "avg_turnaround_time": round(sum(turnaround) / len(turnaround), 2) if turnaround else 0,
        }
