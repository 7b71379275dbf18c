import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from audit import AuditLogger
from database import to_object_id, to_store_time
from errors import Conflict, NotFound, ValidationError
from schemas import Lab, REPORT_STATUSES, ROLES, build_document, utcnow
from tenancy import TenantStore
from user_service import UserService, normalize_email

# None means unlimited
SUBSCRIPTION_LIMITS: Dict[str, Dict[str, Optional[int]]] = {
    "basic": {"users": 5, "reports_per_month": 100},
    "premium": {"users": 20, "reports_per_month": 500},
    "enterprise": {"users": None, "reports_per_month": None},
}

LAB_FIELDS = ("name", "address", "contact", "email", "license_number", "status", "subscription", "settings")


def start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def _average(values) -> float:
    return round(sum(values) / len(values), 2) if values else 0


class LabService:
    def __init__(self, store: TenantStore, audit: AuditLogger):
        self.store = store
        self.audit = audit

    def _load(self, lab_id) -> Dict[str, Any]:
        lab_id = to_object_id(lab_id, "Lab")
        # a tenant-bound caller only ever sees its own lab
        if self.store.lab_id is not None and self.store.lab_id != lab_id:
            raise NotFound("Lab not found")
        lab = self.store.labs.find_one({"_id": lab_id})
        if not lab:
            raise NotFound("Lab not found")
        return lab

    def _check_unique(self, doc: Dict[str, Any], exclude=None) -> None:
        for field in ("name", "email"):
            query: Dict[str, Any] = {field: doc[field]}
            if exclude is not None:
                query["_id"] = {"$ne": exclude}
            if self.store.labs.find_one(query, {"_id": 1}):
                raise Conflict(f"Lab with this {field} already exists")

    def _prepare(self, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: v for k, v in data.items() if k in LAB_FIELDS and v is not None}
        if isinstance(fields.get("email"), str):
            fields["email"] = fields["email"].strip().lower()
        doc = build_document(Lab, fields)
        self._check_unique(doc)
        return doc

    def _insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self.store.labs.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Lab with this name or email already exists")
        doc["_id"] = res.inserted_id
        return doc

    def create_lab(self, data: Dict[str, Any]) -> Dict[str, Any]:
        lab = self._insert(self._prepare(data))
        self.audit.lab_event("created", lab["_id"], {"name": lab["name"]})
        return lab

    def create_lab_with_admin(self, lab_data: Dict[str, Any], admin_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a lab and its first admin. Either both exist afterwards or neither does."""
        lab_doc = self._prepare(lab_data)
        admin_data = dict(admin_data, role="admin")
        admin_email = normalize_email(admin_data.get("email"))
        if UserService(self.store, self.audit).email_taken(admin_email):
            raise Conflict("User with this email already exists")

        lab = self._insert(lab_doc)
        try:
            admin = UserService(self.store.for_lab(lab["_id"]), self.audit).create_user(admin_data, lab["_id"])
        except Exception:
            # compensate: nothing of the half-built tenant may survive
            self.store.db["user"].delete_many({"lab": lab["_id"]})
            self.store.labs.delete_one({"_id": lab["_id"]})
            raise

        self.audit.lab_event("created with admin", lab["_id"], {"name": lab["name"], "admin_id": str(admin["_id"])})
        return {"lab": lab, "admin": admin}

    def _stats(self, lab_id) -> Dict[str, int]:
        users = self.store.for_lab(lab_id).users
        return {
            "total_users": users.count(),
            "admins": users.count({"role": "admin"}),
            "technicians": users.count({"role": "technician"}),
        }

    def list_labs(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        query = {k: v for k, v in (filters or {}).items() if k in ("status", "subscription") and v}
        if self.store.lab_id is not None:
            query["_id"] = self.store.lab_id
        total = self.store.labs.count_documents(query)
        cursor = self.store.labs.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        labs = []
        for lab in cursor:
            lab["stats"] = self._stats(lab["_id"])
            labs.append(lab)
        return {
            "labs": labs,
            "page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "total": total,
        }

    def get_lab(self, lab_id) -> Dict[str, Any]:
        lab = self._load(lab_id)
        lab["stats"] = self._stats(lab["_id"])
        return lab

    def update_lab(self, lab_id, data: Dict[str, Any], action: str = "updated") -> Dict[str, Any]:
        lab = self._load(lab_id)
        unknown = sorted(k for k in data if k not in LAB_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")
        changes = {k: v for k, v in data.items() if v is not None}
        if isinstance(changes.get("email"), str):
            changes["email"] = changes["email"].strip().lower()

        merged = build_document(Lab, {**lab, **changes})
        if "name" in changes or "email" in changes:
            self._check_unique(merged, exclude=lab["_id"])
        update = {k: merged[k] for k in changes}
        update["updated_at"] = utcnow()
        try:
            self.store.labs.update_one({"_id": lab["_id"]}, {"$set": update})
        except DuplicateKeyError:
            raise Conflict("Lab with this name or email already exists")
        self.audit.lab_event(action, lab["_id"], {"fields": sorted(changes)})
        return self.store.labs.find_one({"_id": lab["_id"]})

    def update_lab_status(self, lab_id, status: str) -> Dict[str, Any]:
        return self.update_lab(lab_id, {"status": status}, action="status changed")

    def update_subscription(self, lab_id, subscription: str) -> Dict[str, Any]:
        return self.update_lab(lab_id, {"subscription": subscription}, action="subscription changed")

    def update_settings(self, lab_id, settings: Dict[str, Any]) -> Dict[str, Any]:
        lab = self._load(lab_id)
        merged = dict(lab.get("settings") or {}, **{k: v for k, v in settings.items() if v is not None})
        return self.update_lab(lab["_id"], {"settings": merged}, action="settings changed")

    def delete_lab(self, lab_id) -> Dict[str, str]:
        lab = self._load(lab_id)
        if self.store.for_lab(lab["_id"]).users.count() > 0:
            raise Conflict("Cannot delete lab with existing users")
        self.store.labs.delete_one({"_id": lab["_id"]})
        self.audit.lab_event("deleted", lab["_id"], {"name": lab["name"]})
        return {"message": "Lab removed"}

    def lab_stats(self, lab_id) -> Dict[str, Any]:
        lab = self._load(lab_id)
        scoped = self.store.for_lab(lab["_id"])
        return {
            "users": {
                "total": scoped.users.count(),
                "active": scoped.users.count({"status": "active"}),
                "by_role": {role: scoped.users.count({"role": role}) for role in ROLES if role != "super_admin"},
            },
            "reports": {
                "total": scoped.reports.count(),
                "by_status": {status: scoped.reports.count({"status": status}) for status in REPORT_STATUSES},
            },
        }

    def lab_performance(
        self, lab_id, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Report turnaround and per-technician completion for reports created in a period.

        The period defaults to the 30 days up to now. Turnaround runs from creation to
        delivery; completion time from assignment to completion.
        """
        lab = self._load(lab_id)
        end_date = end_date or utcnow()
        start_date = start_date or end_date - timedelta(days=30)
        start, end = to_store_time(start_date), to_store_time(end_date)
        if start > end:
            raise ValidationError("start_date must not be after end_date")

        scoped = self.store.for_lab(lab["_id"])
        reports = scoped.reports.find(
            {"created_at": {"$gte": start, "$lte": end}},
            {"status": 1, "assigned_to": 1, "created_at": 1, "assigned_at": 1, "completed_at": 1, "delivered_at": 1},
        )
        turnaround = [_hours(r["created_at"], r["delivered_at"]) for r in reports if r.get("delivered_at")]

        per_technician: Dict[Any, Dict[str, Any]] = {}
        for r in reports:
            stats = per_technician.setdefault(r["assigned_to"], {"assigned": 0, "completed": 0, "hours": []})
            stats["assigned"] += 1
            if r.get("completed_at"):
                stats["completed"] += 1
                stats["hours"].append(_hours(r.get("assigned_at") or r["created_at"], r["completed_at"]))
        names = {
            u["_id"]: u["name"]
            for u in scoped.users.find({"_id": {"$in": list(per_technician)}}, {"name": 1})
        }
        technicians = [
            {
                "technician": tech_id,
                "name": names.get(tech_id),
                "reports_assigned": stats["assigned"],
                "reports_completed": stats["completed"],
                "avg_completion_time": _average(stats["hours"]),
            }
            for tech_id, stats in per_technician.items()
        ]
        technicians.sort(key=lambda t: t["reports_completed"], reverse=True)

        return {
            "period": {"start": start, "end": end},
            "report_metrics": {
                "total_reports": len(reports),
                "delivered_reports": len(turnaround),
                "avg_turnaround_time": _average(turnaround),
            },
            "technician_performance": technicians,
        }

    def check_subscription_limits(self, lab_id, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Usage against the tier limits. Reports only; callers decide whether to block."""
        lab = self._load(lab_id)
        limits = SUBSCRIPTION_LIMITS[lab.get("subscription", "basic")]
        scoped = self.store.for_lab(lab["_id"])
        user_count = scoped.users.count({"status": "active"})
        month_start = to_store_time(start_of_month(now or utcnow()))
        reports_this_month = scoped.reports.count({"created_at": {"$gte": month_start}})

        def reached(used: int, limit: Optional[int]) -> bool:
            return limit is not None and used >= limit

        return {
            "has_reached_user_limit": reached(user_count, limits["users"]),
            "has_reached_report_limit": reached(reports_this_month, limits["reports_per_month"]),
            "current_usage": {"users": user_count, "reports_this_month": reports_this_month},
            "limits": dict(limits),
        }
