import math
import secrets
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from audit import AuditLogger
from database import to_object_id
from errors import Conflict, Forbidden, NotFound, ValidationError
from schemas import ROLE_PERMISSIONS, User, build_document, utcnow
from security import MIN_PASSWORD_LENGTH, hash_password, verify_password
from tenancy import TenantStore

# Only these change through update_user; role, lab and password have their own flows.
UPDATABLE_FIELDS = ("name", "email", "status")
PROTECTED_FIELDS = ("password", "password_hash", "role", "lab", "permissions")


def permissions_for(role: str) -> List[str]:
    """Canonical permission set of a role. The only source of user permissions."""
    if role not in ROLE_PERMISSIONS:
        raise ValidationError(f"Unknown role: {role}")
    return list(ROLE_PERMISSIONS[role])


def normalize_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("A valid email is required")
    return value.strip().lower()


def check_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


class UserService:
    def __init__(self, store: TenantStore, audit: AuditLogger):
        self.store = store
        self.audit = audit

    def email_taken(self, email: str, exclude: Optional[ObjectId] = None) -> bool:
        # email uniqueness is global, not per lab
        query: Dict[str, Any] = {"email": email}
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        return TenantStore.system(self.store.db).users.find_one(query, {"_id": 1}) is not None

    def _load(self, user_id, role: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": to_object_id(user_id, "User")}
        if role:
            query["role"] = role
        user = self.store.users.find_one(query)
        if not user:
            raise NotFound("User not found")
        return user

    def prepare_user(self, data: Dict[str, Any], lab_id=None) -> Dict[str, Any]:
        """Validate a new account and return the document to insert."""
        role = data.get("role")
        permissions = permissions_for(role)
        email = normalize_email(data.get("email"))
        if self.email_taken(email):
            raise Conflict("User with this email already exists")

        lab = None
        if role != "super_admin":
            if self.store.lab_id is not None:
                lab_id = self.store.lab_id
            if lab_id is None:
                raise ValidationError("Lab reference is required")
            lab = to_object_id(lab_id, "Lab", from_path=False)
            if not self.store.labs.find_one({"_id": lab}, {"_id": 1}):
                raise NotFound("Lab not found")
        elif not self.store.is_global:
            raise Forbidden("Only a super admin can create super admin accounts")

        return build_document(User, {
            "lab": lab,
            "name": data.get("name"),
            "email": email,
            "password_hash": hash_password(self._initial_password(data)),
            "role": role,
            "status": "active",
            "permissions": permissions,
        })

    @staticmethod
    def _initial_password(data: Dict[str, Any]) -> str:
        # accounts created without a password must go through the reset flow
        if data.get("password") is None:
            return secrets.token_urlsafe(24)
        return check_password(data["password"])

    def _insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        users = self.store.users if doc.get("lab") is None else self.store.for_lab(doc["lab"]).users
        try:
            users.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("User with this email already exists")
        return doc

    def create_user(self, data: Dict[str, Any], lab_id=None) -> Dict[str, Any]:
        doc = self._insert(self.prepare_user(data, lab_id))
        self.audit.user_event("created", doc["_id"], {"role": doc["role"]}, lab_id=doc.get("lab"))
        return doc

    def bulk_create_users(self, items: List[Dict[str, Any]], lab_id=None) -> List[Dict[str, Any]]:
        """All users are created or none are."""
        emails = [normalize_email(item.get("email")) for item in items]
        if len(set(emails)) != len(emails):
            raise Conflict("Duplicate email in batch")
        docs = [self.prepare_user(item, lab_id) for item in items]

        created: List[Dict[str, Any]] = []
        try:
            for doc in docs:
                created.append(self._insert(doc))
        except Exception:
            for doc in created:
                self.store.db["user"].delete_one({"_id": doc["_id"]})
            raise
        for doc in created:
            self.audit.user_event("created", doc["_id"], {"role": doc["role"], "bulk": True}, lab_id=doc.get("lab"))
        return created

    def get_user(self, user_id, role: Optional[str] = None) -> Dict[str, Any]:
        return self._load(user_id, role)

    def list_users(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        query = {k: v for k, v in (filters or {}).items() if k in ("role", "status") and v}
        users = self.store.users.find(query, sort=[("created_at", -1)])
        lab_ids = list({u["lab"] for u in users if u.get("lab")})
        names = {lab["_id"]: lab["name"] for lab in self.store.labs.find({"_id": {"$in": lab_ids}}, {"name": 1})}
        for u in users:
            if u.get("lab"):
                u["lab_name"] = names.get(u["lab"])
        return users

    def get_users_by_role(self, lab_id, role: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        permissions_for(role)
        users = self.store.for_lab(to_object_id(lab_id, "Lab")).users
        query = {"role": role}
        total = users.count(query)
        items = users.find(query, sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit)
        return {
            "users": items,
            "page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "total": total,
        }

    def update_user(self, user_id, data: Dict[str, Any], role: Optional[str] = None) -> Dict[str, Any]:
        blocked = sorted(k for k in data if k in PROTECTED_FIELDS)
        if blocked:
            raise ValidationError(f"Cannot update {', '.join(blocked)} here")
        unknown = sorted(k for k in data if k not in UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")

        user = self._load(user_id, role)
        changes = {k: v for k, v in data.items() if v is not None}
        if "status" in changes and user["role"] == "super_admin":
            raise Forbidden("Cannot change the status of a super admin")
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
            if self.email_taken(changes["email"], exclude=user["_id"]):
                raise Conflict("User with this email already exists")

        build_document(User, {**user, **changes})
        changes["updated_at"] = utcnow()
        try:
            updated = self.store.users.find_one_and_update({"_id": user["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict("User with this email already exists")
        self.audit.user_event("updated", user["_id"], {"fields": sorted(data)}, lab_id=user.get("lab"))
        return updated

    def change_password(self, user_id, current_password: str, new_password: str) -> Dict[str, str]:
        user = self._load(user_id)
        if not verify_password(current_password or "", user.get("password_hash", "")):
            raise ValidationError("Current password is incorrect")
        self.store.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": hash_password(check_password(new_password)), "updated_at": utcnow()}},
        )
        self.audit.user_event("password changed", user["_id"], lab_id=user.get("lab"))
        return {"message": "Password updated successfully"}

    def change_role(self, user_id, new_role: str) -> Dict[str, Any]:
        permissions = permissions_for(new_role)
        if new_role == "super_admin":
            raise Forbidden("Cannot promote a user to super admin")
        user = self._load(user_id)
        if user["role"] == "super_admin":
            raise Forbidden("Cannot change super admin role")
        updated = self.store.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": {"role": new_role, "permissions": permissions, "updated_at": utcnow()}},
        )
        self.audit.user_event(
            "role changed", user["_id"], {"from": user["role"], "to": new_role}, lab_id=user.get("lab")
        )
        return updated

    def deactivate_user(self, user_id, role: Optional[str] = None) -> Dict[str, Any]:
        user = self._load(user_id, role)
        if user["role"] == "super_admin":
            raise Forbidden("Cannot deactivate a super admin")
        updated = self.store.users.find_one_and_update(
            {"_id": user["_id"]}, {"$set": {"status": "inactive", "updated_at": utcnow()}}
        )
        self.audit.user_event("deactivated", user["_id"], lab_id=user.get("lab"))
        return updated

    def delete_user(self, user_id, role: Optional[str] = None) -> Dict[str, str]:
        user = self._load(user_id, role)
        if user["role"] == "super_admin":
            raise Forbidden("Cannot delete super admin user")
        self.store.users.delete_one({"_id": user["_id"]})
        self.audit.user_event("deleted", user["_id"], {"role": user["role"]}, lab_id=user.get("lab"))
        return {"message": "User removed"}
