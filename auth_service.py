from datetime import timedelta
from typing import Any, Dict, Optional

from audit import AuditLogger
from config import Settings
from database import to_object_id, to_store_time
from errors import NotFound, Unauthenticated, ValidationError
from schemas import utcnow
from security import (
    create_access_token,
    decode_access_token,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from tenancy import TenantStore
from user_service import check_password, permissions_for


def user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": user["_id"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "lab": user.get("lab"),
        "status": user.get("status"),
        "permissions": permissions_for(user["role"]),
        "last_login": user.get("last_login"),
    }


class AuthService:
    """Credentials, sessions and password reset. Works on the unscoped store."""

    def __init__(self, db, settings: Settings, audit: AuditLogger):
        self.store = TenantStore.system(db)
        self.settings = settings
        self.audit = audit

    def login(self, email: str, password: str) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        user = self.store.users.find_one({"email": email})
        if not user or not verify_password(password or "", user.get("password_hash", "")):
            self.audit.auth_event("login", user["_id"] if user else None, False, {"email": email})
            raise Unauthenticated("Invalid credentials")
        if user.get("status") != "active":
            self.audit.auth_event("login", user["_id"], False, {"reason": "inactive"}, lab_id=user.get("lab"))
            raise Unauthenticated("User account is not active")

        now = utcnow()
        self.store.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now
        token = create_access_token({"sub": str(user["_id"]), "role": user["role"]}, self.settings)
        self.audit.auth_event("login", user["_id"], True, lab_id=user.get("lab"))
        return {"token": token, "user": user_summary(user)}

    def verify_token(self, token: str) -> Dict[str, Any]:
        """The active user a bearer token belongs to."""
        if not token:
            raise Unauthenticated("Not authorized, no token")
        payload = decode_access_token(token, self.settings)
        try:
            user_id = to_object_id(payload["sub"], "User")
        except NotFound:
            raise Unauthenticated("Not authorized, token failed")
        user = self.store.users.find_one({"_id": user_id})
        if not user:
            raise Unauthenticated("User not found")
        if user.get("status") != "active":
            raise Unauthenticated("User account is not active")
        return user

    def session_info(self, user_id) -> Dict[str, Any]:
        user = self.store.users.find_one({"_id": to_object_id(user_id, "User")})
        if not user:
            raise NotFound("User not found")
        lab = None
        if user.get("lab"):
            lab = self.store.labs.find_one(
                {"_id": user["lab"]}, {"name": 1, "status": 1, "subscription": 1}
            )
        return {"user": user_summary(user), "lab": lab}

    def request_password_reset(self, email: str) -> Optional[str]:
        """Store a hashed reset token; returns the plain token, or None for unknown emails."""
        if not email:
            raise ValidationError("Please provide email")
        user = self.store.users.find_one({"email": email.strip().lower()})
        if not user:
            return None
        token, digest = generate_reset_token()
        expires = utcnow() + timedelta(minutes=self.settings.RESET_TOKEN_EXPIRE_MINUTES)
        self.store.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"reset_password_token": digest, "reset_password_expire": expires}},
        )
        self.audit.auth_event("password reset requested", user["_id"], True, lab_id=user.get("lab"))
        return token

    def reset_password(self, token: str, new_password: str) -> Dict[str, str]:
        check_password(new_password)
        user = self.store.users.find_one({
            "reset_password_token": hash_reset_token(token or ""),
            "reset_password_expire": {"$gt": to_store_time(utcnow())},
        })
        if not user:
            raise ValidationError("Invalid or expired reset token")
        self.store.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {"password_hash": hash_password(new_password), "updated_at": utcnow()},
                "$unset": {"reset_password_token": "", "reset_password_expire": ""},
            },
        )
        self.audit.auth_event("password reset", user["_id"], True, lab_id=user.get("lab"))
        return {"message": "Password reset successful"}
