"""
Request authorization.

FastAPI dependencies that resolve the caller from a bearer token, check
role and permission requirements, and bind the request to a tenant.
Role and permission checks both depend on ``get_current_user``, so a
route can never evaluate them before the caller is authenticated.
"""
from typing import Optional

from bson import ObjectId
from fastapi import Depends, Query, Request
from fastapi.security import OAuth2PasswordBearer
from loguru import logger

from audit import AuditLogger
from auth_service import AuthService
from config import Settings, get_settings
from database import get_db, to_object_id
from errors import Forbidden, NotFound
from schemas import CallerIdentity
from tenancy import TenantStore
from user_service import permissions_for

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

MOCK_IDENTITY = CallerIdentity(
    id=ObjectId("000000000000000000000000"),
    name="Development User",
    email="dev@example.com",
    role="super_admin",
    permissions=permissions_for("super_admin"),
)


def identity_from_user(user: dict) -> CallerIdentity:
    # permissions come from the role here, whatever the stored list says
    return CallerIdentity(
        id=user["_id"],
        name=user["name"],
        email=user["email"],
        role=user["role"],
        lab=user.get("lab"),
        permissions=permissions_for(user["role"]),
    )


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CallerIdentity:
    if not token and settings.mock_auth_enabled:
        logger.warning("MOCK_AUTH is on: request served as {}", MOCK_IDENTITY.email)
        return MOCK_IDENTITY
    user = AuthService(db, settings, AuditLogger(db)).verify_token(token)
    return identity_from_user(user)


def require_roles(*roles: str):
    def role_checker(current_user: CallerIdentity = Depends(get_current_user)) -> CallerIdentity:
        if current_user.role not in roles:
            raise Forbidden("Not authorized for this role")
        return current_user

    return role_checker


def require_permissions(*permissions: str):
    def permission_checker(current_user: CallerIdentity = Depends(get_current_user)) -> CallerIdentity:
        if not current_user.has_permission(*permissions):
            raise Forbidden("Not authorized - insufficient permissions")
        return current_user

    return permission_checker


def resolve_tenant_context(
    current_user: CallerIdentity = Depends(get_current_user),
    lab_query: Optional[str] = Query(None, alias="labId"),
    db=Depends(get_db),
) -> Optional[ObjectId]:
    """super_admin may pick a lab (or none: every lab); everyone else is pinned to their own."""
    if current_user.is_super_admin:
        if not lab_query:
            return None
        lab_id = to_object_id(lab_query, "Lab", from_path=False)
        if db["lab"].find_one({"_id": lab_id}, {"_id": 1}) is None:
            raise NotFound("Lab not found")
        return lab_id
    if current_user.lab is None:
        raise Forbidden("User is not assigned to a lab")
    return current_user.lab


def get_store(db=Depends(get_db), tenant: Optional[ObjectId] = Depends(resolve_tenant_context)) -> TenantStore:
    return TenantStore(db, tenant)


def get_audit(
    request: Request,
    db=Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
    tenant: Optional[ObjectId] = Depends(resolve_tenant_context),
) -> AuditLogger:
    return AuditLogger(
        db,
        user_id=current_user.id,
        lab_id=tenant,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
