import os
import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Any, Dict

from fastapi import FastAPI, APIRouter, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from audit import AuditLogger, clean_old_logs, list_logs
from auth import (
    get_audit,
    get_current_user,
    get_store,
    oauth2_scheme,
    require_permissions,
    require_roles,
)
from auth_service import AuthService
from config import Settings, get_settings
from database import ensure_indexes, get_db, serialize_doc, to_object_id
from errors import Conflict, LimsError, StoreTimeout, Unauthenticated, ValidationError
from lab_service import LabService
from logger import setup_logging
from patient_service import PatientService
from report_service import ReportService
from schemas import (
    AccountStatus,
    Address,
    CallerIdentity,
    EmergencyContact,
    LabContact,
    LabSettings,
    LogCategory,
    LogLevel,
    MedicalHistoryEntry,
    PatientContact,
    Priority,
    ReportStatus,
    ResultParameter,
    Role,
    Subscription,
)
from tenancy import TenantStore
from user_service import UserService


def _settings_for(request: Request) -> Settings:
    # exception handlers sit outside dependency injection; honour test overrides
    return request.app.dependency_overrides.get(get_settings, get_settings)()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_DIR, settings.LOG_LEVEL, settings.LOG_RETENTION_DAYS)
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    ensure_indexes(get_db())
    logger.info("LIMS API started ({})", settings.ENVIRONMENT)
    yield


# App setup
app = FastAPI(title="Laboratory Information Management API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=get_settings().UPLOAD_DIR, check_dir=False), name="uploads")


# Error handling
def error_response(request: Request, status_code: int, message: str, exc: Exception, **extra) -> JSONResponse:
    body: Dict[str, Any] = {"message": message, **extra}
    if not _settings_for(request).is_production:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(LimsError)
async def lims_error_handler(request: Request, exc: LimsError):
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    return error_response(request, exc.status_code, exc.message, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg")} for err in exc.errors()
    ]
    return error_response(request, status.HTTP_400_BAD_REQUEST, "Invalid request", exc, errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
        message = f"Not Found - {request.url.path}"
    return error_response(request, exc.status_code, message, exc)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return error_response(request, status.HTTP_409_CONFLICT, "Duplicate value for a unique field", exc)


@app.exception_handler(ExecutionTimeout)
@app.exception_handler(NetworkTimeout)
@app.exception_handler(ServerSelectionTimeoutError)
async def store_timeout_handler(request: Request, exc: Exception):
    logger.error("{} {} store timeout: {}", request.method, request.url.path, exc)
    return error_response(request, StoreTimeout.status_code, StoreTimeout.default_message, exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error("{} {} unhandled error", request.method, request.url.path)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc)


# Request bodies
class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ResetRequestIn(BaseModel):
    email: EmailStr


class ResetPasswordIn(BaseModel):
    password: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


class ProfileIn(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class LabIn(BaseModel):
    name: str
    email: EmailStr
    address: Optional[Address] = None
    contact: Optional[LabContact] = None
    license_number: Optional[str] = None
    subscription: Optional[Subscription] = None
    settings: Optional[LabSettings] = None


class AdminIn(BaseModel):
    name: str
    email: EmailStr
    password: str


class LabWithAdminIn(BaseModel):
    lab: LabIn
    admin: AdminIn


class LabStatusIn(BaseModel):
    status: AccountStatus


class SubscriptionIn(BaseModel):
    subscription: Subscription


class SettingsIn(BaseModel):
    report_header: Optional[str] = None
    report_footer: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None


class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: Optional[str] = None
    role: Role = Field(..., description="super_admin | admin | technician")
    lab: Optional[str] = None


class BulkUsersIn(BaseModel):
    lab: str
    users: List[UserCreate] = Field(..., min_length=1)


class RoleIn(BaseModel):
    role: Role


class TechnicianIn(BaseModel):
    name: str
    email: EmailStr
    password: Optional[str] = None


class PatientIn(BaseModel):
    name: str
    age: int
    gender: str
    contact: PatientContact
    medical_history: List[MedicalHistoryEntry] = Field(default_factory=list)
    blood_group: Optional[str] = None
    emergency_contact: Optional[EmergencyContact] = None


class ReportIn(BaseModel):
    patient: str
    assigned_to: Optional[str] = None
    test_type: str
    category: Optional[str] = None
    priority: Priority = "routine"
    results: List[ResultParameter] = Field(default_factory=list)
    delivery_method: Optional[str] = None


class AssignIn(BaseModel):
    technician_id: str


class VerifyIn(BaseModel):
    verification_notes: Optional[str] = None
    version: Optional[int] = None


class CommentIn(BaseModel):
    comment: str = Field(..., min_length=1)


class AttachmentIn(BaseModel):
    name: str
    url: str
    type: Optional[str] = None


# Helpers
def serialize_page(result: Dict[str, Any], key: str) -> Dict[str, Any]:
    return {**result, key: [serialize_doc(d) for d in result[key]]}


def body_dict(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude_none=True)


def enforce_user_limit(store: TenantStore, audit: AuditLogger, lab_id, adding: int = 1) -> None:
    usage = LabService(store, audit).check_subscription_limits(lab_id)
    limit = usage["limits"]["users"]
    if limit is not None and usage["current_usage"]["users"] + adding > limit:
        raise Conflict("Subscription user limit reached")


def target_lab(store: TenantStore, requested: Optional[str]):
    """Lab a new user lands in. A selected labId wins and must agree with the body."""
    lab_id = to_object_id(requested, "Lab", from_path=False) if requested else None
    if store.lab_id is not None:
        if lab_id is not None and lab_id != store.lab_id:
            raise ValidationError("Lab in body does not match the selected labId")
        return store.lab_id
    return lab_id


def enforce_report_limit(store: TenantStore, audit: AuditLogger) -> None:
    if store.lab_id is not None and LabService(store, audit).check_subscription_limits(store.lab_id)["has_reached_report_limit"]:
        raise Conflict("Subscription report limit reached for this month")


def lab_service(store: TenantStore = Depends(get_store), audit: AuditLogger = Depends(get_audit)) -> LabService:
    return LabService(store, audit)


def user_service(store: TenantStore = Depends(get_store), audit: AuditLogger = Depends(get_audit)) -> UserService:
    return UserService(store, audit)


def patient_service(
    store: TenantStore = Depends(get_store),
    current_user: CallerIdentity = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit),
) -> PatientService:
    return PatientService(store, current_user, audit)


def report_service(
    store: TenantStore = Depends(get_store),
    current_user: CallerIdentity = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit),
) -> ReportService:
    return ReportService(store, current_user, audit)


def public_audit(request: Request, db=Depends(get_db)) -> AuditLogger:
    return AuditLogger(
        db,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# Health endpoints
@app.get("/")
def read_root():
    return {"message": "Laboratory Information Management API running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Not Set" if not os.getenv("DATABASE_URL") else "Set",
        "database_name": "Not Set" if not os.getenv("DATABASE_NAME") else "Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        cols = db.list_collection_names()
        response.update({
            "database": "Connected & Working",
            "connection_status": "Connected",
            "collections": cols[:10],
        })
    except Exception as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response


# Auth endpoints
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/login")
def login(body: LoginIn, db=Depends(get_db), settings: Settings = Depends(get_settings),
          audit: AuditLogger = Depends(public_audit)):
    result = AuthService(db, settings, audit).login(body.email, body.password)
    return {"token": result["token"], "user": serialize_doc(result["user"])}


@auth_router.get("/me")
def me(current_user: CallerIdentity = Depends(get_current_user), db=Depends(get_db),
       settings: Settings = Depends(get_settings)):
    info = AuthService(db, settings, AuditLogger(db)).session_info(current_user.id)
    return {"user": serialize_doc(info["user"]), "lab": serialize_doc(info["lab"])}


@auth_router.get("/verify-session")
def verify_session(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db),
                   settings: Settings = Depends(get_settings)):
    if not token:
        raise Unauthenticated("No token provided")
    service = AuthService(db, settings, AuditLogger(db))
    user = service.verify_token(token)
    info = service.session_info(user["_id"])
    return {"user": serialize_doc(info["user"]), "lab": serialize_doc(info["lab"])}


@auth_router.post("/reset-password")
def request_password_reset(body: ResetRequestIn, request: Request, db=Depends(get_db),
                           settings: Settings = Depends(get_settings),
                           audit: AuditLogger = Depends(public_audit)):
    token = AuthService(db, settings, audit).request_password_reset(body.email)
    if settings.is_production or token is None:
        # same answer whether or not the account exists
        return {"message": "Password reset instructions sent to your email"}
    return {
        "message": "Password reset token generated",
        "reset_token": token,
        "reset_url": f"{request.base_url}reset-password/{token}",
    }


@auth_router.put("/reset-password/{token}")
def reset_password(token: str, body: ResetPasswordIn, db=Depends(get_db),
                   settings: Settings = Depends(get_settings),
                   audit: AuditLogger = Depends(public_audit)):
    return AuthService(db, settings, audit).reset_password(token, body.password)


@auth_router.put("/change-password")
def change_password(body: ChangePasswordIn, current_user: CallerIdentity = Depends(get_current_user),
                    users: UserService = Depends(user_service)):
    return users.change_password(current_user.id, body.current_password, body.new_password)


@auth_router.put("/profile")
def update_profile(body: ProfileIn, current_user: CallerIdentity = Depends(get_current_user),
                   users: UserService = Depends(user_service)):
    return serialize_doc(users.update_user(current_user.id, body_dict(body)))


@auth_router.get("/permissions")
def my_permissions(current_user: CallerIdentity = Depends(get_current_user)):
    return {"role": current_user.role, "permissions": current_user.permissions}


@auth_router.post("/logout")
def logout(_: CallerIdentity = Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return {"message": "Logged out successfully"}


# Super admin endpoints
superadmin_router = APIRouter(
    prefix="/api/superadmin", tags=["superadmin"], dependencies=[Depends(require_roles("super_admin"))]
)


@superadmin_router.get("/labs")
def list_labs(status_filter: Optional[AccountStatus] = Query(None, alias="status"),
              subscription: Optional[Subscription] = None,
              page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              labs: LabService = Depends(lab_service)):
    result = labs.list_labs({"status": status_filter, "subscription": subscription}, page, limit)
    return serialize_page(result, "labs")


@superadmin_router.post("/labs", status_code=status.HTTP_201_CREATED)
def create_lab(body: LabIn, labs: LabService = Depends(lab_service)):
    return serialize_doc(labs.create_lab(body_dict(body)))


@superadmin_router.post("/labs/with-admin", status_code=status.HTTP_201_CREATED)
def create_lab_with_admin(body: LabWithAdminIn, labs: LabService = Depends(lab_service)):
    result = labs.create_lab_with_admin(body_dict(body.lab), body_dict(body.admin))
    return {"lab": serialize_doc(result["lab"]), "admin": serialize_doc(result["admin"])}


@superadmin_router.get("/labs/{lab_id}")
def get_lab(lab_id: str, labs: LabService = Depends(lab_service)):
    return serialize_doc(labs.get_lab(lab_id))


@superadmin_router.put("/labs/{lab_id}")
def update_lab(lab_id: str, update: Dict[str, Any], labs: LabService = Depends(lab_service)):
    return serialize_doc(labs.update_lab(lab_id, update))


@superadmin_router.delete("/labs/{lab_id}")
def delete_lab(lab_id: str, labs: LabService = Depends(lab_service)):
    return labs.delete_lab(lab_id)


@superadmin_router.patch("/labs/{lab_id}/status")
def update_lab_status(lab_id: str, body: LabStatusIn, labs: LabService = Depends(lab_service)):
    lab = labs.update_lab_status(lab_id, body.status)
    return {"id": str(lab["_id"]), "name": lab["name"], "status": lab["status"]}


@superadmin_router.patch("/labs/{lab_id}/subscription")
def update_lab_subscription(lab_id: str, body: SubscriptionIn, labs: LabService = Depends(lab_service)):
    return serialize_doc(labs.update_subscription(lab_id, body.subscription))


@superadmin_router.get("/labs/{lab_id}/stats")
def get_lab_stats(lab_id: str, labs: LabService = Depends(lab_service)):
    return labs.lab_stats(lab_id)


@superadmin_router.get("/labs/{lab_id}/limits")
def get_lab_limits(lab_id: str, labs: LabService = Depends(lab_service)):
    return labs.check_subscription_limits(lab_id)


@superadmin_router.get("/users")
def list_users(role: Optional[Role] = None, status_filter: Optional[AccountStatus] = Query(None, alias="status"),
               users: UserService = Depends(user_service)):
    return [serialize_doc(u) for u in users.list_users({"role": role, "status": status_filter})]


@superadmin_router.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(body: UserCreate, store: TenantStore = Depends(get_store), audit: AuditLogger = Depends(get_audit),
                users: UserService = Depends(user_service)):
    lab_id = target_lab(store, body.lab)
    if body.role != "super_admin" and lab_id is not None:
        enforce_user_limit(store, audit, lab_id)
    return serialize_doc(users.create_user(body_dict(body), lab_id))


@superadmin_router.post("/users/bulk", status_code=status.HTTP_201_CREATED)
def bulk_create_users(body: BulkUsersIn, store: TenantStore = Depends(get_store),
                      audit: AuditLogger = Depends(get_audit), users: UserService = Depends(user_service)):
    lab_id = target_lab(store, body.lab)
    enforce_user_limit(store, audit, lab_id, adding=len(body.users))
    items = [body_dict(u) for u in body.users]
    return [serialize_doc(u) for u in users.bulk_create_users(items, lab_id)]


@superadmin_router.put("/users/{user_id}")
def update_user(user_id: str, update: Dict[str, Any], users: UserService = Depends(user_service)):
    return serialize_doc(users.update_user(user_id, update))


@superadmin_router.put("/users/{user_id}/role")
def change_user_role(user_id: str, body: RoleIn, users: UserService = Depends(user_service)):
    return serialize_doc(users.change_role(user_id, body.role))


@superadmin_router.patch("/users/{user_id}/deactivate")
def deactivate_user(user_id: str, users: UserService = Depends(user_service)):
    return serialize_doc(users.deactivate_user(user_id))


@superadmin_router.delete("/users/{user_id}")
def delete_user(user_id: str, users: UserService = Depends(user_service)):
    return users.delete_user(user_id)


@superadmin_router.get("/logs")
def get_logs(level: Optional[LogLevel] = None, category: Optional[LogCategory] = None,
             user: Optional[str] = None, start_date: Optional[datetime] = None,
             end_date: Optional[datetime] = None,
             page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
             store: TenantStore = Depends(get_store)):
    filters = {
        "level": level,
        "category": category,
        "user": to_object_id(user, "User", from_path=False) if user else None,
        "start_date": start_date,
        "end_date": end_date,
    }
    return serialize_page(list_logs(store, filters, page, limit), "logs")


@superadmin_router.delete("/logs")
def prune_logs(days: Optional[int] = Query(None, ge=1), db=Depends(get_db),
               settings: Settings = Depends(get_settings)):
    return clean_old_logs(db, days or settings.LOG_RETENTION_DAYS)


# Lab admin endpoints
admin_router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_roles("admin"))])


@admin_router.get("/lab", dependencies=[Depends(require_permissions("view_lab_stats"))])
def get_my_lab(store: TenantStore = Depends(get_store), labs: LabService = Depends(lab_service)):
    lab = labs.get_lab(store.lab_id)
    lab["usage"] = labs.lab_stats(store.lab_id)
    return serialize_doc(lab)


@admin_router.get("/lab/limits", dependencies=[Depends(require_permissions("view_lab_stats"))])
def get_my_lab_limits(store: TenantStore = Depends(get_store), labs: LabService = Depends(lab_service)):
    return labs.check_subscription_limits(store.lab_id)


@admin_router.get("/settings", dependencies=[Depends(require_permissions("view_lab_stats"))])
def get_lab_settings(store: TenantStore = Depends(get_store), labs: LabService = Depends(lab_service)):
    return labs.get_lab(store.lab_id).get("settings") or {}


@admin_router.put("/settings", dependencies=[Depends(require_permissions("manage_reports"))])
def update_lab_settings(body: SettingsIn, store: TenantStore = Depends(get_store),
                        labs: LabService = Depends(lab_service)):
    return labs.update_settings(store.lab_id, body_dict(body)).get("settings")


@admin_router.get("/technicians", dependencies=[Depends(require_permissions("manage_technicians"))])
def list_technicians(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     store: TenantStore = Depends(get_store), users: UserService = Depends(user_service)):
    return serialize_page(users.get_users_by_role(store.lab_id, "technician", page, limit), "users")


@admin_router.post("/technicians", status_code=status.HTTP_201_CREATED,
                   dependencies=[Depends(require_permissions("manage_technicians"))])
def create_technician(body: TechnicianIn, store: TenantStore = Depends(get_store),
                      audit: AuditLogger = Depends(get_audit), users: UserService = Depends(user_service)):
    enforce_user_limit(store, audit, store.lab_id)
    return serialize_doc(users.create_user(dict(body_dict(body), role="technician"), store.lab_id))


@admin_router.get("/technicians/{user_id}", dependencies=[Depends(require_permissions("manage_technicians"))])
def get_technician(user_id: str, users: UserService = Depends(user_service)):
    return serialize_doc(users.get_user(user_id, role="technician"))


@admin_router.put("/technicians/{user_id}", dependencies=[Depends(require_permissions("manage_technicians"))])
def update_technician(user_id: str, update: Dict[str, Any], users: UserService = Depends(user_service)):
    return serialize_doc(users.update_user(user_id, update, role="technician"))


@admin_router.delete("/technicians/{user_id}", dependencies=[Depends(require_permissions("manage_technicians"))])
def delete_technician(user_id: str, users: UserService = Depends(user_service)):
    return users.delete_user(user_id, role="technician")


@admin_router.get("/logs", dependencies=[Depends(require_permissions("view_lab_stats"))])
def get_lab_logs(level: Optional[LogLevel] = None, category: Optional[LogCategory] = None,
                 page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 store: TenantStore = Depends(get_store)):
    return serialize_page(list_logs(store, {"level": level, "category": category}, page, limit), "logs")


@admin_router.get("/analytics/reports", dependencies=[Depends(require_permissions("view_lab_stats"))])
def report_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                     store: TenantStore = Depends(get_store), labs: LabService = Depends(lab_service)):
    performance = labs.lab_performance(store.lab_id, start_date, end_date)
    return serialize_doc({"period": performance["period"], **performance["report_metrics"]})


@admin_router.get("/analytics/technicians", dependencies=[Depends(require_permissions("view_lab_stats"))])
def technician_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                         store: TenantStore = Depends(get_store), labs: LabService = Depends(lab_service)):
    performance = labs.lab_performance(store.lab_id, start_date, end_date)
    return [serialize_doc(t) for t in performance["technician_performance"]]


# Patients
patient_router = APIRouter(prefix="/api/patients", tags=["patients"])


@patient_router.get("")
def list_patients(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  patients: PatientService = Depends(patient_service)):
    return serialize_page(patients.list_patients(page, limit), "patients")


@patient_router.post("", status_code=status.HTTP_201_CREATED)
def create_patient(body: PatientIn, patients: PatientService = Depends(patient_service)):
    return serialize_doc(patients.create_patient(body_dict(body)))


@patient_router.get("/search")
def search_patients(q: str = Query("", alias="query"), patients: PatientService = Depends(patient_service)):
    return [serialize_doc(p) for p in patients.search_patients(q)]


@patient_router.get("/{patient_id}")
def get_patient(patient_id: str, patients: PatientService = Depends(patient_service)):
    return serialize_doc(patients.get_patient(patient_id))


@patient_router.put("/{patient_id}")
def update_patient(patient_id: str, update: Dict[str, Any], patients: PatientService = Depends(patient_service)):
    return serialize_doc(patients.update_patient(patient_id, update))


@patient_router.delete("/{patient_id}", dependencies=[Depends(require_roles("admin", "super_admin"))])
def delete_patient(patient_id: str, patients: PatientService = Depends(patient_service)):
    return patients.delete_patient(patient_id)


# Reports
report_router = APIRouter(prefix="/api/reports", tags=["reports"])

can_view_reports = require_permissions("view_assigned_reports", "manage_reports", "view_all_labs")
can_edit_reports = require_permissions("edit_reports", "manage_reports", "manage_labs")
can_manage_reports = require_permissions("manage_reports", "manage_labs")
is_manager = require_roles("admin", "super_admin")


@report_router.post("", status_code=status.HTTP_201_CREATED,
                    dependencies=[Depends(require_permissions("manage_reports", "generate_reports", "manage_labs"))])
def create_report(body: ReportIn, store: TenantStore = Depends(get_store), audit: AuditLogger = Depends(get_audit),
                  reports: ReportService = Depends(report_service)):
    enforce_report_limit(store, audit)
    return serialize_doc(reports.create_report(body_dict(body)))


@report_router.get("", dependencies=[Depends(can_view_reports)])
def list_reports(status_filter: Optional[ReportStatus] = Query(None, alias="status"),
                 priority: Optional[Priority] = None, test_type: Optional[str] = None,
                 patient: Optional[str] = None, start_date: Optional[datetime] = None,
                 end_date: Optional[datetime] = None,
                 page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 reports: ReportService = Depends(report_service)):
    filters = {
        "status": status_filter,
        "priority": priority,
        "test_type": test_type,
        "patient": patient,
        "start_date": start_date,
        "end_date": end_date,
    }
    return serialize_page(reports.list_reports(filters, page, limit), "reports")


@report_router.get("/stats", dependencies=[Depends(is_manager), Depends(require_permissions("view_lab_stats", "view_all_labs"))])
def report_stats(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                 reports: ReportService = Depends(report_service)):
    return reports.report_stats(start_date, end_date)


@report_router.get("/{report_id}", dependencies=[Depends(can_view_reports)])
def get_report(report_id: str, reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.get_report(report_id))


@report_router.put("/{report_id}", dependencies=[Depends(can_edit_reports)])
def update_report(report_id: str, update: Dict[str, Any], reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.update_report(report_id, update))


@report_router.delete("/{report_id}", dependencies=[Depends(is_manager), Depends(can_manage_reports)])
def delete_report(report_id: str, reports: ReportService = Depends(report_service)):
    return reports.delete_report(report_id)


@report_router.put("/{report_id}/assign", dependencies=[Depends(is_manager), Depends(can_manage_reports)])
def assign_report(report_id: str, body: AssignIn, reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.assign_report(report_id, body.technician_id))


@report_router.put("/{report_id}/verify", dependencies=[Depends(is_manager), Depends(can_manage_reports)])
def verify_report(report_id: str, body: VerifyIn, reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.verify_report(report_id, body.verification_notes, body.version))


@report_router.post("/{report_id}/comments", dependencies=[Depends(can_edit_reports)])
def add_comment(report_id: str, body: CommentIn, reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.add_comment(report_id, body.comment))


@report_router.post("/{report_id}/attachments", status_code=status.HTTP_201_CREATED,
                    dependencies=[Depends(can_edit_reports)])
def add_attachment(report_id: str, body: AttachmentIn, reports: ReportService = Depends(report_service)):
    return serialize_doc(reports.add_attachment(report_id, body.name, body.url, body.type))


app.include_router(auth_router)
app.include_router(superadmin_router)
app.include_router(admin_router)
app.include_router(patient_router)
app.include_router(report_router)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
