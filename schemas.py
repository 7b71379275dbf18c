"""
Database Schemas for the Laboratory Information Management API

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.
"""
import random
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Literal

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

Role = Literal["super_admin", "admin", "technician"]
AccountStatus = Literal["active", "inactive", "suspended"]
Subscription = Literal["basic", "premium", "enterprise"]
ReportStatus = Literal["pending", "in_progress", "completed", "verified", "delivered"]
Priority = Literal["routine", "urgent", "emergency"]
Interpretation = Literal["normal", "high", "low", "critical"]
LogLevel = Literal["info", "warning", "error", "critical"]
LogCategory = Literal["auth", "lab", "user", "report", "system"]

ROLES = ("super_admin", "admin", "technician")
REPORT_STATUSES = ("pending", "in_progress", "completed", "verified", "delivered")

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "super_admin": ["manage_labs", "manage_admins", "view_all_labs"],
    "admin": ["manage_technicians", "manage_reports", "view_lab_stats"],
    "technician": ["generate_reports", "edit_reports", "view_assigned_reports"],
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_patient_id(now: Optional[datetime] = None) -> str:
    """P + 2-digit year + 2-digit month + 4 random digits, e.g. P24070042."""
    now = now or utcnow()
    return f"P{now:%y%m}{random.randint(0, 9999):04d}"


class MongoModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class LabContact(BaseModel):
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    website: Optional[str] = None


class LabSettings(BaseModel):
    report_header: Optional[str] = None
    report_footer: Optional[str] = None
    currency: str = "USD"
    timezone: str = "UTC"


class Lab(MongoModel):
    name: str = Field(..., min_length=1)
    address: Address = Field(default_factory=Address)
    contact: LabContact = Field(default_factory=LabContact)
    email: EmailStr
    license_number: Optional[str] = None
    status: AccountStatus = "active"
    subscription: Subscription = "basic"
    settings: LabSettings = Field(default_factory=LabSettings)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(MongoModel):
    lab: Optional[ObjectId] = Field(None, description="Required for every role except super_admin")
    name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str
    role: Role
    status: AccountStatus = "active"
    permissions: List[str] = Field(default_factory=list, description="Derived from role, never client-supplied")
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PatientContact(BaseModel):
    phone: str = Field(..., pattern=r"^\d{10}$")
    email: Optional[EmailStr] = None
    address: Optional[str] = None


class MedicalHistoryEntry(BaseModel):
    condition: Optional[str] = None
    diagnosis: Optional[str] = None
    year: Optional[int] = None


class EmergencyContact(BaseModel):
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None


class Patient(MongoModel):
    lab: ObjectId
    patient_id: str
    name: str = Field(..., min_length=1)
    age: int = Field(..., ge=0, le=150)
    gender: Literal["male", "female", "other"]
    contact: PatientContact
    medical_history: List[MedicalHistoryEntry] = Field(default_factory=list)
    blood_group: Optional[Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]] = None
    emergency_contact: Optional[EmergencyContact] = None
    registered_by: ObjectId
    status: Literal["active", "inactive"] = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NormalRange(BaseModel):
    min: Optional[str] = None
    max: Optional[str] = None


class ResultParameter(BaseModel):
    parameter: str
    value: str
    unit: Optional[str] = None
    normal_range: Optional[NormalRange] = None
    interpretation: Interpretation


class Comment(MongoModel):
    user: ObjectId
    text: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)


class Attachment(BaseModel):
    name: str
    url: str
    type: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=utcnow)


class Report(MongoModel):
    lab: ObjectId
    patient: ObjectId
    assigned_to: ObjectId
    created_by: ObjectId
    test_type: str = Field(..., min_length=1)
    category: Optional[str] = None
    priority: Priority = "routine"
    status: ReportStatus = "pending"
    results: List[ResultParameter] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    assigned_at: datetime = Field(default_factory=utcnow)
    verified_by: Optional[ObjectId] = None
    verified_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_method: Literal["email", "print", "portal"] = "portal"
    report_date: datetime = Field(default_factory=utcnow)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SystemLog(MongoModel):
    level: LogLevel
    category: LogCategory
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    user: Optional[ObjectId] = None
    lab: Optional[ObjectId] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class CallerIdentity(MongoModel):
    """The authenticated caller attached to a request."""
    id: ObjectId
    name: str
    email: str
    role: Role
    lab: Optional[ObjectId] = None
    permissions: List[str] = Field(default_factory=list)

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    def has_permission(self, *permissions: str) -> bool:
        return any(p in self.permissions for p in permissions)


def build_document(model_cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``data`` against a collection schema and return the storable dict."""
    try:
        return model_cls(**data).model_dump()
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(problems or "Invalid data")
