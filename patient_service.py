import math
import re
from typing import Any, Dict, List

from pymongo.errors import DuplicateKeyError

from audit import AuditLogger
from database import to_object_id
from errors import Conflict, NotFound, ValidationError
from schemas import CallerIdentity, Patient, build_document, generate_patient_id, utcnow
from tenancy import TenantStore

PATIENT_FIELDS = (
    "name", "age", "gender", "contact", "medical_history", "blood_group", "emergency_contact", "status",
)
ID_ATTEMPTS = 5


class PatientService:
    def __init__(self, store: TenantStore, caller: CallerIdentity, audit: AuditLogger):
        self.store = store
        self.caller = caller
        self.audit = audit

    def _load(self, patient_id) -> Dict[str, Any]:
        patient = self.store.patients.find_one({"_id": to_object_id(patient_id, "Patient")})
        if not patient:
            raise NotFound("Patient not found")
        return patient

    def create_patient(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.store.lab_id is None:
            raise ValidationError("A lab must be selected to register patients")
        fields = {k: v for k, v in data.items() if k in PATIENT_FIELDS}

        # the generated id is short, so collisions are retried rather than ruled out
        for _ in range(ID_ATTEMPTS):
            doc = build_document(Patient, {
                **fields,
                "lab": self.store.lab_id,
                "patient_id": generate_patient_id(),
                "registered_by": self.caller.id,
            })
            try:
                self.store.patients.insert_one(doc)
            except DuplicateKeyError:
                continue
            self.audit.log_event(
                "info", "system", "Patient registered",
                {"patient_id": doc["patient_id"], "id": str(doc["_id"])},
            )
            return doc
        raise Conflict("Could not allocate a unique patient id, try again")

    def list_patients(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        total = self.store.patients.count()
        patients = self.store.patients.find(sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit)
        return {
            "patients": patients,
            "page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "total": total,
        }

    def get_patient(self, patient_id) -> Dict[str, Any]:
        return self._load(patient_id)

    def update_patient(self, patient_id, data: Dict[str, Any]) -> Dict[str, Any]:
        unknown = sorted(k for k in data if k not in PATIENT_FIELDS)
        if unknown:
            raise ValidationError(f"Field(s) cannot be updated: {', '.join(unknown)}")
        patient = self._load(patient_id)
        changes = {k: v for k, v in data.items() if v is not None}
        merged = build_document(Patient, {**patient, **changes})
        update = {k: merged[k] for k in changes}
        update["updated_at"] = utcnow()
        return self.store.patients.find_one_and_update({"_id": patient["_id"]}, {"$set": update})

    def delete_patient(self, patient_id) -> Dict[str, str]:
        patient = self._load(patient_id)
        if self.store.reports.count({"patient": patient["_id"]}):
            raise Conflict("Cannot delete a patient with reports")
        self.store.patients.delete_one({"_id": patient["_id"]})
        self.audit.log_event("info", "system", "Patient removed", {"patient_id": patient["patient_id"]})
        return {"message": "Patient removed"}

    def search_patients(self, q: str, limit: int = 10) -> List[Dict[str, Any]]:
        if not q or not q.strip():
            return []
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query = {"$or": [
            {"name": pattern},
            {"patient_id": pattern},
            {"contact.email": pattern},
            {"contact.phone": pattern},
        ]}
        return self.store.patients.find(query, sort=[("created_at", -1)], limit=limit)
