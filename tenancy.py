"""
Tenant-bound access to the entity store.

Every tenant-owned collection is reached through a ``ScopedCollection``
bound to one lab. The bound lab is merged into each filter and stamped
onto each inserted document, so a caller holding the handle cannot build
a query that reaches another lab's rows. A handle bound to ``None`` is
the super_admin "all tenants" view.
"""
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from errors import Forbidden, ValidationError


class ScopedCollection:
    def __init__(self, collection, lab_id: Optional[ObjectId]):
        self.collection = collection
        self.lab_id = lab_id

    @property
    def name(self) -> str:
        return self.collection.name

    def _scoped(self, filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query = dict(filter or {})
        if self.lab_id is not None:
            query["lab"] = self.lab_id
        return query

    def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.collection.find(self._scoped(filter), projection)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_one(self, filter: Optional[Dict[str, Any]] = None, projection=None) -> Optional[Dict[str, Any]]:
        return self.collection.find_one(self._scoped(filter), projection)

    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        return self.collection.count_documents(self._scoped(filter))

    def distinct(self, key: str, filter: Optional[Dict[str, Any]] = None) -> list:
        return self.collection.distinct(key, self._scoped(filter))

    def insert_one(self, document: Dict[str, Any]) -> ObjectId:
        doc = dict(document)
        if self.lab_id is not None:
            doc["lab"] = self.lab_id
        elif not doc.get("lab") and not self._lab_optional(doc):
            raise ValidationError("Lab reference is required")
        res = self.collection.insert_one(doc)
        document["_id"] = res.inserted_id
        if self.lab_id is not None:
            document["lab"] = self.lab_id
        return res.inserted_id

    def _lab_optional(self, doc: Dict[str, Any]) -> bool:
        # super_admin accounts and system-wide log rows belong to no lab
        if self.name == "user":
            return doc.get("role") == "super_admin"
        return self.name == "systemlog"

    def update_one(self, filter: Dict[str, Any], update: Dict[str, Any]) -> int:
        return self.collection.update_one(self._scoped(filter), self._protect(update)).modified_count

    def find_one_and_update(self, filter: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.collection.find_one_and_update(
            self._scoped(filter), self._protect(update), return_document=ReturnDocument.AFTER
        )

    def delete_one(self, filter: Dict[str, Any]) -> int:
        return self.collection.delete_one(self._scoped(filter)).deleted_count

    def delete_many(self, filter: Dict[str, Any]) -> int:
        return self.collection.delete_many(self._scoped(filter)).deleted_count

    def _protect(self, update: Dict[str, Any]) -> Dict[str, Any]:
        # a scoped handle may not move a row into another lab
        if self.lab_id is None:
            return update
        protected = {}
        for op, fields in update.items():
            if isinstance(fields, dict):
                fields = {k: v for k, v in fields.items() if k != "lab"}
            protected[op] = fields
        return protected


class TenantStore:
    """Collections of one request, bound to the caller's tenant."""

    def __init__(self, db, lab_id: Optional[ObjectId]):
        self.db = db
        self.lab_id = lab_id
        self.labs = db["lab"]
        self.users = ScopedCollection(db["user"], lab_id)
        self.patients = ScopedCollection(db["patient"], lab_id)
        self.reports = ScopedCollection(db["report"], lab_id)
        self.logs = ScopedCollection(db["systemlog"], lab_id)

    @property
    def is_global(self) -> bool:
        return self.lab_id is None

    @classmethod
    def system(cls, db) -> "TenantStore":
        """Unscoped handle for authentication and super-admin maintenance."""
        return cls(db, None)

    def for_lab(self, lab_id: ObjectId) -> "TenantStore":
        """Narrow a global handle to one lab. A bound handle cannot be re-pointed."""
        if self.lab_id is not None and self.lab_id != lab_id:
            raise Forbidden("Tenant scope cannot be changed")
        return TenantStore(self.db, lab_id)
