"""
Document storage for ledger records.

Every record is a JSON-compatible dict with a string ``id``. Collections:

- customers, wallets, payments, orders, medicines, connection_requests, otps

Writes replace a whole document at a time; the backend's single-document
atomicity is the only guarantee relied upon. Two concurrent read-modify-write
cycles against the same wallet can still race.
"""

import copy
import logging
from typing import Any, Optional

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

from .errors import DuplicateKeyError
from .models import EXACT, OTPRecord

logger = logging.getLogger(__name__)


CUSTOMERS = "customers"
WALLETS = "wallets"
PAYMENTS = "payments"
ORDERS = "orders"
MEDICINES = "medicines"
CONNECTION_REQUESTS = "connection_requests"
OTPS = "otps"

UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    CUSTOMERS: ("email", "username", "phone"),
    WALLETS: ("customer_id",),
    MEDICINES: ("name",),
    CONNECTION_REQUESTS: ("email", "phone"),
    OTPS: ("identifier",),
}


def to_document(model: BaseModel) -> dict:
    return model.model_dump(mode="json", context=EXACT)


class InMemoryStorage:
    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}

    def _collection(self, name: str) -> dict[str, dict]:
        return self.collections.setdefault(name, {})

    def _check_unique(self, collection: str, doc: dict) -> None:
        for field in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(field)
            if value is None:
                continue
            for other in self._collection(collection).values():
                if other["id"] != doc["id"] and other.get(field) == value:
                    raise DuplicateKeyError(field)

    def insert(self, collection: str, doc: dict) -> dict:
        docs = self._collection(collection)
        if doc["id"] in docs:
            raise DuplicateKeyError("id")
        self._check_unique(collection, doc)
        docs[doc["id"]] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    def replace(self, collection: str, doc: dict) -> None:
        docs = self._collection(collection)
        if doc["id"] not in docs:
            raise KeyError(f"{collection}/{doc['id']} does not exist")
        self._check_unique(collection, doc)
        docs[doc["id"]] = copy.deepcopy(doc)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection: str, **filters: Any) -> list[dict]:
        return [
            copy.deepcopy(doc) for doc in self._collection(collection).values()
            if all(doc.get(k) == v for k, v in filters.items())
        ]

    def find_one(self, collection: str, **filters: Any) -> Optional[dict]:
        matches = self.find(collection, **filters)
        return matches[0] if matches else None

    def delete(self, collection: str, doc_id: str) -> bool:
        return self._collection(collection).pop(doc_id, None) is not None


class MongoStorage:
    """Same contract as InMemoryStorage, backed by a MongoDB database.

    The record id lives in ``_id``; it is mapped back to ``id`` on read.
    """

    def __init__(self, uri: str, db_name: str, client: Optional[MongoClient] = None):
        self.client = client or MongoClient(uri)
        self.db = self.client[db_name]
        for collection, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self.db[collection].create_index([(field, ASCENDING)], unique=True, sparse=True)
        # Expired OTP records are purged by the server; verify() still checks expiry itself.
        self.db[OTPS].create_index([("expires_at_dt", ASCENDING)], expireAfterSeconds=0)
        logger.info("Connected to MongoDB database %s", db_name)

    @staticmethod
    def _to_mongo(collection: str, doc: dict) -> dict:
        stored = {k: v for k, v in doc.items() if k != "id"}
        stored["_id"] = doc["id"]
        if collection == OTPS:
            # TTL indexes only act on BSON dates, not the ISO string kept in expires_at.
            stored["expires_at_dt"] = OTPRecord(**doc).expires_at
        return stored

    @staticmethod
    def _from_mongo(doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = doc.pop("_id")
        doc.pop("expires_at_dt", None)
        return doc

    def _translate_duplicate(self, collection: str, doc: dict, exc) -> DuplicateKeyError:
        key_value = (exc.details or {}).get("keyValue") or {}
        field = next(iter(key_value), None)
        if field is None:
            # Without keyValue in the error details, look up the clashing field directly.
            field = next(
                (
                    f for f in UNIQUE_FIELDS.get(collection, ())
                    if doc.get(f) is not None
                    and self.db[collection].find_one({f: doc[f], "_id": {"$ne": doc["id"]}})
                ),
                "id",
            )
        return DuplicateKeyError("id" if field == "_id" else field)

    def insert(self, collection: str, doc: dict) -> dict:
        try:
            self.db[collection].insert_one(self._to_mongo(collection, doc))
        except MongoDuplicateKeyError as exc:
            raise self._translate_duplicate(collection, doc, exc) from exc
        return dict(doc)

    def replace(self, collection: str, doc: dict) -> None:
        try:
            result = self.db[collection].replace_one({"_id": doc["id"]}, self._to_mongo(collection, doc))
        except MongoDuplicateKeyError as exc:
            raise self._translate_duplicate(collection, doc, exc) from exc
        if result.matched_count == 0:
            raise KeyError(f"{collection}/{doc['id']} does not exist")

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._from_mongo(self.db[collection].find_one({"_id": doc_id}))

    def find(self, collection: str, **filters: Any) -> list[dict]:
        query = {("_id" if k == "id" else k): v for k, v in filters.items()}
        return [self._from_mongo(d) for d in self.db[collection].find(query)]

    def find_one(self, collection: str, **filters: Any) -> Optional[dict]:
        query = {("_id" if k == "id" else k): v for k, v in filters.items()}
        return self._from_mongo(self.db[collection].find_one(query))

    def delete(self, collection: str, doc_id: str) -> bool:
        return self.db[collection].delete_one({"_id": doc_id}).deleted_count > 0
