"""
MongoDB access layer.

The application is handed a pymongo Database explicitly (see
main.create_app); each entity gets a small repository wrapping its
collection. Collection names follow the schema convention: the lowercase
of the schema class name (PlantSpecies -> "plantspecies").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC, the form MongoDB stores and returns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url)
    logger.info("Using MongoDB database %s", settings.database_name)
    return client[settings.database_name]


def to_str_id(doc: Optional[dict]):
    if doc is None:
        return None
    d = {k: _stringify(v) for k, v in doc.items()}
    if "_id" in d:
        d["id"] = d.pop("_id")
    return d


def _stringify(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return value


def parse_object_id(value, label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFoundError(f"{label} not found")
    return ObjectId(str(value))


class MongoRepository:
    collection_name: str = ""
    conflict_message = "Document already exists"

    def __init__(self, db: Database):
        self.collection = db[self.collection_name]

    def ensure_indexes(self):
        pass

    def create_document(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        doc = dict(data)
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        try:
            result = self.collection.insert_one(doc)
        except DuplicateKeyError:
            # Lost a race against the pre-insert uniqueness check
            raise ConflictError(self.conflict_message)
        doc["_id"] = result.inserted_id
        return doc

    def get_document(self, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.collection.find_one(filter_dict)

    def get_by_id(self, doc_id: ObjectId) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": doc_id})

    def get_documents(self, filter_dict: Optional[Dict[str, Any]] = None,
                      sort: Optional[List[Tuple[str, int]]] = None,
                      skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.collection.find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count_documents(self, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.collection.count_documents(filter_dict or {})

    def update_document(self, filter_dict: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply one atomic update and return the document as it is afterwards."""
        update = dict(update)
        update.setdefault("$set", {})
        update["$set"] = {**update["$set"], "updated_at": utcnow()}
        try:
            return self.collection.find_one_and_update(
                filter_dict, update, return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            raise ConflictError(self.conflict_message)

    def delete_document(self, doc_id: ObjectId) -> bool:
        return self.collection.delete_one({"_id": doc_id}).deleted_count == 1


class SpeciesRepository(MongoRepository):
    collection_name = "plantspecies"
    conflict_message = "Plant species name or code already exists"

    def ensure_indexes(self):
        self.collection.create_index([("name", ASCENDING)], unique=True)
        self.collection.create_index([("code", ASCENDING)], unique=True)
        self.collection.create_index([("category", ASCENDING)])
        self.collection.create_index([("is_active", ASCENDING)])


class LotRepository(MongoRepository):
    collection_name = "plantlot"
    conflict_message = "Lot ID already exists"

    def ensure_indexes(self):
        self.collection.create_index([("lot_id", ASCENDING)], unique=True)
        self.collection.create_index([("species_id", ASCENDING)])
        self.collection.create_index([("zone", ASCENDING), ("location_id", ASCENDING)])
        self.collection.create_index([("health_status", ASCENDING)])
        self.collection.create_index([("planted_date", ASCENDING)])
        self.collection.create_index([("is_active", ASCENDING)])
        self.collection.create_index([("assigned_to", ASCENDING)])


class UserRepository(MongoRepository):
    collection_name = "user"
    conflict_message = "Email is already registered"

    def ensure_indexes(self):
        self.collection.create_index([("email", ASCENDING)], unique=True)
        self.collection.create_index([("role", ASCENDING)])
