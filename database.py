"""
MongoDB connection and document helpers.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is
missing, `db` stays None and every request fails with DatabaseUnavailable.
"""
import os
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import DatabaseUnavailable, ValidationFailed
from money import from_cents

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DatabaseUnavailable()
    return db


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", ASCENDING)])
    database["review"].create_index([("product", ASCENDING), ("user", ASCENDING)], unique=True)


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def parse_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationFailed(f"Invalid {label}")
    return ObjectId(value)


def serialize_doc(doc: Any) -> Any:
    """
    Turn a stored document into JSON-friendly data.

    `_id` becomes `id`, ObjectIds become strings, datetimes become ISO strings
    and `<name>_cents` integers become decimal `<name>` amounts.
    """
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, (datetime, date)):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif k.endswith("_cents") and isinstance(v, int):
            out[k[: -len("_cents")]] = from_cents(v)
        else:
            out[k] = serialize_doc(v)
    return out
