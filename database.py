"""
MongoDB access

A single `db` handle shared by the API. Collections are named after the
lowercased schema class (see schemas.py).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient

from settings import settings

logger = logging.getLogger(__name__)

client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
db = client[settings.database_name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    else:
        data = dict(data)
    now = datetime.now(timezone.utc)
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes() -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["image"].create_index(
        [("title", TEXT), ("description", TEXT), ("tags", TEXT), ("category", TEXT)],
        name="image_text",
    )
    db["product"].create_index(
        [("name", TEXT), ("description", TEXT), ("category", TEXT)],
        name="product_text",
    )
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index([("payment_info.transaction_id", ASCENDING)])
    db["booking"].create_index([("client_id", ASCENDING), ("date", ASCENDING)])
    db["booking"].create_index([("photographer_id", ASCENDING), ("date", ASCENDING)])
    db["booking"].create_index([("status", ASCENDING)])
    db["booking"].create_index([("calendly_event_id", ASCENDING)], sparse=True)
    logger.info("MongoDB indexes ensured on %s", settings.database_name)
