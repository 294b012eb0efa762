"""
MongoDB access helpers.

A single client is created at import time (pymongo connects lazily). Route
handlers receive the database through the ``get_db`` dependency so tests can
swap in another one.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL)
db: Optional[Database] = client[config.DATABASE_NAME]


def get_db() -> Database:
    return db


def ensure_indexes(database: Database):
    """Create the indexes the API relies on (unique email, open bag lookup)."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["shoppingbag"].create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    database["book"].create_index([("status", ASCENDING), ("stock", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING)])
    database["author"].create_index([("name", ASCENDING)])
    database["profile"].create_index([("user_id", ASCENDING)], unique=True)
    logger.info(f"Indexes ensured on {database.name}")


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str."""
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if key == "_id":
                out["id"] = str(item)
            else:
                out[key] = serialize(item)
        return out
    if isinstance(value, ObjectId):
        return str(value)
    return value
