"""
MongoDB access

One client per process, opened lazily on first use and shared by every
request handler. Collection names are the lowercase of the schema class.
"""
import threading
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import config
from logging_config import get_logger

logger = get_logger(__name__)


class MongoConnection:
    def __init__(self, url: str, name: str, timeout_ms: int = 5000):
        self.url = url
        self.name = name
        self.timeout_ms = timeout_ms
        self._client: Optional[MongoClient] = None
        self._lock = threading.Lock()

    @property
    def db(self) -> Database:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    self._client = MongoClient(self.url, serverSelectionTimeoutMS=self.timeout_ms)
                    logger.info("mongo_client_created", database=self.name)
        return self._client[self.name]

    def close(self):
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                logger.info("mongo_client_closed", database=self.name)


connection = MongoConnection(config.DATABASE_URL, config.DATABASE_NAME, config.DATABASE_TIMEOUT_MS)


def get_db() -> Database:
    """FastAPI dependency returning the shared database handle."""
    return connection.db


def ensure_indexes(db: Database):
    db["product"].create_index("slug", unique=True)
    db["product"].create_index([("is_active", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index("orderNumber", unique=True)
    db["order"].create_index("status")
    db["admin"].create_index("username", unique=True)
    db["admin"].create_index("email", unique=True)


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(db: Database, collection_name: str, data: dict) -> dict:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    stamp = now()
    doc = {**data, "created_at": stamp, "updated_at": stamp}
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def next_sequence(db: Database, name: str) -> int:
    """Atomically increment and return the named counter."""
    counter = db["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]
