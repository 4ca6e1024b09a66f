"""
MongoDB access for the storefront.

The connection is owned by a `Database` handle that the application opens on
startup and closes on shutdown; routes receive the database through the
`get_db` dependency in main.py.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database as MongoDatabase

logger = logging.getLogger(__name__)


def ensure_indexes(db: MongoDatabase) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["product"].create_index([("product_id", ASCENDING)], unique=True)


class Database:
    def __init__(self, url: Optional[str] = None, name: Optional[str] = None):
        self.url = url or os.getenv("DATABASE_URL")
        self.name = name or os.getenv("DATABASE_NAME")
        self.client: Optional[MongoClient] = None
        self.db: Optional[MongoDatabase] = None

    def connect(self) -> Optional[MongoDatabase]:
        if not self.url or not self.name:
            logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")
            return None
        self.client = MongoClient(self.url)
        self.db = self.client[self.name]
        ensure_indexes(self.db)
        logger.info("Connected to MongoDB database %s", self.name)
        return self.db

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            logger.info("Closed MongoDB connection")
        self.client = None
        self.db = None


def create_document(db: MongoDatabase, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    now = datetime.now(timezone.utc)
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: MongoDatabase,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
