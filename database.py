"""
MongoDB access for the academy API

One MongoClient per process; the driver's built-in pool handles concurrency.
Every document leaving this module has a string ``id``.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, TEXT
from pymongo.errors import PyMongoError

from cache import query_cache

logger = logging.getLogger(__name__)

MONGODB_URI = os.getenv("MONGODB_URI")
MONGODB_DB = os.getenv("MONGODB_DB")

if not MONGODB_URI:
    raise RuntimeError('Invalid/Missing environment variable: "MONGODB_URI"')
if not MONGODB_DB:
    raise RuntimeError('Invalid/Missing environment variable: "MONGODB_DB"')

# --- Collections ---
USERS = "ams-users"
PLAYER_DATA = "ams-player-data"
COACHES = "ams-coaches"
BATCHES = "ams-batches"
SESSIONS = "ams-sessions"
FINANCE = "ams-finance"
ATTENDANCE = "ams-attendance"
ACADEMY = "ams-academy"
ABOUT = "ams-about"
CREDENTIALS = "ams-credentials"
ACHIEVEMENT = "ams-achievement"

COLLECTIONS = (USERS, PLAYER_DATA, COACHES, BATCHES, SESSIONS, FINANCE, ATTENDANCE, ACADEMY, ABOUT, CREDENTIALS, ACHIEVEMENT)

client = MongoClient(MONGODB_URI)
db = client[MONGODB_DB]


def get_db():
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Map a raw document to the canonical shape with a string ``id``."""
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])
    app_id = d.get("id")
    if app_id is None or app_id == "":
        d["id"] = d.get("_id", "")
    else:
        d["id"] = str(app_id)
    return d


def id_query(doc_id: str) -> Dict[str, Any]:
    """Match a document by application id or by Mongo _id."""
    clauses: List[Dict[str, Any]] = [{"id": doc_id}]
    if ObjectId.is_valid(doc_id):
        clauses.append({"_id": ObjectId(doc_id)})
    return {"$or": clauses}


def ids_query(doc_ids: List[str], fields: Tuple[str, ...] = ("id", "userId")) -> Dict[str, Any]:
    """Match any of ``doc_ids`` against the given id fields or Mongo _id."""
    ids = [str(i) for i in doc_ids]
    clauses: List[Dict[str, Any]] = [{f: {"$in": ids}} for f in fields]
    oids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    if oids:
        clauses.append({"_id": {"$in": oids}})
    return {"$or": clauses}


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    if not doc.get("id"):
        doc["id"] = str(ObjectId())
    get_db()[collection_name].insert_one(doc)
    query_cache.invalidate_prefix(f"{collection_name}:")
    return doc["id"]


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = get_db()[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [normalize_id(d) for d in cursor]


def find_one(collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    return normalize_id(get_db()[collection_name].find_one(id_query(doc_id)))


def _cache_key(collection_name: str, academy_id: str, filters: Dict[str, Any]) -> str:
    extra = ",".join(f"{k}={filters[k]!r}" for k in sorted(filters))
    return f"{collection_name}:{academy_id}:{extra}"


def fetch_collection(collection_name: str, academy_id: str, use_cache: bool = True, **filters: Any) -> List[Dict[str, Any]]:
    """
    Fetch every document of an academy, plus optional secondary filters.

    Returns an empty list on any database error; the failure is logged and
    not retried.
    """
    query = {"academyId": academy_id, **filters}

    def load():
        return get_documents(collection_name, query)

    try:
        if use_cache:
            docs = query_cache.cached(_cache_key(collection_name, academy_id, filters), load)
        else:
            docs = load()
    except PyMongoError as e:
        logger.error("Failed to fetch %s for academy %s: %s", collection_name, academy_id, e)
        return []
    return [dict(d) for d in docs]


def create_indexes() -> bool:
    """Best-effort index creation; errors are logged, never raised."""
    try:
        sessions = get_db()[SESSIONS]
        sessions.create_index([("id", ASCENDING)], name="id_index")
        sessions.create_index([("academyId", ASCENDING)], name="academy_index")
        sessions.create_index([("parentSessionId", ASCENDING)], name="parent_session_index")
        sessions.create_index([("assignedPlayers", ASCENDING)], name="players_index")
        sessions.create_index([("status", ASCENDING)], name="status_index")
        sessions.create_index([("date", ASCENDING)], name="date_index")
        sessions.create_index([("academyId", ASCENDING), ("parentSessionId", ASCENDING)], name="academy_parent_compound")
        sessions.create_index([("academyId", ASCENDING), ("status", ASCENDING)], name="academy_status_compound")

        players = get_db()[PLAYER_DATA]
        players.create_index([("id", ASCENDING)], name="id_index")
        players.create_index([("academyId", ASCENDING)], name="academy_index")
        players.create_index([("name", TEXT)], name="name_text")

        batches = get_db()[BATCHES]
        batches.create_index([("id", ASCENDING)], name="id_index")
        batches.create_index([("academyId", ASCENDING)], name="academy_index")
        batches.create_index([("players", ASCENDING)], name="players_index")

        # Fails on legacy data that already holds duplicates; logged below.
        get_db()[ATTENDANCE].create_index(
            [("academyId", ASCENDING), ("userId", ASCENDING), ("date", ASCENDING), ("type", ASCENDING)],
            name="attendance_unique",
            unique=True,
        )
    except PyMongoError as e:
        logger.error("Error creating indexes: %s", e)
        return False
    logger.info("Database indexes created successfully")
    return True


def ping() -> bool:
    try:
        get_db().command("ping")
        return True
    except PyMongoError as e:
        logger.error("Database connection check failed: %s", e)
        return False
