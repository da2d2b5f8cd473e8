"""
Helper utility functions
"""
from bson import ObjectId
from bson.errors import InvalidId
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import pytz

from fitledger.config.settings import settings

DISPLAY_TZ = pytz.timezone(settings.DISPLAY_TIMEZONE)


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise an incoming datetime to naive UTC before it touches the database"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for a hex string (or ObjectId), None when it is not a valid id"""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Dict) -> Dict:
    """Convert MongoDB document to JSON-serializable format"""
    if doc is None:
        return None

    if "_id" in doc and isinstance(doc["_id"], ObjectId):
        doc["_id"] = str(doc["_id"])

    # Convert any nested ObjectIds or datetimes
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            doc[key] = str(value)
        elif isinstance(value, datetime):
            if value.tzinfo is None:
                utc_dt = pytz.utc.localize(value)
                doc[key] = utc_dt.astimezone(DISPLAY_TZ).isoformat()
            else:
                doc[key] = value.astimezone(DISPLAY_TZ).isoformat()
        elif isinstance(value, list):
            doc[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item
                for item in value
            ]
        elif isinstance(value, dict):
            doc[key] = serialize_doc(value)

    return doc


def serialize_docs(docs: List[Dict]) -> List[Dict]:
    """Convert list of MongoDB documents to JSON-serializable format"""
    return [serialize_doc(doc) for doc in docs]


def clamp_page(skip: int, limit: int) -> tuple[int, int]:
    """Keep pagination inside the configured bounds"""
    skip = max(0, skip)
    if limit <= 0:
        limit = settings.DEFAULT_PAGE_SIZE
    return skip, min(limit, settings.MAX_PAGE_SIZE)
