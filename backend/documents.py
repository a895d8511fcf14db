from datetime import datetime, timezone
from typing import Optional, Type

from bson import ObjectId
from bson.errors import InvalidId

from errors import InvalidArgument


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(
    value: Optional[str],
    label: str,
    error_class: Type[InvalidArgument] = InvalidArgument,
) -> ObjectId:
    """Turn a hex identifier from a query string into an ObjectId.

    Empty values and malformed hex both raise ``error_class`` so callers can
    report which identifier was wrong without leaking parser details.
    """
    if isinstance(value, ObjectId):
        return value
    normalized = str(value or "").strip()
    if not normalized:
        raise error_class(f"{label} is empty")
    try:
        return ObjectId(normalized)
    except (InvalidId, TypeError):
        raise error_class(f"{label} is not valid")


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def serialize_document(value):
    """Recursively convert a Mongo document into JSON friendly values."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {str(key): serialize_document(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_document(item) for item in value]
    return value
