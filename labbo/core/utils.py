# labbo/core/utils.py
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from bson import ObjectId
from fastapi import HTTPException, status
from loguru import logger
from pydantic import BaseModel, ValidationError
from pymongo import ReturnDocument

from labbo.models.counter import SequenceCounter

ResponseT = TypeVar("ResponseT", bound=BaseModel)


# --- Time helpers ---
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def date_to_utc(value: date) -> datetime:
    """Calendar date -> midnight UTC datetime (the form dates are stored in)."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


# --- ObjectId helpers ---
def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {label} format.")
    return ObjectId(value)


def to_response(doc: Any, schema: Type[ResponseT], **extra: Any) -> ResponseT:
    """Dump a Beanie document, stringify its id and validate it into a response schema."""
    if doc is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error preparing response.")
    data: Dict[str, Any] = doc.model_dump()
    data["id"] = str(doc.id)
    for key, value in data.items():
        if isinstance(value, ObjectId):
            data[key] = str(value)
        elif isinstance(value, datetime):
            data[key] = ensure_utc(value)
    data.update(extra)
    try:
        return schema.model_validate(data)
    except ValidationError as ve:
        logger.error(f"Response validation failed for {type(doc).__name__} {doc.id}: {ve}")
        raise HTTPException(status_code=500, detail="Error preparing response.") from ve


# --- Sequences ---
async def get_next_sequence_value(sequence_name: str) -> int:
    """Atomically increment and return the named sequence."""
    collection = SequenceCounter.get_motor_collection()
    try:
        updated_doc = await collection.find_one_and_update(
            {"_id": sequence_name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
    except Exception as e:
        logger.error(f"Error in get_next_sequence_value for '{sequence_name}': {e}", exc_info=True)
        raise RuntimeError(f"Database error accessing sequence counter '{sequence_name}'") from e

    if not updated_doc or "value" not in updated_doc:
        logger.error(f"Sequence counter '{sequence_name}' was not returned after upsert.")
        raise RuntimeError(f"Failed to get or create sequence counter: {sequence_name}")
    logger.debug(f"Next sequence value for '{sequence_name}': {updated_doc['value']}")
    return updated_doc["value"]
