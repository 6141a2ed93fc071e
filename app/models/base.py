from datetime import datetime, timezone

from bson import ObjectId
from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Globally unique identifier for debts and attempts (ObjectId hex)."""
    return str(ObjectId())


def is_valid_id(value: str) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


class DocumentModel(BaseModel):
    """Base for models persisted as MongoDB documents."""

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
        from_attributes=True
    )
