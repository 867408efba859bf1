"""
Shared helpers for models persisted in the document store.

Documents are plain JSON-compatible dicts. Timestamps are stored as epoch
seconds so that range filters behave the same on every store backend;
pydantic parses them back into aware UTC datetimes on load.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound="DocumentModel")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_document_value(value: Any) -> Any:
    """Convert a python value into its stored representation."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return to_document_value(value.model_dump())
    if isinstance(value, dict):
        return {str(k): to_document_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_document_value(v) for v in value]
    return value


class DocumentModel(BaseModel):
    """Base model with document store (de)serialization."""

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a store document."""
        return to_document_value(self.model_dump())

    @classmethod
    def from_document(cls: Type[T], data: Dict[str, Any]) -> T:
        """Build the model from a store document."""
        return cls.model_validate(data)
