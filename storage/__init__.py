"""Document store backends for the session context service."""

from .base import (
    DocumentStore, DocumentNotFoundError, FieldFilter, StoreError, Write,
    SESSIONS, TURNS, CONTEXT_RULES, CONTEXT_TEMPLATES, SESSION_ANALYTICS, METRICS
)
from .memory import InMemoryDocumentStore

__all__ = [
    "DocumentStore", "DocumentNotFoundError", "FieldFilter", "StoreError", "Write",
    "SESSIONS", "TURNS", "CONTEXT_RULES", "CONTEXT_TEMPLATES", "SESSION_ANALYTICS", "METRICS",
    "InMemoryDocumentStore",
]
