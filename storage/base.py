"""
Document store abstraction used by the session services.

A store holds JSON-compatible documents grouped into logical collections
and addressed by string ids. Backends must provide atomic numeric increment
and a ``commit`` that applies a batch of writes as one unit.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

SESSIONS = "sessions"
TURNS = "turns"
CONTEXT_RULES = "context_rules"
CONTEXT_TEMPLATES = "context_templates"
SESSION_ANALYTICS = "session_analytics"
METRICS = "metrics"

FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=")


class StoreError(Exception):
    """Document store failure - wraps backend exceptions."""
    pass


class DocumentNotFoundError(StoreError):
    """Update or increment targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


@dataclass(frozen=True)
class FieldFilter:
    """Equality or range condition on a (possibly dotted) field."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, document: Dict[str, Any]) -> bool:
        actual = get_field(document, self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if actual is None:
            return False
        try:
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            return actual >= self.value
        except TypeError:
            return False


@dataclass(frozen=True)
class Write:
    """One write inside a batch ``commit``."""
    kind: str  # set | update | delete | increment
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Dict[str, Any]) -> "Write":
        return cls("set", collection, doc_id, data)

    @classmethod
    def update(cls, collection: str, doc_id: str, fields: Dict[str, Any]) -> "Write":
        return cls("update", collection, doc_id, fields)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "Write":
        return cls("delete", collection, doc_id)

    @classmethod
    def increment(cls, collection: str, doc_id: str, field_name: str, amount: float = 1) -> "Write":
        return cls("increment", collection, doc_id, {field_name: amount})


def get_field(document: Dict[str, Any], path: str) -> Any:
    """Read a dotted field path, returning None when any step is missing."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def order_documents(
    documents: Iterable[Dict[str, Any]],
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Sort and truncate query results; documents missing the key sort first."""
    results = list(documents)
    if order_by:
        results.sort(
            key=lambda doc: (get_field(doc, order_by) is not None, get_field(doc, order_by)),
            reverse=descending,
        )
    if limit is not None:
        results = results[:limit]
    return results


class DocumentStore(ABC):
    """Abstract document store."""

    name = "abstract"

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document or None."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge top-level fields into an existing document."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is not an error."""

    @abstractmethod
    def increment(self, collection: str, doc_id: str, field_name: str, amount: float = 1) -> float:
        """Atomically add to a numeric field and return the new value."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Optional[List[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents matching every filter."""

    @abstractmethod
    def commit(self, writes: List[Write]) -> None:
        """Apply all writes as one unit."""

    def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "backend": self.name}
