"""
In-process document store for tests and single-instance development.
"""

import copy
import threading
from typing import Any, Dict, List, Optional

from logger import get_logger

from .base import (
    DocumentNotFoundError, DocumentStore, FieldFilter, StoreError, Write,
    order_documents
)

logger = get_logger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-of-dicts store. Documents are copied in and out."""

    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._apply(self._collections, Write.set(collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self._apply(self._collections, Write.update(collection, doc_id, fields))

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._apply(self._collections, Write.delete(collection, doc_id))

    def increment(self, collection: str, doc_id: str, field_name: str, amount: float = 1) -> float:
        with self._lock:
            self._apply(self._collections, Write.increment(collection, doc_id, field_name, amount))
            return self._collections[collection][doc_id][field_name]

    def query(
        self,
        collection: str,
        filters: Optional[List[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or []
        with self._lock:
            matched = [
                copy.deepcopy(doc)
                for doc in self._collections.get(collection, {}).values()
                if all(f.matches(doc) for f in filters)
            ]
        return order_documents(matched, order_by, descending, limit)

    def commit(self, writes: List[Write]) -> None:
        with self._lock:
            touched = {w.collection for w in writes}
            staged = {
                name: copy.deepcopy(self._collections.get(name, {}))
                for name in touched
            }
            for write in writes:
                self._apply(staged, write)
            self._collections.update(staged)
        logger.debug("Committed batch", writes=len(writes), collections=sorted(touched))

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()

    @staticmethod
    def _apply(collections: Dict[str, Dict[str, Dict[str, Any]]], write: Write) -> None:
        docs = collections.setdefault(write.collection, {})
        if write.kind == "set":
            docs[write.doc_id] = copy.deepcopy(write.data)
        elif write.kind == "update":
            if write.doc_id not in docs:
                raise DocumentNotFoundError(write.collection, write.doc_id)
            docs[write.doc_id].update(copy.deepcopy(write.data))
        elif write.kind == "delete":
            docs.pop(write.doc_id, None)
        elif write.kind == "increment":
            if write.doc_id not in docs:
                raise DocumentNotFoundError(write.collection, write.doc_id)
            doc = docs[write.doc_id]
            for field_name, amount in write.data.items():
                doc[field_name] = (doc.get(field_name) or 0) + amount
        else:
            raise StoreError(f"Unknown write kind: {write.kind}")
