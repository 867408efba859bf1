"""
Qdrant-backed document store.

Documents live as payload-only points (no vectors) in a single Qdrant
collection. The logical collection and document id are kept in reserved
payload keys and the point id is derived from both, so every logical
collection shares one set of payload indexes and a batch ``commit`` maps
onto a single ``batch_update_points`` request.
"""

import time
import uuid
from typing import Any, Dict, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.models import (
    DeleteOperation, FieldCondition, Filter, MatchValue, PayloadSchemaType,
    PointIdsList, PointStruct, PointsList, Range, SetPayload,
    SetPayloadOperation, UpsertOperation
)

from logger import get_logger

from .base import (
    DocumentNotFoundError, DocumentStore, FieldFilter, StoreError, Write,
    order_documents
)

logger = get_logger(__name__)

COLLECTION_KEY = "_collection"
ID_KEY = "_id"
RESERVED_KEYS = (COLLECTION_KEY, ID_KEY)

POINT_NAMESPACE = uuid.UUID("6f1c1d8e-3b7a-4d55-9a39-2f0b8c6e4a10")

INDEXED_FIELDS = {
    COLLECTION_KEY: PayloadSchemaType.KEYWORD,
    "session_id": PayloadSchemaType.KEYWORD,
    "user_id": PayloadSchemaType.KEYWORD,
    "status": PayloadSchemaType.KEYWORD,
    "enabled": PayloadSchemaType.BOOL,
    "priority": PayloadSchemaType.INTEGER,
    "last_activity": PayloadSchemaType.FLOAT,
    "start_time": PayloadSchemaType.FLOAT,
    "created_at": PayloadSchemaType.FLOAT,
}

SCROLL_PAGE_SIZE = 256


def point_id(collection: str, doc_id: str) -> str:
    """Deterministic Qdrant point id for a logical document."""
    return str(uuid.uuid5(POINT_NAMESPACE, f"{collection}/{doc_id}"))


class QdrantDocumentStore(DocumentStore):
    """
    Document store over Qdrant payloads.

    Qdrant has no server-side increment, so ``increment`` reads and rewrites
    the field. Callers serialize writes per session before reaching the store.
    """

    name = "qdrant"

    def __init__(self, client: QdrantClient, collection_name: str = "session_documents"):
        """
        Initialize the store.

        Args:
            client: Connected Qdrant client
            collection_name: Physical Qdrant collection holding all documents
        """
        self.client = client
        self.collection_name = collection_name

    def ensure_collection(self) -> bool:
        """
        Create the physical collection and payload indexes if missing.

        Returns:
            bool: True if the collection was created
        """
        try:
            existing = [c.name for c in self.client.get_collections().collections]
            if self.collection_name in existing:
                return False

            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config={},
            )
            for field_name, schema in INDEXED_FIELDS.items():
                self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )
            logger.info(f"[QDRANT] Created document collection: {self.collection_name}")
            return True
        except Exception as e:
            logger.error(f"[QDRANT] Failed to provision collection: {type(e).__name__}: {e}")
            raise StoreError(f"Failed to provision collection '{self.collection_name}': {e}") from e

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        start = time.time()
        try:
            records = self.client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id(collection, doc_id)],
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise StoreError(f"Failed to read {collection}/{doc_id}: {e}") from e
        logger.store_op("get", collection, (time.time() - start) * 1000, doc_id=doc_id)

        if not records:
            return None
        return self._strip(records[0].payload)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.commit([Write.set(collection, doc_id, data)])

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self.commit([Write.update(collection, doc_id, fields)])

    def delete(self, collection: str, doc_id: str) -> None:
        self.commit([Write.delete(collection, doc_id)])

    def increment(self, collection: str, doc_id: str, field_name: str, amount: float = 1) -> float:
        self.commit([Write.increment(collection, doc_id, field_name, amount)])
        doc = self.get(collection, doc_id) or {}
        return doc.get(field_name, 0)

    def query(
        self,
        collection: str,
        filters: Optional[List[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        start = time.time()
        scroll_filter = self._build_filter(collection, filters or [])
        documents: List[Dict[str, Any]] = []
        offset = None

        try:
            while True:
                records, offset = self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_PAGE_SIZE,
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                documents.extend(self._strip(r.payload) for r in records)
                if offset is None:
                    break
        except Exception as e:
            raise StoreError(f"Failed to query {collection}: {e}") from e

        logger.store_op("query", collection, (time.time() - start) * 1000, results=len(documents))
        return order_documents(documents, order_by, descending, limit)

    def commit(self, writes: List[Write]) -> None:
        if not writes:
            return
        start = time.time()
        operations = [self._to_operation(w, writes[:i]) for i, w in enumerate(writes)]

        try:
            self.client.batch_update_points(
                collection_name=self.collection_name,
                update_operations=operations,
                wait=True,
            )
        except Exception as e:
            raise StoreError(f"Failed to commit {len(writes)} writes: {e}") from e

        logger.store_op(
            "commit",
            ",".join(sorted({w.collection for w in writes})),
            (time.time() - start) * 1000,
            writes=len(writes)
        )

    def health_check(self) -> Dict[str, Any]:
        try:
            info = self.client.get_collection(self.collection_name)
            return {
                "healthy": True,
                "backend": self.name,
                "collection": self.collection_name,
                "points_count": info.points_count or 0,
            }
        except Exception as e:
            return {
                "healthy": False,
                "backend": self.name,
                "exception_type": type(e).__name__,
                "exception_message": str(e),
            }

    def _to_operation(self, write: Write, earlier: List[Write]):
        pid = point_id(write.collection, write.doc_id)

        if write.kind == "set":
            payload = {**write.data, COLLECTION_KEY: write.collection, ID_KEY: write.doc_id}
            return UpsertOperation(upsert=PointsList(points=[
                PointStruct(id=pid, vector={}, payload=payload)
            ]))

        if write.kind == "delete":
            return DeleteOperation(delete=PointIdsList(points=[pid]))

        created_in_batch = any(
            w.kind == "set" and w.collection == write.collection and w.doc_id == write.doc_id
            for w in earlier
        )
        current = None if created_in_batch else self.get(write.collection, write.doc_id)
        if current is None and not created_in_batch:
            raise DocumentNotFoundError(write.collection, write.doc_id)

        if write.kind == "update":
            payload = dict(write.data)
        elif write.kind == "increment":
            base = current or self._pending_fields(write, earlier)
            payload = {
                name: (base.get(name) or 0) + amount
                for name, amount in write.data.items()
            }
        else:
            raise StoreError(f"Unknown write kind: {write.kind}")

        return SetPayloadOperation(set_payload=SetPayload(payload=payload, points=[pid]))

    @staticmethod
    def _pending_fields(write: Write, earlier: List[Write]) -> Dict[str, Any]:
        """Fields of a document created earlier in the same batch."""
        fields: Dict[str, Any] = {}
        for w in earlier:
            if w.collection == write.collection and w.doc_id == write.doc_id and w.kind in ("set", "update"):
                fields.update(w.data)
        return fields

    @staticmethod
    def _build_filter(collection: str, filters: List[FieldFilter]) -> Filter:
        must = [FieldCondition(key=COLLECTION_KEY, match=MatchValue(value=collection))]
        must_not = []

        for f in filters:
            if f.op == "==":
                must.append(FieldCondition(key=f.field, match=MatchValue(value=f.value)))
            elif f.op == "!=":
                must_not.append(FieldCondition(key=f.field, match=MatchValue(value=f.value)))
            else:
                bound = {"<": "lt", "<=": "lte", ">": "gt", ">=": "gte"}[f.op]
                must.append(FieldCondition(key=f.field, range=Range(**{bound: f.value})))

        return Filter(must=must, must_not=must_not or None)

    @staticmethod
    def _strip(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {k: v for k, v in (payload or {}).items() if k not in RESERVED_KEYS}
