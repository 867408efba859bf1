"""
Connection utilities for the document store backends.

Owns the Qdrant client and builds the DocumentStore selected by configuration.
"""

import os
import time
from typing import Optional

from dotenv import load_dotenv

# Load dotenv at module level FIRST
load_dotenv(override=True)

from qdrant_client import QdrantClient

from config import AppConfig
from logger import get_logger
from storage import DocumentStore, InMemoryDocumentStore
from storage.qdrant_store import QdrantDocumentStore

logger = get_logger(__name__)


class QdrantConnectionError(Exception):
    """Qdrant connection error - wraps raw SDK exceptions."""
    pass


class Connections:
    """Manages connections to external services."""

    def __init__(self):
        self._qdrant_client: Optional[QdrantClient] = None
        self._document_store: Optional[DocumentStore] = None
        self._qdrant_healthy: bool = False

    def get_qdrant_client(self) -> QdrantClient:
        """
        Get or create Qdrant client.

        Creates client with url and api_key from environment.
        Does NOT cache failed clients.
        """
        if self._qdrant_client is not None:
            return self._qdrant_client

        url = os.getenv("QDRANT_URL", "").strip()
        api_key = os.getenv("QDRANT_API_KEY", "").strip()

        logger.info(f"[QDRANT] Creating client with url={url[:50]}...")
        logger.info(f"[QDRANT] API key present: {bool(api_key)}")

        if not url:
            raise QdrantConnectionError("QDRANT_URL environment variable is not set")

        self._qdrant_client = QdrantClient(
            url=url,
            api_key=api_key if api_key else None,
            timeout=30
        )

        logger.info("[QDRANT] Client instance created")
        return self._qdrant_client

    def test_qdrant_connection(self) -> dict:
        """
        Test Qdrant connection by calling get_collections().

        Returns raw result or raw exception - NO custom messages.
        """
        try:
            client = self.get_qdrant_client()

            logger.info("[QDRANT] Testing connection with get_collections()...")
            start = time.time()
            result = client.get_collections()
            duration = (time.time() - start) * 1000

            collections = [c.name for c in result.collections]
            logger.info(f"[QDRANT] SUCCESS! Collections: {collections}, duration: {duration:.2f}ms")

            self._qdrant_healthy = True
            return {
                "success": True,
                "collections": collections,
                "duration_ms": duration
            }

        except Exception as e:
            self._qdrant_healthy = False
            error_info = {
                "success": False,
                "exception_type": type(e).__name__,
                "exception_message": str(e),
                "raw_error": repr(e)
            }
            logger.error(f"[QDRANT] FAILED: {error_info}")
            return error_info

    def get_document_store(self, config: AppConfig) -> DocumentStore:
        """
        Get or create the document store selected by STORE_BACKEND.

        Raises on Qdrant provisioning failure - never silently falls back.
        """
        if self._document_store is not None:
            return self._document_store

        if config.store_backend == "qdrant":
            store = QdrantDocumentStore(
                client=self.get_qdrant_client(),
                collection_name=config.qdrant_collection_name,
            )
            store.ensure_collection()
            logger.info(
                "Document store ready",
                backend=store.name,
                collection=config.qdrant_collection_name
            )
        else:
            store = InMemoryDocumentStore()
            logger.warning("Using in-memory document store - data is lost on restart")

        self._document_store = store
        return store

    def health_check(self) -> dict:
        """Health check - returns raw results."""
        if self._document_store is None:
            return {"store": {"healthy": False, "details": "Document store not initialized"}}

        details = self._document_store.health_check()
        return {"store": {"healthy": details.get("healthy", False), "details": details}}

    def reset(self) -> None:
        self._qdrant_client = None
        self._document_store = None
        self._qdrant_healthy = False


# Global instance
connections = Connections()


def get_document_store(config: AppConfig) -> DocumentStore:
    """Get global document store."""
    return connections.get_document_store(config)


def health_check() -> dict:
    """Health check."""
    return connections.health_check()
