"""
Unit tests for connection.py - Qdrant client and document store selection.
"""

import pytest
import os
from unittest.mock import Mock, patch

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import AppConfig
import connection
from connection import Connections, QdrantConnectionError
from storage import InMemoryDocumentStore
from storage.qdrant_store import QdrantDocumentStore
from tests.test_logger import test_logger


class TestConnections:
    """Test suite for Connections class."""

    def setup_method(self):
        """Setup test environment."""
        test_logger.log_section("TESTING: connection.py - Connections Class")

    def test_connections_init(self):
        """Test Connections initialization."""
        test_logger.log_test_start("connection.py", "Connections.__init__", "initialization")

        try:
            conn = Connections()
            assert conn._qdrant_client is None
            assert conn._document_store is None
            assert conn._qdrant_healthy is False

            test_logger.log_test_pass(
                "connection.py",
                "Connections.__init__",
                "initialization",
                "All attributes initialized correctly"
            )
        except Exception as e:
            test_logger.log_test_fail("connection.py", "Connections.__init__", "initialization", str(e))
            raise

    @patch.dict(os.environ, {'QDRANT_URL': 'http://test:6333', 'QDRANT_API_KEY': 'test_key'})
    @patch('connection.QdrantClient')
    def test_get_qdrant_client_with_api_key(self, mock_client):
        """Test Qdrant client creation with API key."""
        test_logger.log_test_start("connection.py", "get_qdrant_client", "with_api_key")

        try:
            conn = Connections()
            mock_instance = Mock()
            mock_client.return_value = mock_instance

            client = conn.get_qdrant_client()

            assert client is mock_instance
            mock_client.assert_called_once_with(
                url='http://test:6333',
                api_key='test_key',
                timeout=30
            )

            # Cached on second call
            assert conn.get_qdrant_client() is mock_instance
            assert mock_client.call_count == 1

            test_logger.log_test_pass(
                "connection.py",
                "get_qdrant_client",
                "with_api_key",
                "Client created with correct parameters"
            )
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_qdrant_client", "with_api_key", str(e))
            raise

    @patch.dict(os.environ, {'QDRANT_URL': 'http://test:6333'}, clear=True)
    @patch('connection.QdrantClient')
    def test_get_qdrant_client_without_api_key(self, mock_client):
        """Test Qdrant client creation without API key."""
        test_logger.log_test_start("connection.py", "get_qdrant_client", "without_api_key")

        try:
            conn = Connections()
            conn.get_qdrant_client()

            mock_client.assert_called_once_with(url='http://test:6333', api_key=None, timeout=30)

            test_logger.log_test_pass("connection.py", "get_qdrant_client", "without_api_key")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_qdrant_client", "without_api_key", str(e))
            raise

    @patch.dict(os.environ, {}, clear=True)
    def test_get_qdrant_client_missing_url(self):
        """A missing QDRANT_URL is an error, not a silent default."""
        test_logger.log_test_start("connection.py", "get_qdrant_client", "missing_url")

        try:
            conn = Connections()
            with pytest.raises(QdrantConnectionError):
                conn.get_qdrant_client()
            assert conn._qdrant_client is None

            test_logger.log_test_pass("connection.py", "get_qdrant_client", "missing_url")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_qdrant_client", "missing_url", str(e))
            raise

    def test_qdrant_connection_reports_raw_failure(self):
        test_logger.log_test_start("connection.py", "test_qdrant_connection", "failure")

        try:
            conn = Connections()
            conn._qdrant_client = Mock()
            conn._qdrant_client.get_collections.side_effect = ConnectionError("refused")

            result = conn.test_qdrant_connection()
            assert result["success"] is False
            assert result["exception_type"] == "ConnectionError"
            assert conn._qdrant_healthy is False

            test_logger.log_test_pass("connection.py", "test_qdrant_connection", "failure")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "test_qdrant_connection", "failure", str(e))
            raise


class TestDocumentStoreSelection:
    """Test suite for get_document_store and health_check."""

    def setup_method(self):
        test_logger.log_section("TESTING: connection.py - Document Store")

    def test_memory_backend(self):
        test_logger.log_test_start("connection.py", "get_document_store", "memory")

        try:
            conn = Connections()
            assert conn.health_check()["store"]["healthy"] is False

            store = conn.get_document_store(AppConfig(store_backend="memory"))
            assert isinstance(store, InMemoryDocumentStore)
            assert conn.get_document_store(AppConfig(store_backend="memory")) is store

            health = conn.health_check()
            assert health["store"]["healthy"] is True
            assert health["store"]["details"]["backend"] == "memory"

            test_logger.log_test_pass("connection.py", "get_document_store", "memory")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_document_store", "memory", str(e))
            raise

    def test_qdrant_backend_provisions_collection(self):
        test_logger.log_test_start("connection.py", "get_document_store", "qdrant")

        try:
            conn = Connections()
            client = Mock()
            client.get_collections.return_value = Mock(collections=[])
            conn._qdrant_client = client

            store = conn.get_document_store(
                AppConfig(store_backend="qdrant", qdrant_collection_name="sessions_test")
            )

            assert isinstance(store, QdrantDocumentStore)
            assert store.collection_name == "sessions_test"
            client.create_collection.assert_called_once()
            assert client.create_payload_index.called

            test_logger.log_test_pass("connection.py", "get_document_store", "qdrant")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_document_store", "qdrant", str(e))
            raise

    def test_reset(self):
        test_logger.log_test_start("connection.py", "reset", "clears_state")

        try:
            conn = Connections()
            conn.get_document_store(AppConfig())
            conn.reset()
            assert conn._document_store is None
            assert conn._qdrant_client is None

            test_logger.log_test_pass("connection.py", "reset", "clears_state")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "reset", "clears_state", str(e))
            raise

    def test_module_helpers_share_global_connections(self):
        """The process-wide helpers used by the app delegate to one Connections."""
        test_logger.log_test_start("connection.py", "get_document_store", "global")

        try:
            connection.connections.reset()
            try:
                store = connection.get_document_store(AppConfig())
                assert connection.connections.get_document_store(AppConfig()) is store
                assert connection.health_check()["store"]["healthy"] is True
            finally:
                connection.connections.reset()

            test_logger.log_test_pass("connection.py", "get_document_store", "global")
        except Exception as e:
            test_logger.log_test_fail("connection.py", "get_document_store", "global", str(e))
            raise
