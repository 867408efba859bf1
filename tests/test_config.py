"""
Unit tests for config.py - environment validation and loading.
"""

import pytest
import os
from unittest.mock import patch

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ConfigValidator, validate_config_on_startup
from tests.test_logger import test_logger


class TestConfigValidator:
    """Test suite for ConfigValidator."""

    def setup_method(self):
        test_logger.log_section("TESTING: config.py - ConfigValidator")

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        test_logger.log_test_start("config.py", "load_config", "defaults")

        try:
            validator = ConfigValidator()
            assert validator.validate() is True
            config = validator.load_config()

            assert config.store_backend == "memory"
            assert config.session_ttl_minutes == 30
            assert config.session_retention_days == 90
            assert config.default_context_lifespan == 5
            assert config.cors_origins == ["*"]
            assert any("STORE_BACKEND=memory" in w for w in validator.warnings)

            test_logger.log_test_pass("config.py", "load_config", "defaults")
        except Exception as e:
            test_logger.log_test_fail("config.py", "load_config", "defaults", str(e))
            raise

    @patch.dict(os.environ, {
        "STORE_BACKEND": "Qdrant",
        "QDRANT_URL": "https://cluster.qdrant.io",
        "SESSION_TTL_MINUTES": "45",
        "ANALYTICS_BATCH_SIZE": "not-a-number",
        "CORS_ORIGINS": "http://a.com, http://b.com",
        "DEBUG": "yes",
    }, clear=True)
    def test_environment_overrides(self):
        test_logger.log_test_start("config.py", "load_config", "overrides")

        try:
            validator = ConfigValidator()
            assert validator.validate() is True
            config = validator.load_config()

            assert config.store_backend == "qdrant"
            assert config.session_ttl_minutes == 45
            assert config.analytics_batch_size == 20
            assert config.cors_origins == ["http://a.com", "http://b.com"]
            assert config.debug is True
            assert [e.key for e in validator.errors] == ["ANALYTICS_BATCH_SIZE"]
            assert any("QDRANT_API_KEY" in w for w in validator.warnings)

            test_logger.log_test_pass("config.py", "load_config", "overrides")
        except Exception as e:
            test_logger.log_test_fail("config.py", "load_config", "overrides", str(e))
            raise

    @patch.dict(os.environ, {"STORE_BACKEND": "redis"}, clear=True)
    def test_unknown_backend_is_critical(self):
        test_logger.log_test_start("config.py", "validate_config_on_startup", "bad_backend")

        try:
            with pytest.raises(ValueError, match="STORE_BACKEND"):
                validate_config_on_startup()

            test_logger.log_test_pass("config.py", "validate_config_on_startup", "bad_backend")
        except Exception as e:
            test_logger.log_test_fail("config.py", "validate_config_on_startup", "bad_backend", str(e))
            raise

    @patch.dict(os.environ, {"STORE_BACKEND": "qdrant"}, clear=True)
    def test_qdrant_requires_url(self):
        test_logger.log_test_start("config.py", "validate", "qdrant_url")

        try:
            validator = ConfigValidator()
            assert validator.validate() is False
            assert validator.errors[0].key == "QDRANT_URL"

            test_logger.log_test_pass("config.py", "validate", "qdrant_url")
        except Exception as e:
            test_logger.log_test_fail("config.py", "validate", "qdrant_url", str(e))
            raise

    @patch.dict(os.environ, {"QDRANT_URL": "cluster.qdrant.io", "PORT": "99999"}, clear=True)
    def test_url_format_and_port(self):
        test_logger.log_test_start("config.py", "validate", "formats")

        try:
            validator = ConfigValidator()
            assert validator.validate() is False
            keys = {e.key: e.is_critical for e in validator.errors}
            assert keys == {"QDRANT_URL": True, "PORT": False}

            test_logger.log_test_pass("config.py", "validate", "formats")
        except Exception as e:
            test_logger.log_test_fail("config.py", "validate", "formats", str(e))
            raise
