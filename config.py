"""
Configuration validation and management for the session context service.

This module validates all environment variables on startup
and provides centralized configuration access.
"""

import os
from typing import Optional, List
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


STORE_BACKENDS = ("memory", "qdrant")


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    key: str
    message: str
    is_critical: bool = True


@dataclass
class AppConfig:
    """Application configuration with validated values."""

    # Storage
    store_backend: str = "memory"
    qdrant_url: str = ""
    qdrant_api_key: str = ""
    qdrant_collection_name: str = "session_documents"

    # Session lifecycle
    session_ttl_minutes: int = 30
    session_cache_seconds: int = 300
    session_cache_capacity: int = 1000
    session_retention_days: int = 90

    # Conversation
    history_limit: int = 50
    default_context_lifespan: int = 5
    analytics_batch_size: int = 20

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


class ConfigValidator:
    """Validates and loads application configuration."""

    OPTIONAL_VARS = [
        ("QDRANT_API_KEY", "Required for Qdrant Cloud authentication"),
    ]

    NUMERIC_VARS = [
        ("SESSION_TTL_MINUTES", 1, 1440),
        ("SESSION_CACHE_SECONDS", 0, 3600),
        ("SESSION_CACHE_CAPACITY", 1, 100000),
        ("SESSION_RETENTION_DAYS", 1, 3650),
        ("HISTORY_LIMIT", 1, 500),
        ("DEFAULT_CONTEXT_LIFESPAN", 1, 100),
        ("ANALYTICS_BATCH_SIZE", 1, 1000),
    ]

    def __init__(self):
        self.errors: List[ConfigValidationError] = []
        self.warnings: List[str] = []
        self.config: Optional[AppConfig] = None

    def validate(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if all critical validations pass
        """
        self.errors = []
        self.warnings = []

        self._validate_store_backend()
        self._validate_qdrant_url()
        self._validate_port()
        self._validate_numeric_values()

        return len([e for e in self.errors if e.is_critical]) == 0

    def _validate_store_backend(self) -> None:
        """Validate the document store selection."""
        backend = os.getenv("STORE_BACKEND", "memory").strip().lower()
        if backend not in STORE_BACKENDS:
            self.errors.append(ConfigValidationError(
                key="STORE_BACKEND",
                message=f"Invalid STORE_BACKEND: {backend}. Must be one of {', '.join(STORE_BACKENDS)}",
                is_critical=True
            ))
            return

        if backend == "qdrant":
            if not os.getenv("QDRANT_URL", "").strip():
                self.errors.append(ConfigValidationError(
                    key="QDRANT_URL",
                    message="Missing required environment variable: QDRANT_URL. Required when STORE_BACKEND=qdrant",
                    is_critical=True
                ))
            for var_name, description in self.OPTIONAL_VARS:
                value = os.getenv(var_name)
                if not value or value.strip() == "":
                    self.warnings.append(f"Optional variable not set: {var_name}. {description}")
        else:
            self.warnings.append("STORE_BACKEND=memory: sessions are not persisted across restarts")

    def _validate_qdrant_url(self) -> None:
        """Validate Qdrant URL format."""
        url = os.getenv("QDRANT_URL", "")
        if url and not (url.startswith("http://") or url.startswith("https://")):
            self.errors.append(ConfigValidationError(
                key="QDRANT_URL",
                message=f"Invalid QDRANT_URL format: {url}. Must start with http:// or https://",
                is_critical=True
            ))

    def _validate_port(self) -> None:
        """Validate port number."""
        port_str = os.getenv("PORT", "8000")
        try:
            port = int(port_str)
            if port < 1 or port > 65535:
                self.errors.append(ConfigValidationError(
                    key="PORT",
                    message=f"Invalid PORT: {port}. Must be between 1 and 65535",
                    is_critical=False
                ))
        except ValueError:
            self.errors.append(ConfigValidationError(
                key="PORT",
                message=f"Invalid PORT: {port_str}. Must be a number",
                is_critical=False
            ))

    def _validate_numeric_values(self) -> None:
        """Validate numeric configuration values."""
        for var_name, min_val, max_val in self.NUMERIC_VARS:
            value_str = os.getenv(var_name)
            if value_str:
                try:
                    value = int(value_str)
                    if value < min_val or value > max_val:
                        self.warnings.append(
                            f"{var_name}={value} is outside recommended range [{min_val}, {max_val}]"
                        )
                except ValueError:
                    self.errors.append(ConfigValidationError(
                        key=var_name,
                        message=f"Invalid {var_name}: {value_str}. Must be a number",
                        is_critical=False
                    ))

    def load_config(self) -> AppConfig:
        """
        Load and return validated configuration.

        Returns:
            AppConfig: Loaded configuration object
        """
        def safe_int(value: str, default: int) -> int:
            try:
                return int(value) if value else default
            except (ValueError, TypeError):
                return default

        def safe_bool(value: str, default: bool) -> bool:
            if not value:
                return default
            return value.lower() in ("true", "1", "yes")

        cors_origins_str = os.getenv("CORS_ORIGINS", "*")
        cors_origins = [o.strip() for o in cors_origins_str.split(",") if o.strip()]

        self.config = AppConfig(
            store_backend=os.getenv("STORE_BACKEND", "memory").strip().lower(),
            qdrant_url=os.getenv("QDRANT_URL", ""),
            qdrant_api_key=os.getenv("QDRANT_API_KEY", ""),
            qdrant_collection_name=os.getenv("QDRANT_COLLECTION_NAME", "session_documents"),
            session_ttl_minutes=safe_int(os.getenv("SESSION_TTL_MINUTES"), 30),
            session_cache_seconds=safe_int(os.getenv("SESSION_CACHE_SECONDS"), 300),
            session_cache_capacity=safe_int(os.getenv("SESSION_CACHE_CAPACITY"), 1000),
            session_retention_days=safe_int(os.getenv("SESSION_RETENTION_DAYS"), 90),
            history_limit=safe_int(os.getenv("HISTORY_LIMIT"), 50),
            default_context_lifespan=safe_int(os.getenv("DEFAULT_CONTEXT_LIFESPAN"), 5),
            analytics_batch_size=safe_int(os.getenv("ANALYTICS_BATCH_SIZE"), 20),
            host=os.getenv("HOST", "0.0.0.0"),
            port=safe_int(os.getenv("PORT"), 8000),
            debug=safe_bool(os.getenv("DEBUG"), False),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_origins=cors_origins,
        )

        return self.config

    def print_status(self) -> None:
        """Print configuration status to console."""
        print("\n" + "=" * 60)
        print("CONFIGURATION VALIDATION")
        print("=" * 60)

        if self.errors:
            print("\n[X] ERRORS:")
            for error in self.errors:
                critical = "[CRITICAL]" if error.is_critical else "[WARNING]"
                print(f"  {critical} {error.key}: {error.message}")

        if self.warnings:
            print("\n[!] WARNINGS:")
            for warning in self.warnings:
                print(f"  - {warning}")

        if not self.errors and not self.warnings:
            print("\n[OK] All configuration values are valid!")

        print("=" * 60 + "\n")


def validate_config_on_startup() -> AppConfig:
    """
    Validate configuration on application startup.

    Raises:
        ValueError: If critical configuration is missing (instead of SystemExit for serverless compatibility)

    Returns:
        AppConfig: Validated configuration
    """
    validator = ConfigValidator()
    is_valid = validator.validate()
    config = validator.load_config()

    validator.print_status()

    if not is_valid:
        error_msgs = [f"{error.key}: {error.message}" for error in validator.errors if error.is_critical]
        raise ValueError(
            f"Cannot start application due to configuration errors. "
            f"Missing or invalid: {', '.join(error_msgs)}"
        )

    return config


# Global config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance.

    Returns:
        AppConfig: Application configuration
    """
    global _config
    if _config is None:
        _config = validate_config_on_startup()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None
