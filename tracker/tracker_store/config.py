"""
Configuration management for Tracker Store.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the storage backend
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Retention caps are part of the stored-data contract; lowering them
      trims existing documents on their next write
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Supported document backends."""

    S3 = "s3"
    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class S3Config:
    """S3-compatible blob storage configuration.

    Attributes:
        bucket: Bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO or GCS interoperability)
        access_key_id: Access key ID (optional, uses AWS credential chain)
        secret_access_key: Secret access key (optional)
        connect_timeout: Connection timeout in seconds
        read_timeout: Read timeout in seconds
    """

    bucket: str = "tracker-storage"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "tracker-storage"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            connect_timeout=float(os.getenv("S3_CONNECT_TIMEOUT", "5")),
            read_timeout=float(os.getenv("S3_READ_TIMEOUT", "30")),
        )


@dataclass(frozen=True)
class TabularConfig:
    """Tabular (sheet-per-document) backend configuration.

    Attributes:
        db_path: SQLite file holding one table per sheet
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "/var/lib/tracker/sheets.db"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> TabularConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("TABULAR_DB_PATH", "/var/lib/tracker/sheets.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for backend round-trips.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay_ms: First backoff delay; doubled on every retry
    """

    max_retries: int = 3
    base_delay_ms: int = 100

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("STORAGE_MAX_RETRIES", "3")),
            base_delay_ms=int(os.getenv("STORAGE_RETRY_BASE_MS", "100")),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Caps and retention windows for bounded documents.

    Attributes:
        changelog_cap: Most recent change records kept in data/changelog.json
        notification_cap: Most recent notifications kept per user
        log_file_cap: Entries kept per daily log file (0 = unbounded)
        log_retention_days: Age after which daily log files are swept
    """

    changelog_cap: int = 1000
    notification_cap: int = 100
    log_file_cap: int = 0
    log_retention_days: int = 90

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        return cls(
            changelog_cap=int(os.getenv("CHANGELOG_CAP", "1000")),
            notification_cap=int(os.getenv("NOTIFICATION_CAP", "100")),
            log_file_cap=int(os.getenv("LOG_FILE_CAP", "0")),
            log_retention_days=int(os.getenv("LOG_RETENTION_DAYS", "90")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP request-handling layer configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ALLOWED_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        backend: Which document backend to use
        s3: S3 configuration (if backend is S3)
        tabular: Tabular configuration (if backend is SQLITE)
        retry: Retry policy shared by all stores
        retention: Caps and retention windows
        http: HTTP layer configuration
        observability: Logging configuration
    """

    backend: StorageBackend = StorageBackend.S3
    s3: S3Config = field(default_factory=S3Config)
    tabular: TabularConfig = field(default_factory=TabularConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STORAGE_BACKEND", "s3").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: s3, sqlite, memory"
            )

        config = cls(
            backend=backend,
            s3=S3Config.from_env(),
            tabular=TabularConfig.from_env(),
            retry=RetryConfig.from_env(),
            retention=RetentionConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backend == StorageBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when STORAGE_BACKEND=s3")
        if self.backend == StorageBackend.SQLITE and not self.tabular.db_path:
            raise ValueError("TABULAR_DB_PATH is required when STORAGE_BACKEND=sqlite")

        if self.retry.max_retries < 0:
            raise ValueError("STORAGE_MAX_RETRIES must be >= 0")
        if self.retention.changelog_cap <= 0 or self.retention.notification_cap <= 0:
            raise ValueError("CHANGELOG_CAP and NOTIFICATION_CAP must be positive")

        if self.backend == StorageBackend.MEMORY:
            logger.warning("Memory backend selected: all data is lost on process exit")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "backend": self.backend.value,
                "s3_bucket": self.s3.bucket if self.backend == StorageBackend.S3 else None,
                "s3_endpoint": self.s3.endpoint_url,
                "tabular_db": self.tabular.db_path
                if self.backend == StorageBackend.SQLITE
                else None,
                "max_retries": self.retry.max_retries,
                "changelog_cap": self.retention.changelog_cap,
                "notification_cap": self.retention.notification_cap,
                "log_retention_days": self.retention.log_retention_days,
                "http_port": self.http.port,
                "log_level": self.observability.log_level,
            },
        )
