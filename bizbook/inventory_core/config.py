"""
Configuration management for the inventory core.

All configuration is done via environment variables, read once at startup.
This module provides typed configuration classes with validation.

Invariants:
    - DB_URI, DB_PROVIDER, STORAGE_PROVIDER and STORAGE_BUCKET are required
    - A missing required variable fails startup listing every missing name
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Required settings must be added to REQUIRED_VARIABLES
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

REQUIRED_VARIABLES = ("DB_URI", "DB_PROVIDER", "STORAGE_PROVIDER", "STORAGE_BUCKET")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class DatabaseProvider(Enum):
    """Supported persistence backends."""

    DOCUMENT_STORE = "documentstore"
    KEY_VALUE = "keyvalue"
    OTHER_DOC = "otherdoc"


class StorageProviderKind(Enum):
    """Supported file storage backends."""

    S3 = "s3"
    LOCAL = "local"


@dataclass(frozen=True)
class DocumentStoreConfig:
    """SQLite document store configuration.

    Attributes:
        path: Database file path (parsed from DB_URI)
        socket_timeout_ms: Per-call timeout budget
        connect_timeout_ms: Connect and lock wait timeout
        server_selection_timeout_ms: Time allowed to open the database
        wal_mode: Enable SQLite WAL journal mode
    """

    path: str = "inventory.db"
    socket_timeout_ms: int = 120_000
    connect_timeout_ms: int = 60_000
    server_selection_timeout_ms: int = 60_000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> DocumentStoreConfig:
        """Load configuration from environment variables."""
        uri = os.getenv("DB_URI", "")
        path = uri[len("sqlite:///"):] if uri.startswith("sqlite:///") else uri
        return cls(
            path=path or "inventory.db",
            socket_timeout_ms=int(os.getenv("DB_SOCKET_TIMEOUT_MS", "120000")),
            connect_timeout_ms=int(os.getenv("DB_CONNECT_TIMEOUT_MS", "60000")),
            server_selection_timeout_ms=int(
                os.getenv("DB_SERVER_SELECTION_TIMEOUT_MS", "60000")
            ),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class KeyValueConfig:
    """DynamoDB backend configuration.

    Attributes:
        table_prefix: Prefix for every table name
        region: AWS region
        endpoint_url: Optional endpoint override (LocalStack, DynamoDB Local)
        access_key_id: AWS access key (never logged)
        secret_access_key: AWS secret key (never logged)
        connect_attempts: Connection attempts before giving up
        connect_base_delay: Base delay in seconds, doubled per attempt
        table_active_timeout: Seconds to wait for a new table to turn ACTIVE
        max_transaction_items: Backend limit for one TransactWriteItems call
    """

    table_prefix: str = "biztracker_"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_attempts: int = 5
    connect_base_delay: float = 5.0
    table_active_timeout: float = 120.0
    max_transaction_items: int = 100

    @classmethod
    def from_env(cls) -> KeyValueConfig:
        """Load configuration from environment variables."""
        uri = os.getenv("DB_URI", "")
        prefix = uri[len("dynamodb://"):] if uri.startswith("dynamodb://") else uri
        return cls(
            table_prefix=prefix or "biztracker_",
            region=os.getenv("AWS_REGION", "us-east-1"),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            connect_attempts=int(os.getenv("DYNAMODB_CONNECT_ATTEMPTS", "5")),
            connect_base_delay=float(os.getenv("DYNAMODB_CONNECT_BASE_DELAY", "5.0")),
        )


@dataclass(frozen=True)
class OtherDocConfig:
    """Non-transactional document store configuration.

    Attributes:
        data_dir: Directory for collection files, None keeps data in memory
    """

    data_dir: str | None = None

    @classmethod
    def from_env(cls) -> OtherDocConfig:
        """Load configuration from environment variables."""
        uri = os.getenv("DB_URI", "")
        if not uri or uri.startswith("memory://"):
            return cls(data_dir=None)
        return cls(data_dir=uri[len("file://"):] if uri.startswith("file://") else uri)


@dataclass(frozen=True)
class StorageConfig:
    """File storage configuration.

    Attributes:
        provider: Storage backend
        bucket: S3 bucket, or base directory for local storage
        region: S3 region
        endpoint_url: Optional S3 endpoint override
        public_base_url: Optional base for public URLs
    """

    provider: StorageProviderKind = StorageProviderKind.LOCAL
    bucket: str = "uploads"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    public_base_url: str | None = None

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("STORAGE_PROVIDER", "local").lower()
        try:
            provider = StorageProviderKind(raw)
        except ValueError:
            raise ConfigurationError(
                f"Invalid STORAGE_PROVIDER '{raw}'. Must be one of: s3, local"
            ) from None
        return cls(
            provider=provider,
            bucket=os.getenv("STORAGE_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            public_base_url=os.getenv("STORAGE_PUBLIC_URL"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        transaction_logging: Log begin/commit/rollback of every transaction
    """

    log_level: str = "INFO"
    log_format: str = "json"
    transaction_logging: bool = False

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            transaction_logging=_env_bool("ENABLE_TRANSACTION_LOGGING"),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Repository cache configuration."""

    enabled: bool = True
    ttl_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("CACHE_ENABLED", "true"),
            ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "60")),
        )


@dataclass
class AppConfig:
    """Complete application configuration.

    Attributes:
        db_provider: Which persistence backend to use
        db_uri: Raw backend locator
        environment: Deployment environment name (NODE_ENV)
        port: HTTP port
        skip_auth: Carried through for the outer HTTP layer
        document_store: SQLite settings (if db_provider is DOCUMENT_STORE)
        key_value: DynamoDB settings (if db_provider is KEY_VALUE)
        other_doc: Non-transactional store settings (if db_provider is OTHER_DOC)
        storage: File storage settings
        observability: Logging settings
        cache: Repository cache settings
    """

    db_provider: DatabaseProvider = DatabaseProvider.OTHER_DOC
    db_uri: str = "memory://"
    environment: str = "development"
    port: int = 3000
    skip_auth: bool = False
    document_store: DocumentStoreConfig = field(default_factory=DocumentStoreConfig)
    key_value: KeyValueConfig = field(default_factory=KeyValueConfig)
    other_doc: OtherDocConfig = field(default_factory=OtherDocConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Returns:
            AppConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        missing = [name for name in REQUIRED_VARIABLES if not os.getenv(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing=missing,
            )

        provider_str = os.getenv("DB_PROVIDER", "").lower()
        try:
            db_provider = DatabaseProvider(provider_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid DB_PROVIDER '{provider_str}'. "
                "Must be one of: documentstore, keyvalue, otherdoc"
            ) from None

        config = cls(
            db_provider=db_provider,
            db_uri=os.getenv("DB_URI", ""),
            environment=os.getenv("NODE_ENV", "development"),
            port=int(os.getenv("PORT", "3000")),
            skip_auth=_env_bool("SKIP_AUTH"),
            document_store=DocumentStoreConfig.from_env(),
            key_value=KeyValueConfig.from_env(),
            other_doc=OtherDocConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            cache=CacheConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.db_provider == DatabaseProvider.KEY_VALUE:
            if not self.key_value.region:
                raise ConfigurationError("AWS_REGION is required when DB_PROVIDER=keyvalue")
            if self.key_value.connect_attempts < 1:
                raise ConfigurationError("DYNAMODB_CONNECT_ATTEMPTS must be at least 1")

        if not self.storage.bucket:
            raise ConfigurationError("STORAGE_BUCKET is required", missing=["STORAGE_BUCKET"])

        if not 0 < self.port < 65536:
            raise ConfigurationError(f"PORT out of range: {self.port}")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Configuration loaded",
            extra={
                "db_provider": self.db_provider.value,
                "environment": self.environment,
                "port": self.port,
                "skip_auth": self.skip_auth,
                "sqlite_path": self.document_store.path
                if self.db_provider == DatabaseProvider.DOCUMENT_STORE
                else None,
                "dynamodb_prefix": self.key_value.table_prefix
                if self.db_provider == DatabaseProvider.KEY_VALUE
                else None,
                "dynamodb_region": self.key_value.region
                if self.db_provider == DatabaseProvider.KEY_VALUE
                else None,
                "otherdoc_dir": self.other_doc.data_dir
                if self.db_provider == DatabaseProvider.OTHER_DOC
                else None,
                "storage_provider": self.storage.provider.value,
                "storage_bucket": self.storage.bucket,
                "transaction_logging": self.observability.transaction_logging,
                "cache_enabled": self.cache.enabled,
                "log_level": self.observability.log_level,
            },
        )
