"""
Centralized configuration management for the capability maturity ledger.

Provides environment-specific configuration with validation, type safety,
and settings management using pydantic-settings.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """
    Database configuration settings.

    Handles both SQLite and MySQL configurations with validation
    and connection URL generation.

    Example:
        >>> db_config = DatabaseConfig(backend="sqlite", sqlite_path="./ledger.db")
        >>> print(db_config.get_connection_url())
        >>> # sqlite:///./ledger.db
    """

    backend: Literal["sqlite", "mysql"] = Field("sqlite", description="Database backend type")

    # SQLite settings
    sqlite_path: str | None = Field("./capledger.db", description="SQLite database file path")

    # MySQL settings
    mysql_host: str | None = Field("localhost", description="MySQL host")
    mysql_port: int | None = Field(3306, ge=1, le=65535, description="MySQL port")
    mysql_user: str | None = Field("root", description="MySQL username")
    mysql_password: str | None = Field("", description="MySQL password")
    mysql_database: str | None = Field("capledger", description="MySQL database name")
    mysql_charset: str = Field("utf8mb4", description="MySQL character set")

    # Connection settings
    pool_pre_ping: bool = Field(True, description="Enable connection pool pre-ping")
    pool_recycle: int = Field(3600, ge=60, description="Connection pool recycle time (seconds)")
    echo: bool = Field(False, description="Enable SQL query logging")

    model_config = SettingsConfigDict(env_prefix="DB_", case_sensitive=False)

    @field_validator("sqlite_path")
    @classmethod
    def validate_sqlite_path(cls, v):
        """Validate SQLite path and ensure directory exists."""
        if v and v != ":memory:":
            path = Path(v)
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.suffix:
                v = str(path.with_suffix(".db"))
        return v

    @model_validator(mode="after")
    def validate_mysql_config(self):
        """Validate MySQL configuration completeness."""
        if self.backend == "mysql":
            missing = []
            if not self.mysql_host:
                missing.append("mysql_host")
            if not self.mysql_user:
                missing.append("mysql_user")
            if not self.mysql_database:
                missing.append("mysql_database")
            if missing:
                raise ValueError(f"MySQL backend requires: {', '.join(missing)}")
        return self

    @property
    def is_memory(self) -> bool:
        return self.backend == "sqlite" and self.sqlite_path in (None, "", ":memory:")

    def get_connection_url(self) -> str:
        """
        Generate database connection URL.

        Raises:
            ValueError: If backend is unsupported
        """
        if self.backend == "sqlite":
            if self.is_memory:
                return "sqlite:///:memory:"
            return f"sqlite:///{self.sqlite_path}"
        elif self.backend == "mysql":
            password_part = f":{self.mysql_password}" if self.mysql_password else ""
            return (
                f"mysql+pymysql://{self.mysql_user}{password_part}@{self.mysql_host}:"
                f"{self.mysql_port}/{self.mysql_database}?charset={self.mysql_charset}"
            )
        else:
            raise ValueError(f"Unsupported database backend: {self.backend}")

    def get_engine_options(self) -> dict[str, Any]:
        """Get SQLAlchemy engine options."""
        options: dict[str, Any] = {"echo": self.echo, "future": True}
        if self.backend == "mysql":
            options["pool_pre_ping"] = self.pool_pre_ping
            options["pool_recycle"] = self.pool_recycle
        return options


class LoggingConfig(BaseSettings):
    """
    Logging configuration settings.

    Example:
        >>> log_config = LoggingConfig(level="DEBUG", file_path="./logs/capledger.log")
        >>> print(log_config.get_file_handler_config())
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Minimum logging level"
    )
    file_path: str | None = Field("./logs/capledger.log", description="Log file path")
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024, description="Max log file size in bytes")
    backup_count: int = Field(5, ge=1, description="Number of backup log files")
    structured: bool = Field(True, description="Use structured JSON logging")
    console_enabled: bool = Field(True, description="Enable console output")

    model_config = SettingsConfigDict(env_prefix="LOG_", case_sensitive=False)

    def get_file_handler_config(self) -> dict[str, Any] | None:
        """Get file handler configuration if file logging is enabled."""
        if not self.file_path:
            return None

        return {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": self.file_path,
            "maxBytes": self.max_bytes,
            "backupCount": self.backup_count,
            "encoding": "utf-8",
        }


class SecurityConfig(BaseSettings):
    """
    Input limits and CORS settings for the HTTP surface.

    Example:
        >>> sec_config = SecurityConfig()
        >>> print(sec_config.max_file_size_bytes)
    """

    max_notes_length: int = Field(10000, ge=50, description="Maximum rating notes length")
    max_tag_length: int = Field(64, ge=2, description="Maximum tag length")
    max_file_size_mb: int = Field(10, ge=1, le=100, description="Maximum upload file size (MB)")
    max_import_size_mb: int = Field(200, ge=1, description="Maximum import document size (MB)")

    cors_origins: list[str] = Field(["*"], description="Allowed CORS origins")
    cors_methods: list[str] = Field(
        ["GET", "POST", "PUT", "DELETE"], description="Allowed CORS methods"
    )

    model_config = SettingsConfigDict(env_prefix="SECURITY_", case_sensitive=False)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class CatalogConfig(BaseSettings):
    """Location of the reference catalog documents."""

    directory: str | None = Field("./catalog", description="Directory of catalog JSON files")
    default_version: str = Field("3.0", description="Catalog version when files carry none")

    model_config = SettingsConfigDict(env_prefix="CATALOG_", case_sensitive=False)


class StorageConfig(BaseSettings):
    """Attachment blob storage settings."""

    backend: Literal["filesystem", "memory"] = Field("filesystem", description="Blob backend")
    blob_dir: str = Field("./blobs", description="Root directory for attachment blobs")

    model_config = SettingsConfigDict(env_prefix="STORAGE_", case_sensitive=False)


class ImportConfig(BaseSettings):
    """
    Merge tolerances and accepted interchange versions.

    Two records whose ``updatedAt`` differ by less than ``timestamp_tolerance_ms``
    and whose scores differ by less than ``score_tolerance`` are the same state.
    """

    timestamp_tolerance_ms: int = Field(1000, ge=0, description="Same-state time window (ms)")
    score_tolerance: float = Field(0.01, ge=0, description="Same-state score delta")
    supported_versions: list[str] = Field(["1.0"], description="Accepted formatVersion values")

    model_config = SettingsConfigDict(env_prefix="IMPORT_", case_sensitive=False)

    @field_validator("supported_versions")
    @classmethod
    def validate_versions(cls, v):
        if not v:
            raise ValueError("At least one supported version is required")
        return v


class ServerConfig(BaseSettings):
    """uvicorn bind settings used by scripts/run_server.py."""

    host: str = Field("127.0.0.1", description="Bind address")
    port: int = Field(8000, ge=1, le=65535, description="Bind port")
    reload: bool = Field(False, description="Enable auto-reload")

    model_config = SettingsConfigDict(env_prefix="SERVER_", case_sensitive=False)


class ApplicationConfig(BaseSettings):
    """
    Main application configuration.

    Example:
        >>> config = get_settings()
        >>> print(config.app.environment)
        >>> db_url = config.database.get_connection_url()
    """

    environment: Literal["development", "testing", "production"] = Field(
        "development", description="Application environment"
    )
    debug: bool = Field(False, description="Enable debug mode")
    title: str = Field("Capability Maturity Ledger", description="API title")
    version: str = Field("1.0.0", description="Application version stamped into exports")

    model_config = SettingsConfigDict(env_prefix="APP_", case_sensitive=False)

    @model_validator(mode="after")
    def debug_implies_development(self):
        """Ensure debug mode is only enabled outside production."""
        if self.debug and self.environment == "production":
            raise ValueError("Debug mode cannot be enabled in production")
        return self


class Settings:
    """
    Complete application settings container.

    Provides structured access to all configuration sections
    with lazy loading and caching.

    Example:
        >>> settings = get_settings()
        >>> print(settings.database.get_connection_url())
        >>> print(settings.imports.timestamp_tolerance_ms)
    """

    def __init__(self):
        self._app: ApplicationConfig | None = None
        self._database: DatabaseConfig | None = None
        self._logging: LoggingConfig | None = None
        self._security: SecurityConfig | None = None
        self._catalog: CatalogConfig | None = None
        self._storage: StorageConfig | None = None
        self._imports: ImportConfig | None = None
        self._server: ServerConfig | None = None

    @property
    def app(self) -> ApplicationConfig:
        if self._app is None:
            self._app = ApplicationConfig()
        return self._app

    @property
    def database(self) -> DatabaseConfig:
        if self._database is None:
            self._database = DatabaseConfig()
        return self._database

    @property
    def logging(self) -> LoggingConfig:
        if self._logging is None:
            level = "DEBUG" if self.app.debug else "INFO"
            if self.app.environment == "production":
                level = "WARNING"
            self._logging = LoggingConfig(level=level)
        return self._logging

    @property
    def security(self) -> SecurityConfig:
        if self._security is None:
            self._security = SecurityConfig()
        return self._security

    @property
    def catalog(self) -> CatalogConfig:
        if self._catalog is None:
            self._catalog = CatalogConfig()
        return self._catalog

    @property
    def storage(self) -> StorageConfig:
        if self._storage is None:
            self._storage = StorageConfig()
        return self._storage

    @property
    def imports(self) -> ImportConfig:
        if self._imports is None:
            self._imports = ImportConfig()
        return self._imports

    @property
    def server(self) -> ServerConfig:
        if self._server is None:
            self._server = ServerConfig()
        return self._server

    def get_environment_info(self) -> dict[str, Any]:
        """Get summary of current environment configuration."""
        return {
            "environment": self.app.environment,
            "version": self.app.version,
            "debug": self.app.debug,
            "database_backend": self.database.backend,
            "blob_backend": self.storage.backend,
            "logging_level": self.logging.level,
            "supported_versions": list(self.imports.supported_versions),
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get application settings instance (cached).

    Example:
        >>> settings = get_settings()
        >>> db_url = settings.database.get_connection_url()
    """
    return Settings()


def load_settings_from_file(file_path: str) -> Settings:
    """
    Load settings from a JSON configuration file.

    Each top-level object is a section whose keys become ``<SECTION>_<KEY>``
    environment variables, so ``{"db": {"backend": "mysql"}}`` sets ``DB_BACKEND``.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If file format is unsupported
    """
    config_path = Path(file_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    if config_path.suffix.lower() != ".json":
        raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")

    with open(config_path, encoding="utf-8") as f:
        config_data = json.load(f)

    for section, values in config_data.items():
        if isinstance(values, dict):
            for key, value in values.items():
                env_key = f"{section.upper()}_{key.upper()}"
                os.environ[env_key] = value if isinstance(value, str) else json.dumps(value)

    get_settings.cache_clear()
    return get_settings()


def override_settings(**kwargs: Any) -> Settings:
    """
    Override specific settings for testing or development.

    Keys are environment variable names without case, e.g. ``db_sqlite_path``.

    Example:
        >>> settings = override_settings(db_sqlite_path=":memory:", import_score_tolerance=0.05)
    """
    for key, value in kwargs.items():
        os.environ[key.upper()] = value if isinstance(value, str) else json.dumps(value)

    get_settings.cache_clear()
    return get_settings()


def reset_settings() -> None:
    """Reset settings cache to reload from environment."""
    get_settings.cache_clear()
