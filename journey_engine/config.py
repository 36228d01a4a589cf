"""Configuration management for the Journey Engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Journey Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./journey_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Worker threads available for starting and resuming executions"
    )
    max_retries: int = Field(
        default=3,
        description="Default retry budget for transient node failures"
    )
    retry_base_delay: float = Field(
        default=30.0,
        description="Backoff before the first retry of a failed node, in seconds"
    )
    retry_max_delay: float = Field(
        default=3600.0,
        description="Upper bound on retry backoff, in seconds"
    )
    lease_ttl: int = Field(
        default=300,
        description="Seconds an advance lease is held before another worker may take it over"
    )
    max_steps_per_advance: int = Field(
        default=1000,
        description="Maximum node transitions a single advance call may perform"
    )
    webhook_timeout: int = Field(
        default=15,
        description="Default webhook timeout in seconds"
    )
    scheduler_interval: float = Field(
        default=60.0,
        description="Seconds between wake-up sweeps of the background scheduler"
    )

    # A/B testing defaults
    ab_confidence_threshold: float = Field(
        default=0.95,
        description="Default confidence required to declare an A/B winner"
    )
    ab_min_sample_size: int = Field(
        default=100,
        description="Default minimum impressions per variant before testing significance"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s",
        description="Log message format"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'max_steps_per_advance')
    @classmethod
    def validate_positive_limits(cls, v):
        """Validate execution limits."""
        if v < 1:
            raise ValueError("Execution limits must be at least 1")
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        """Validate retry budget."""
        if v < 0:
            raise ValueError("Maximum retries cannot be negative")
        return v

    @field_validator('webhook_timeout', 'lease_ttl')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v < 1:
            raise ValueError("Timeout must be at least 1 second")
        return v

    @field_validator('ab_confidence_threshold')
    @classmethod
    def validate_confidence(cls, v):
        """Validate the A/B confidence threshold."""
        if not 0 < v < 1:
            raise ValueError("Confidence threshold must be between 0 and 1")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @classmethod
    def from_env(cls, prefix: str = "JOURNEY_ENGINE_") -> 'AppConfig':
        """
        Create configuration from environment variables.

        Each field reads ``<prefix><FIELD_NAME>``, e.g. ``JOURNEY_ENGINE_MAX_RETRIES``;
        unset variables keep the field default. Values are coerced by the field types.
        """
        overrides = {}
        for name in cls.model_fields:
            value = os.getenv(f"{prefix}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from file or environment variables."""
    global _config

    from dotenv import load_dotenv

    # Load .env file if it exists
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        max_retries=2,
        retry_base_delay=60.0,
        webhook_timeout=5,
        ab_min_sample_size=100,
    )
