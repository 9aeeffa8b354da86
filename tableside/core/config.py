"""
Tableside configuration.

One Settings object, read from the environment (and .env) by pydantic-settings.
Supports three modes:
    - DEVELOPMENT: Local SQLite database, verbose defaults
    - STAGING: Pre-production PostgreSQL, real Redis broker
    - PRODUCTION: Live PostgreSQL and Redis

The Settings object is passed explicitly into every order, table and account
operation. Nothing in the service layer reads configuration from a global.

Usage:
    from tableside.core.config import get_settings

    settings = get_settings()
    manager = OrderLifecycleManager(settings)
"""

import logging
import sys
from decimal import Decimal
from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Deployment mode; decides whether production infrastructure is expected.

    Attributes:
        DEVELOPMENT: Local testing against SQLite
        PRODUCTION: Live environment
        STAGING: Pre-production environment with production-like services
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class Settings(BaseSettings):
    """
    Runtime settings for the API, the worker and the scripts.

    Every field maps to an upper-case environment variable of the same name.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging and error details
        database_url: Async SQLAlchemy connection string
        redis_url: Redis connection string for Celery and health checks
        ledger_queue: Celery queue consumed by the ledger worker
        service_fee_rate: Fraction of the subtotal charged as service fee
        persistence_timeout_seconds: Upper bound for any single core operation
        qr_token_bytes: Entropy of generated table QR tokens
        ledger_*: Revenue ledger (Excel) location and locking
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Application environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="Tableside Ordering",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8001,
        description="API server port"
    )

    # ==========================================================================
    # DATABASE
    # ==========================================================================

    database_url: str = Field(
        default="sqlite+aiosqlite:///./tableside.db",
        description="Async SQLAlchemy connection URL"
    )
    database_echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    persistence_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout applied to each order/account operation"
    )
    database_busy_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds a SQLite connection waits for another writer"
    )

    # ==========================================================================
    # REDIS / CELERY
    # ==========================================================================

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    ledger_queue: str = Field(
        default="ledger",
        description="Celery queue the revenue ledger tasks are routed to"
    )
    ledger_worker_concurrency: int = Field(
        default=1,
        ge=1,
        description="Worker processes writing the ledger; writes serialize on the file lock"
    )
    task_result_ttl_seconds: int = Field(
        default=3600,
        description="How long ledger task results stay in Redis"
    )

    # ==========================================================================
    # BUSINESS CONFIGURATION
    # ==========================================================================

    restaurant_name: str = Field(
        default="Meu Cardapio",
        description="Restaurant display name"
    )
    service_fee_rate: Decimal = Field(
        default=Decimal("0.10"),
        ge=0,
        le=1,
        description="Service fee as a fraction of the order subtotal"
    )
    currency: str = Field(
        default="BRL",
        description="Currency all prices are expressed in"
    )

    # ==========================================================================
    # TABLE QR CODES
    # ==========================================================================

    qr_token_bytes: int = Field(
        default=16,
        ge=8,
        description="Random bytes per generated QR token"
    )
    qr_base_url: str = Field(
        default="http://localhost:8081/mesa",
        description="Public URL prefix a table QR code points to"
    )

    # ==========================================================================
    # REVENUE LEDGER
    # ==========================================================================

    data_directory: str = Field(
        default="data",
        description="Directory for data files"
    )
    ledger_filename: str = Field(
        default="revenue.xlsx",
        description="Excel file settled accounts are appended to"
    )
    ledger_lock_timeout: int = Field(
        default=30,
        description="Seconds to wait for the ledger file lock"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Accept the mode case-insensitively."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def use_real_services(self) -> bool:
        """Check if production-grade infrastructure is expected."""
        return self.env_mode in (EnvironmentMode.PRODUCTION, EnvironmentMode.STAGING)

    # ==========================================================================
    # VALIDATION METHODS
    # ==========================================================================

    def validate_production_config(self) -> list[str]:
        """
        Validate that production settings are not left at development defaults.

        Returns:
            List of offending configuration keys (empty if all good)
        """
        missing = []

        if self.use_real_services:
            if self.database_url.startswith("sqlite"):
                missing.append("DATABASE_URL")
            if "localhost" in self.qr_base_url:
                missing.append("QR_BASE_URL")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings, read once.

    Tests and scripts that need different values build Settings(...) directly.
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Route all log records to stdout in one aligned format.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("tableside")

