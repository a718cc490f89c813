"""
Tally Sync Core - Configuration Management

Centralized configuration for the ledger connector, sync scheduling,
change tracking and reconciliation tolerances.
This module ensures:
- No hardcoded hosts or credentials
- Sensible local defaults (SQLite, Tally on localhost:9000)
- Environment-specific settings (dev/staging/prod)
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./tally_sync.db",
        description="SQLAlchemy async URL (sqlite+aiosqlite or postgresql+asyncpg)"
    )
    DATABASE_ECHO: bool = Field(default=False)

    # ==================== TALLY CONNECTOR ====================
    TALLY_HOST: str = Field(
        default="localhost",
        description="Host running the Tally XML server"
    )
    TALLY_PORT: int = Field(
        default=9000,
        description="Tally XML server port"
    )
    TALLY_COMPANY: str = Field(
        default="",
        description="Company (tenant) name; empty uses Tally's active company"
    )
    TALLY_MIN_REQUEST_INTERVAL_MS: int = Field(
        default=200,
        description="Minimum spacing between consecutive requests to Tally"
    )
    TALLY_REQUEST_TIMEOUT_SECONDS: float = Field(
        default=60.0,
        description="Timeout for a single Tally request"
    )
    DEFAULT_SALES_LEDGER: str = Field(
        default="Sales Account",
        description="Sales ledger credited by pushed invoices"
    )

    # ==================== SYNC ====================
    SYNC_INTERVAL_MS: int = Field(
        default=120000,
        description="Incremental voucher sync interval; 0 disables timers (manual only)"
    )
    MASTER_SYNC_INTERVAL_MS: int = Field(
        default=300000,
        description="Master data (stock, parties, pending bills) sync interval"
    )
    SALES_VOUCHER_TYPES: str = Field(
        default="Sales,Credit Sales,Pending Sales Bill,A Pto Bill",
        description="Comma-separated sales voucher types"
    )
    RECEIPT_VOUCHER_TYPES: str = Field(
        default="Bank Receipt,Counter Receipt,Receipt,Dashboard Receipt",
        description="Comma-separated receipt voucher types"
    )
    CONVERSION_TARGET_TYPES: str = Field(
        default="Sales,Credit Sales,Apto Bill,Apto Sales",
        description="Voucher types a pending bill may be converted into"
    )
    LARGE_BILL_THRESHOLD: float = Field(
        default=50000.0,
        description="Bills at or above this amount raise a bill:large event"
    )

    # ==================== CHANGE TRACKING ====================
    TRACKED_FIELDS: str = Field(
        default="voucher_number,voucher_type,voucher_date,party_name,amount,narration,udf_payment_total",
        description="Comma-separated voucher fields diffed into the change log"
    )
    CRITICAL_UDF_TOLERANCE: float = Field(
        default=1.0,
        description="Payment total within this of the face amount counts as reconciled"
    )
    CONVERSION_AMOUNT_TOLERANCE: float = Field(
        default=0.05,
        description="Relative amount tolerance for converted-bill detection"
    )

    # ==================== RECONCILIATION ====================
    RECON_AMOUNT_EPSILON: float = Field(
        default=0.01,
        description="Amount tolerance for 1:1 matches"
    )
    RECON_BATCH_EPSILON: float = Field(
        default=1.0,
        description="Amount tolerance for gateway settlement batches"
    )
    RECON_BANK_LEDGER_MAX_DAYS: int = Field(default=2)
    RECON_GATEWAY_LEDGER_MAX_DAYS: int = Field(default=1)
    GATEWAY_SETTLEMENT_MARKERS: str = Field(
        default="FONEPAY,ESEWASTLMT",
        description="Bank description markers identifying gateway settlements"
    )
    BANK_LEDGER_NAME: str = Field(
        default="RBB Bank",
        description="Tally ledger matched against the bank statement"
    )
    GATEWAY_LEDGER_NAME: str = Field(
        default="Fonepay",
        description="Tally ledger matched against gateway transactions"
    )
    RECON_LOOKBACK_DAYS: int = Field(
        default=30,
        description="Days of ledger vouchers fetched before a reconciliation run"
    )
    PENDING_INVOICE_MAX_ATTEMPTS: int = Field(
        default=5,
        description="Push attempts before a local invoice is left for manual review"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines (set False for local development)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def tally_url(self) -> str:
        return f"http://{self.TALLY_HOST}:{self.TALLY_PORT}"

    @property
    def sales_voucher_types(self) -> List[str]:
        return _split_csv(self.SALES_VOUCHER_TYPES)

    @property
    def receipt_voucher_types(self) -> List[str]:
        return _split_csv(self.RECEIPT_VOUCHER_TYPES)

    @property
    def conversion_target_types(self) -> List[str]:
        return _split_csv(self.CONVERSION_TARGET_TYPES)

    @property
    def tracked_fields(self) -> List[str]:
        return _split_csv(self.TRACKED_FIELDS)

    @property
    def gateway_settlement_markers(self) -> List[str]:
        return [m.upper() for m in _split_csv(self.GATEWAY_SETTLEMENT_MARKERS)]

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if self.TALLY_MIN_REQUEST_INTERVAL_MS < 0:
            errors.append("TALLY_MIN_REQUEST_INTERVAL_MS cannot be negative")

        if self.SYNC_INTERVAL_MS < 0:
            errors.append("SYNC_INTERVAL_MS cannot be negative")

        if self.is_production:
            if self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL should not use SQLite in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Tally endpoint: {settings.tally_url}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    optional_vars = [
        ("TALLY_COMPANY", settings.TALLY_COMPANY, "No company configured; Tally's active company is used"),
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "⚠ Not set"
        else:
            status["variables"][name] = "✓ Set"

    if settings.SYNC_INTERVAL_MS == 0:
        status["warnings"].append("SYNC_INTERVAL_MS is 0; sync runs on demand only")

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
