"""
RampBridge Core - Configuration Management

Centralized configuration for environment variables, chain access and
banking-provider settings.
This module ensures:
- No hardcoded secrets
- No missing required chain variables at startup
- Environment-specific settings (dev/staging/prod)
"""

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

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
        default="sqlite+aiosqlite:///./data.sqlite",
        description="SQLAlchemy async URL (sqlite+aiosqlite or postgresql+asyncpg)"
    )

    # ==================== CHAIN ====================
    RPC_URL: str = Field(default="", description="JSON-RPC endpoint of the chain node")
    CONTRACT_ADDRESS: str = Field(default="", description="Bridge contract address")
    TOKEN_ADDRESS: str = Field(default="", description="ERC-20 payment token address")
    ADMIN_PRIVATE_KEY: str = Field(
        default="",
        description="Administrative signing key, sole minting authority (required)"
    )

    # ==================== SETTLEMENT ====================
    SETTLEMENT_CONFIRMATION_TIMEOUT: float = Field(
        default=120.0,
        description="Seconds to wait for a settlement receipt before SettlementTimeout"
    )
    SETTLEMENT_POLL_INTERVAL: float = Field(
        default=2.0,
        description="Receipt polling interval in seconds"
    )
    SETTLEMENT_MAX_SUBMIT_ATTEMPTS: int = Field(
        default=3,
        description="Broadcast attempts before a submission is declared failed"
    )
    SETTLEMENT_RETRY_DELAYS: List[float] = Field(
        default=[1.0, 3.0, 9.0],
        description="Backoff delays between broadcast attempts"
    )

    # ==================== CHAIN OBSERVER ====================
    OBSERVER_ENABLED: bool = Field(default=True)
    OBSERVER_POLL_INTERVAL: float = Field(default=5.0, description="Seconds between polls")
    OBSERVER_CONFIRMATIONS: int = Field(
        default=3,
        description="Blocks behind head before a log is considered final"
    )
    OBSERVER_START_BLOCK: Optional[int] = Field(
        default=None,
        description="First block to scan when no watermark is persisted"
    )
    OBSERVER_MAX_BLOCK_RANGE: int = Field(default=2000)
    OBSERVER_QUEUE_SIZE: int = Field(default=16)
    OBSERVER_MAX_BACKOFF: float = Field(default=60.0)

    # ==================== BANKING PROVIDER ====================
    BANKING_PROVIDER: str = Field(
        default="simulated",
        description="Banking provider implementation: simulated, http"
    )
    BANKING_PROVIDER_URL: str = Field(default="")
    BANKING_PROVIDER_API_KEY: str = Field(default="")
    BANKING_PROVIDER_TIMEOUT: float = Field(default=10.0)
    BANKING_SIMULATED_DELAY: float = Field(default=0.5)
    BANKING_WEBHOOK_SECRET: str = Field(
        default="",
        description="HMAC secret for deposit webhook signatures (optional)"
    )

    # ==================== AUTH ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="API key for payout/relay workers flipping processed flags"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(default="", description="Sentry DSN for error tracking")
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(default="RampBridge Core API")
    API_VERSION: str = Field(default="1.0.0")

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Development also allows localhost frontends.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    def validate_chain_config(self) -> List[str]:
        """
        Validate the settings needed to talk to the chain.
        Returns list of validation errors; any error is fatal at startup.
        """
        errors = []

        if not self.RPC_URL:
            errors.append("RPC_URL is required")
        if not self.CONTRACT_ADDRESS:
            errors.append("CONTRACT_ADDRESS is required")
        if not self.TOKEN_ADDRESS:
            errors.append("TOKEN_ADDRESS is required")
        if not self.ADMIN_PRIVATE_KEY:
            errors.append("ADMIN_PRIVATE_KEY is required")

        return errors

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")
            if self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL should not use SQLite in production")
            if self.BANKING_PROVIDER == "simulated":
                errors.append("BANKING_PROVIDER cannot be 'simulated' in production")
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
    logger.info(f"Debug: {settings.debug_enabled}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config(settings: Settings) -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Webhook-Signature",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment(settings: Settings) -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    required_vars = [
        ("RPC_URL", settings.RPC_URL),
        ("CONTRACT_ADDRESS", settings.CONTRACT_ADDRESS),
        ("TOKEN_ADDRESS", settings.TOKEN_ADDRESS),
        ("ADMIN_PRIVATE_KEY", settings.ADMIN_PRIVATE_KEY),
    ]

    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "✓ Set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("BANKING_WEBHOOK_SECRET", settings.BANKING_WEBHOOK_SECRET, "Deposit webhook signature validation disabled"),
        ("INTERNAL_API_KEY", settings.INTERNAL_API_KEY, "Processed-flag endpoints are unauthenticated"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "⚠ Not set"
        else:
            status["variables"][name] = "✓ Set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
