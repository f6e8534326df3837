"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Banking ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///banking_ledger.db"  # "memory" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    auth_enabled: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Transfer rules
    base_currency: str = "USD"
    approval_threshold: Decimal = Decimal("10000.00")
    max_transfer_amount: Decimal = Decimal("1000000.00")
    min_transfer_amount: Decimal = Decimal("0.01")
    default_minimum_balance: Decimal = Decimal("0.00")
    auto_settle_below_threshold: bool = True

    # Admin fund adjustments
    max_adjustment_amount: Decimal = Decimal("1000000.00")

    # PIN gate
    pin_max_attempts: int = 5
    pin_lockout_minutes: int = 15
    pin_token_ttl_seconds: int = 300

    # System accounts
    fee_account_number: str = "GL-FEE-INCOME"
    settlement_account_number: str = "GL-EXT-SETTLEMENT"

    # Performance configuration
    cache_ttl_seconds: int = 30


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
