"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Retail ledger configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///ledger.db, postgresql://...
    sqlite_busy_timeout: float = 5.0

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3
    retry_backoff_seconds: float = 0.05
    retry_max_backoff_seconds: float = 1.0

    # Business rules configuration
    low_balance_floor: Decimal = Decimal("1000.00")
    audit_transfer_out: bool = False  # Audit only literal withdrawals by default

    # Side-channel configuration
    async_side_effects: bool = False  # Deliver sink events on a worker thread
    audit_webhook_url: Optional[str] = None
    notification_webhook_url: Optional[str] = None
    webhook_timeout: float = 2.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


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
