"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Pawnshop loan ledger configuration"""

    # Storage configuration
    database_path: str = "pawn_ledger.db"  # SQLite file used by the CLI

    # Money
    currency: str = "GTQ"  # ISO 4217 code, must exist in Currency

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Document numbering
    loan_number_prefix: str = "LN"
    payment_number_prefix: str = "PY"

    # Business rules
    default_grace_period_days: int = 0  # Used when a loan request omits it

    # Concurrency
    optimistic_retry_attempts: int = 3

    model_config = SettingsConfigDict(
        env_prefix="PAWN_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


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
