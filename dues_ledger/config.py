"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class DuesLedgerConfig(BaseSettings):
    """Dues ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="DUES_",
        env_file=".env",
        case_sensitive=False,
    )

    # Database configuration
    database_url: str = "sqlite:///dues_ledger.db"  # memory:// for in-memory storage

    # Ledger configuration
    currency: str = "TRY"
    receipt_prefix: str = "RCP"
    accrual_batch_size: int = 500
    default_page_size: int = 20
    max_page_size: int = 200

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = DuesLedgerConfig()


def get_config() -> DuesLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> DuesLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = DuesLedgerConfig()
    return config
