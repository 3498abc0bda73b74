"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class SecureBankConfig(BaseSettings):
    """SecureBank core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SECUREBANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Database configuration
    database_url: str = "sqlite:///securebank.db"  # memory://, sqlite:///path, postgresql://...
    database_timeout: float = 5.0  # SQLite busy timeout in seconds

    # Session configuration
    session_expiry_seconds: int = 7 * 24 * 60 * 60  # 7 days
    max_sessions_per_user: int = 1
    session_warning_seconds: int = 5 * 60  # Near-expiry warning threshold
    session_cleanup_interval_seconds: int = 60 * 60  # Hourly sweep
    session_token_bytes: int = 32

    # Account configuration
    account_number_length: int = 10
    account_number_max_attempts: int = 100
    default_currency: str = "USD"
    max_transaction_amount: str = "100000.00"  # Per funding, in major units of the account currency

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout


# Global configuration instance
config = SecureBankConfig()


def get_config() -> SecureBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SecureBankConfig:
    """Reload configuration from environment"""
    global config
    config = SecureBankConfig()
    return config
