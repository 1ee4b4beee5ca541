"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LoanEngineConfig(BaseSettings):
    """Microloan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///loans.db"  # or memory:// for an in-process store
    transaction_timeout_seconds: float = 5.0
    transaction_max_retries: int = 3

    # Loan book configuration
    default_currency: str = "LKR"
    display_id_prefix: str = "L"
    display_id_width: int = 4

    # Overdue penalty policy
    penalty_grace_period_days: int = 10
    penalty_annual_rate: str = "0.12"  # 12% per annum, pro-rated daily

    # Notification configuration
    notifications_enabled: bool = True
    notification_dispatch_async: bool = True  # False dispatches inline after commit
    notification_max_attempts: int = 3

    # SMS gateway configuration
    sms_api_url: str = "https://app.text.lk/api/http/sms/send"
    sms_api_token: str = ""  # Empty = log-only gateway
    sms_sender_id: str = "TextLKDemo"
    sms_country_code: str = "94"
    sms_timeout: float = 10.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    @property
    def penalty_rate(self) -> Decimal:
        return Decimal(self.penalty_annual_rate)


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
