"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class FinanceConfig(BaseSettings):
    """Device financing core configuration"""

    # Database configuration
    database_url: str = "sqlite:///device_finance.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    currency: str = "HNL"
    auto_block_threshold_days: int = 30
    lock_reason_overdue: str = "Overdue payment"
    unlock_reason_default: str = "Payment received"

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = webhook channel disabled
    notification_timeout: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True
    enable_notifications: bool = True

    class Config:
        env_prefix = "FINANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FinanceConfig()


def get_config() -> FinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FinanceConfig:
    """Reload configuration from environment"""
    global config
    config = FinanceConfig()
    return config
