"""
Configuration Management Module

Centralized configuration using pydantic-settings. Every field can be overridden
through a LENDING_* environment variable or a .env file.
"""

from pydantic_settings import BaseSettings


class LendingConfig(BaseSettings):
    """Lending payments engine configuration"""

    # Storage configuration
    database_path: str = "lending.db"  # SQLite file
    use_in_memory_storage: bool = False

    # Payment processor configuration
    processor_base_url: str = ""  # Empty = in-memory mock processor
    processor_username: str = ""
    processor_password: str = ""
    processor_timeout: float = 10.0  # Every gateway call is bounded by this
    processor_payment_type: int = 1  # EFT
    processor_token_refresh_margin_seconds: int = 300

    # Reconciliation configuration
    sync_interval_seconds: int = 900
    submission_stale_after_seconds: int = 300

    # Lending defaults
    default_currency: str = "CAD"

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Feature flags
    enable_audit_logging: bool = True
    enable_notifications: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
