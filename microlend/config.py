"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class MicrolendConfig(BaseSettings):
    """Microlend engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MICROLEND_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # memory or sqlite
    database_path: str = "microlend.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "PHP"
    score_update_max_retries: int = 10  # compare-and-swap attempts per score update

    # Checkout gateway configuration
    checkout_gateway_url: str = ""  # Empty = mock gateway
    checkout_gateway_timeout: float = 5.0
    checkout_gateway_api_key: str = ""

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = MicrolendConfig()


def get_config() -> MicrolendConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrolendConfig:
    """Reload configuration from environment"""
    global config
    config = MicrolendConfig()
    return config
