"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # or memory:// for an ephemeral store
    database_timeout: float = 30.0  # Seconds to wait for the SQLite write lock
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Business rules configuration
    decimal_precision: int = 28  # Significant digits for interest arithmetic
    statement_day_seed: Optional[int] = None  # Seed for statement cycle day assignment
    
    class Config:
        env_prefix = "LOAN_LEDGER_"
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
