"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"  # Default SQLite
    database_pool_min: int = 1
    database_pool_max: int = 10
    lock_timeout_seconds: float = 5.0  # Max wait on a row lock before "try again"
    auto_migrate: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Installment terms
    # installment = rate * amount^2 / (divisor * balance)
    installment_rate: Decimal = Decimal("0.02")
    installment_rate_divisor: Decimal = Decimal("3")
    installment_rounding_step: Decimal = Decimal("5")
    min_installment: Decimal = Decimal("20")
    min_period_months: int = 6
    currency_precision: int = 3  # KWD style, 3 decimal places

    # Loan ceiling
    max_loan_multiplier: Decimal = Decimal("3")
    system_max_loan: Decimal = Decimal("10000")

    # Eligibility rules
    min_balance: Decimal = Decimal("500")
    tenure_years: int = 1
    required_subscription: Decimal = Decimal("240")
    subscription_window_months: int = 24
    closure_cooldown_days: int = 30

    # Conflict handling
    conflict_retry_delay_seconds: float = 0.2

    # Notifications
    notification_workers: int = 2  # Delivery threads; handlers never run on the caller's thread

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


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
