"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Core lending engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///core_lending.db"  # Default SQLite
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    system_username: str = "system"  # Principal used by scheduled jobs

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Concurrency
    lock_timeout_seconds: float = 10.0

    # Eligibility rules
    min_age: int = 21
    max_age: int = 65
    min_monthly_income: str = "1000.00"
    max_dti_ratio: str = "50.00"          # percent
    max_ltv_ratio: str = "80.00"          # percent
    min_collateral_ratio: str = "120.00"  # percent of loan amount
    max_recommended_emi_ratio: str = "0.40"  # share of income usable for EMIs
    eligibility_pass_score: int = 70

    # Application bounds
    min_loan_amount: str = "50000.00"
    max_loan_amount: str = "10000000.00"
    min_tenure_months: int = 6
    max_tenure_months: int = 360
    min_interest_rate: str = "5.00"
    max_interest_rate: str = "25.00"
    max_purpose_length: int = 500

    # Repayment and default rules
    max_overdue_days: int = 90
    default_disbursement_mode: str = "NEFT"
    default_foreclosure_mode: str = "TRANSFER"

    # Query defaults
    default_page_size: int = 20

    # Feature flags
    enable_audit_logging: bool = True

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
