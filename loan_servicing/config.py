"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Literal


class LoanServicingConfig(BaseSettings):
    """Loan servicing configuration"""

    # Database configuration
    database_url: str = "sqlite:///loans.db"  # "memory" for in-memory storage

    # Document storage for proofs of payment
    document_root: str = "payment_proofs"
    max_proof_size_bytes: int = 10 * 1024 * 1024  # 10MB

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    default_currency: str = "USD"
    completion_epsilon: str = "0.01"
    late_fee_rate: str = "0.05"
    minimum_late_fee: str = "25.00"
    upcoming_window_days: int = 30
    max_rejection_reason_length: int = 500
    schedule_basis: Literal["principal", "total_repayable"] = "principal"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
