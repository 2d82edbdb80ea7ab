"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanWorkflowConfig(BaseSettings):
    """Loan workflow core configuration"""

    # Application identifiers
    application_id_prefix: str = "LN"
    application_id_width: int = 5  # LN00001

    # Loan terms limits
    min_interest_rate: str = "1"
    max_interest_rate: str = "100"
    max_term_months: int = 360
    min_down_payment_ratio: str = "0.3333"  # one third of principal
    late_fee_amount: str = "500"  # stamped on payments approved while overdue

    # Persistence
    database_url: str = "sqlite:///:memory:"
    save_retry_attempts: int = 3

    # Audit
    audit_comment_max_length: int = 1000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LOANFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanWorkflowConfig()


def get_config() -> LoanWorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanWorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = LoanWorkflowConfig()
    return config
