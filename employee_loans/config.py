"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from datetime import timedelta
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class LoanConfig(BaseSettings):
    """Employee loan system configuration"""

    # Database configuration
    database_url: str = "sqlite:///employee_loans.db"  # or memory://

    # Money
    currency: str = "USD"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Waiting list
    waiting_list_staleness_days: int = 30
    waiting_list_expiry_days: int = 0  # 0 disables expiry
    priority_reason_weights: Dict[str, int] = {
        "medical": 300,
        "emergency": 300,
        "urgent": 200,
        "general": 100,
    }
    priority_default_reason_weight: int = 50
    priority_amount_points: int = 50
    priority_age_points_per_day: int = 1

    # Concurrency
    lock_timeout_seconds: float = 0.5

    # Feature flags
    enable_audit_logging: bool = True
    seed_default_policies: bool = True

    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False

    @property
    def staleness_window(self) -> timedelta:
        return timedelta(days=self.waiting_list_staleness_days)

    @property
    def expiry_window(self) -> Optional[timedelta]:
        if self.waiting_list_expiry_days <= 0:
            return None
        return timedelta(days=self.waiting_list_expiry_days)


# Global configuration instance
config = LoanConfig()


def get_config() -> LoanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanConfig:
    """Reload configuration from environment"""
    global config
    config = LoanConfig()
    return config
