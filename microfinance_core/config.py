"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance core configuration"""

    # Money
    currency: str = "NGN"  # ISO 4217 code, must be a Currency member

    # Pricing
    rate_schedule_path: Optional[str] = None  # None uses the bundled rate_tiers.json

    # Storage configuration
    database_url: str = "memory"  # "memory" or sqlite:///path/to/file.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Authorization
    approval_roles: str = "manager,director,admin"  # roles allowed to approve/disburse

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "MICROFINANCE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def approval_role_list(self) -> List[str]:
        """Approval roles as a normalized list"""
        return [r.strip().lower() for r in self.approval_roles.split(",") if r.strip()]


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config
