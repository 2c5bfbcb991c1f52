"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class WorkflowConfig(BaseSettings):
    """Approval workflow service configuration"""

    # Storage configuration
    database_url: str = "sqlite:///approvals.db"  # memory:// for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Escalation configuration
    escalation_enabled: bool = True
    escalation_interval_seconds: int = 300
    escalation_actor: str = "system"

    # Business rules configuration
    admin_roles: List[str] = ["ADMIN"]
    sla_warning_hours: int = 4
    default_sla_hours: int = 24
    require_reject_comment: bool = False

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "APPROVALS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WorkflowConfig()


def get_config() -> WorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = WorkflowConfig()
    return config
