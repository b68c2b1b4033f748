"""
Configuration Module
====================

Application settings and domain constants for the SLA escalation engine.

Infrastructure settings (database, scheduler, config file location) come from
environment variables via Pydantic. Engine tuning that operators change at
runtime lives in the escalation YAML file (see EscalationConfigManager).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="servicedesk-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/servicedesk",
        description="SQLAlchemy connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)
    create_tables_on_startup: bool = Field(
        default=False,
        description="Create missing tables at startup (development only)"
    )

    # ========== Escalation Engine ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to escalation engine YAML file"
    )
    escalation_sweep_interval: int = Field(
        default=300,
        description="Seconds between escalation sweeps",
        ge=10
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class TriggerType(str, Enum):
    """When an escalation rule fires relative to its reference threshold."""
    WARNING_ZONE = "warning_zone"
    IMMINENT_BREACH = "imminent_breach"
    BREACHED = "breached"
    RECURRING_BREACH = "recurring_breach"


class ReferenceThreshold(str, Enum):
    """Which SLA turnaround time a rule measures against."""
    AVG_TAT = "avg_tat"
    MAX_TAT = "max_tat"


class RecipientType(str, Enum):
    """Who receives an escalation."""
    ASSIGNED_ENGINEER = "assigned_engineer"
    COORDINATOR = "coordinator"
    IT_HEAD = "it_head"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    CUSTOM_ROLE = "custom_role"
    CUSTOM_DESIGNATION = "custom_designation"


class DeliveryStatus(str, Enum):
    """Delivery state of an escalation notification."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EscalationType(str, Enum):
    HIERARCHICAL = "hierarchical"
    FUNCTIONAL = "functional"


class UserRole(str, Enum):
    """Directory roles the engine resolves recipients from."""
    ENGINEER = "engineer"
    COORDINATOR = "coordinator"
    IT_HEAD = "it_head"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class RecurringPolicyName(str, Enum):
    """Named re-fire policies for recurring breach rules."""
    INTERVAL_BOUNDARY = "interval_boundary"
    CAP_ONLY = "cap_only"


class SelectionStrategyName(str, Enum):
    """How recipients are picked from a pool of eligible users."""
    RANDOM = "random"
    ROUND_ROBIN = "round_robin"


# Ticket statuses that end SLA tracking regardless of the tracking record
CLOSED_TICKET_STATUSES = ["closed", "cancelled"]


# ========== Lists for validation ==========

VALID_TRIGGER_TYPES = [t.value for t in TriggerType]
VALID_REFERENCE_THRESHOLDS = [r.value for r in ReferenceThreshold]
VALID_RECIPIENT_TYPES = [r.value for r in RecipientType]
VALID_DELIVERY_STATUSES = [s.value for s in DeliveryStatus]
