"""
SLA Escalation Value Objects
=============================

Immutable value objects for the escalation domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from servicedesk.config import RecurringPolicyName, SelectionStrategyName


@dataclass(frozen=True)
class EscalationHistory:
    """What the escalation log knows about one (tracking, rule) pair."""

    existing_count: int = 0
    max_repeat_count_so_far: int = 0


@dataclass(frozen=True)
class TriggerDecision:
    """
    Outcome of evaluating one rule against one tracking snapshot.

    repeat_count is only meaningful when fire is True.
    """

    fire: bool
    reason: str
    repeat_count: Optional[int] = None

    @classmethod
    def suppress(cls, reason: str) -> "TriggerDecision":
        return cls(fire=False, reason=reason)


@dataclass(frozen=True)
class NotificationStats:
    """Escalation log totals, by delivery status and by trigger type."""

    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_trigger_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_trigger_type": dict(self.by_trigger_type),
        }


class EscalationEngineConfig(BaseModel):
    """
    Escalation engine tuning loaded from YAML.

    Read at the start of every ticket evaluation, so edits picked up by the
    config watcher apply from the next ticket on.
    """
    recurring_breach_policy: RecurringPolicyName = Field(
        default=RecurringPolicyName.INTERVAL_BOUNDARY,
        description="Re-fire policy for recurring_breach rules"
    )
    default_number_of_recipients: int = Field(
        default=3,
        ge=1,
        description="Recipient cap for rules that do not set number_of_recipients"
    )
    recipient_selection: SelectionStrategyName = Field(
        default=SelectionStrategyName.RANDOM,
        description="How recipients are picked from a pool of eligible users"
    )
    selection_seed: Optional[int] = Field(
        default=None,
        description="Seed for random recipient selection (None = unseeded)"
    )
    max_concurrent_tickets: int = Field(
        default=8,
        ge=1,
        le=128,
        description="Tickets evaluated concurrently during a sweep"
    )
    step_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for each collaborator call"
    )

    @field_validator("recurring_breach_policy", "recipient_selection", mode="before")
    @classmethod
    def normalize_names(cls, v):
        """Accept names in any case from hand-edited YAML."""
        if isinstance(v, str):
            return v.strip().lower()
        return v
