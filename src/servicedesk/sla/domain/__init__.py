"""
SLA Escalation Domain Layer
===========================

Domain layer for the escalation engine.

Contains:
- Entities: EscalationRule, SlaTracking, EscalationNotification, TicketContext
- Value Objects: EscalationHistory, TriggerDecision, EscalationEngineConfig
- Domain Services: TriggerEvaluator and recurring fire policies

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from servicedesk.sla.domain.entities import (
    DirectoryUser,
    TicketContext,
    SlaTracking,
    EscalationRule,
    Recipient,
    EscalationNotification,
    PendingDelivery,
)
from servicedesk.sla.domain.value_objects import (
    EscalationHistory,
    TriggerDecision,
    NotificationStats,
    EscalationEngineConfig,
)
from servicedesk.sla.domain.evaluator import (
    TriggerEvaluator,
    RecurringFirePolicy,
    IntervalBoundaryPolicy,
    CapOnlyPolicy,
    get_recurring_policy,
)

__all__ = [
    # Entities
    "DirectoryUser",
    "TicketContext",
    "SlaTracking",
    "EscalationRule",
    "Recipient",
    "EscalationNotification",
    "PendingDelivery",
    # Value Objects
    "EscalationHistory",
    "TriggerDecision",
    "NotificationStats",
    "EscalationEngineConfig",
    # Domain Services
    "TriggerEvaluator",
    "RecurringFirePolicy",
    "IntervalBoundaryPolicy",
    "CapOnlyPolicy",
    "get_recurring_policy",
]
