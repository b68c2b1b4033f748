"""
SLA Escalation Application Layer
================================

Contains:
- Recipient resolution: directory interface, per-type strategies and
  selection strategies
- Services: repository interfaces and the escalation orchestrator
- DTOs: sweep results, reports, delivery status updates

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from servicedesk.sla.application.dto import (
    NotificationStatusUpdate,
    RecipientResponse,
    EscalationNotificationResponse,
    TicketSweepResult,
    SweepRunReport,
)
from servicedesk.sla.application.recipients import (
    IUserDirectory,
    RecipientResolver,
    RecipientSelector,
    RandomSelector,
    RoundRobinSelector,
    RecipientStrategy,
    build_selector,
)
from servicedesk.sla.application.services import (
    ITrackingStore,
    IElapsedTimeOracle,
    IEscalationRuleRepository,
    IEscalationConfigProvider,
    IEscalationLog,
    EscalationService,
    TicketLockRegistry,
)

__all__ = [
    # DTOs
    "NotificationStatusUpdate",
    "RecipientResponse",
    "EscalationNotificationResponse",
    "TicketSweepResult",
    "SweepRunReport",
    # Interfaces
    "ITrackingStore",
    "IElapsedTimeOracle",
    "IEscalationRuleRepository",
    "IUserDirectory",
    "IEscalationConfigProvider",
    "IEscalationLog",
    # Recipient resolution
    "RecipientResolver",
    "RecipientSelector",
    "RandomSelector",
    "RoundRobinSelector",
    "RecipientStrategy",
    "build_selector",
    # Services
    "EscalationService",
    "TicketLockRegistry",
]
