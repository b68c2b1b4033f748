"""
SLA Escalation Infrastructure Layer
====================================

Infrastructure implementations for the escalation engine:
- Models: SQLAlchemy ORM models
- Repositories: tracking store, rules, user directory, escalation log
- External: elapsed-time oracle, config watcher, sweep job, scheduler
"""

from servicedesk.sla.infrastructure.models import (
    UserModel,
    TicketModel,
    SlaRuleModel,
    SlaTrackingModel,
    EscalationRuleModel,
    EscalationNotificationModel,
)
from servicedesk.sla.infrastructure.repositories import (
    SQLAlchemyTrackingStore,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyUserDirectory,
    SQLAlchemyEscalationLog,
)
from servicedesk.sla.infrastructure.external import (
    WallClockElapsedOracle,
    EscalationConfigManager,
    EscalationSweepJob,
    EscalationScheduler,
)

__all__ = [
    "UserModel",
    "TicketModel",
    "SlaRuleModel",
    "SlaTrackingModel",
    "EscalationRuleModel",
    "EscalationNotificationModel",
    "SQLAlchemyTrackingStore",
    "SQLAlchemyEscalationRuleRepository",
    "SQLAlchemyUserDirectory",
    "SQLAlchemyEscalationLog",
    "WallClockElapsedOracle",
    "EscalationConfigManager",
    "EscalationSweepJob",
    "EscalationScheduler",
]
