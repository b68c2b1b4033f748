"""
SLA Escalation Domain Entities
===============================

Pure Python domain entities for SLA escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from servicedesk.config import (
    DeliveryStatus, EscalationType, RecipientType, ReferenceThreshold, TriggerType
)
from servicedesk.core import DomainException, ValidationException


@dataclass(frozen=True)
class DirectoryUser:
    """A user as seen by recipient resolution."""

    user_id: str
    name: str
    email: Optional[str]
    role: Optional[str] = None
    designation: Optional[str] = None
    department_id: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class TicketContext:
    """
    Read-only view of a ticket and the people attached to it.

    Immutable from the escalation engine's perspective.
    """

    ticket_id: str
    ticket_number: Optional[str] = None
    title: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    department_id: Optional[str] = None
    assigned_engineer: Optional[DirectoryUser] = None
    coordinator: Optional[DirectoryUser] = None
    created_for: Optional[DirectoryUser] = None


@dataclass
class SlaTracking:
    """
    Running SLA state of one ticket against its SLA rule.

    Owned by the tracking store; the engine only reads it.
    """

    tracking_id: str
    ticket_id: str
    sla_rule_id: str
    business_elapsed_minutes: float
    avg_tat_minutes: float
    max_tat_minutes: float
    is_paused: bool = False
    resolved_at: Optional[datetime] = None
    sla_start_time: Optional[datetime] = None
    pause_started_at: Optional[datetime] = None
    total_paused_minutes: float = 0

    @property
    def is_evaluable(self) -> bool:
        """Resolved or paused tracking is never evaluated."""
        return self.resolved_at is None and not self.is_paused

    def pause(self, at: datetime) -> None:
        """Stop the SLA clock at `at`."""
        if self.resolved_at is not None:
            raise DomainException(
                f"SLA tracking {self.tracking_id} is already resolved",
                {"tracking_id": self.tracking_id}
            )
        if self.is_paused:
            raise DomainException(
                f"SLA tracking {self.tracking_id} is already paused",
                {"tracking_id": self.tracking_id}
            )
        self.is_paused = True
        self.pause_started_at = at

    def resume(self, at: datetime) -> float:
        """
        Restart the SLA clock and fold the finished pause into
        total_paused_minutes.

        Returns:
            Length of the finished pause in minutes
        """
        if not self.is_paused:
            raise DomainException(
                f"SLA tracking {self.tracking_id} is not paused",
                {"tracking_id": self.tracking_id}
            )
        paused = 0.0
        if self.pause_started_at is not None:
            paused = max(0.0, (at - self.pause_started_at).total_seconds() / 60)
        self.total_paused_minutes += paused
        self.is_paused = False
        self.pause_started_at = None
        return paused

    def threshold_for(self, reference: ReferenceThreshold) -> float:
        """Turnaround time the given reference threshold points at."""
        if reference == ReferenceThreshold.AVG_TAT:
            return self.avg_tat_minutes
        return self.max_tat_minutes


@dataclass
class EscalationRule:
    """
    A configured threshold-crossing condition plus recipient policy,
    scoped to one SLA rule and ordered by escalation level.
    """

    escalation_rule_id: str
    sla_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    recipient_type: RecipientType
    reference_threshold: ReferenceThreshold = ReferenceThreshold.MAX_TAT
    trigger_offset_minutes: int = 0
    repeat_interval_minutes: Optional[int] = None
    max_repeat_count: Optional[int] = None
    recipient_role: Optional[str] = None
    recipient_designation: Optional[str] = None
    number_of_recipients: Optional[int] = None
    escalation_type: EscalationType = EscalationType.HIERARCHICAL
    notification_template: Optional[str] = None
    include_ticket_details: bool = True
    is_active: bool = True

    def __post_init__(self):
        """Coerce enum fields and validate the rule on initialization."""
        try:
            self.trigger_type = TriggerType(self.trigger_type)
            self.recipient_type = RecipientType(self.recipient_type)
            self.reference_threshold = ReferenceThreshold(self.reference_threshold)
            self.escalation_type = EscalationType(self.escalation_type)
        except ValueError as e:
            raise ValidationException(
                f"Invalid escalation rule {self.escalation_rule_id}: {e}",
                {"escalation_rule_id": self.escalation_rule_id}
            ) from e

        if self.escalation_level < 1:
            raise ValidationException(
                "escalation_level must be >= 1",
                {"escalation_rule_id": self.escalation_rule_id}
            )

        if self.max_repeat_count is not None and self.max_repeat_count < 1:
            raise ValidationException(
                "max_repeat_count must be >= 1 when set",
                {"escalation_rule_id": self.escalation_rule_id}
            )

    @property
    def is_recurring(self) -> bool:
        return self.trigger_type == TriggerType.RECURRING_BREACH


@dataclass(frozen=True)
class Recipient:
    """An addressable escalation recipient."""

    name: Optional[str]
    email: str
    type: str

    def to_dict(self) -> dict:
        return {"name": self.name, "email": self.email, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "Recipient":
        return cls(name=data.get("name"), email=data["email"], type=data.get("type", ""))


@dataclass
class EscalationNotification:
    """
    One fired escalation instance.

    Created once by the engine with status pending; the delivery worker
    moves it to sent or failed. A sent notification is settled.
    """

    id: Optional[str]
    tracking_id: str
    escalation_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    recipients: List[Recipient] = field(default_factory=list)
    repeat_count: int = 1
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    trigger_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    # Populated on reads that join the tracking record
    ticket_id: Optional[str] = None

    def __post_init__(self):
        self.trigger_type = TriggerType(self.trigger_type)
        self.delivery_status = DeliveryStatus(self.delivery_status)

    @property
    def is_settled(self) -> bool:
        return self.delivery_status == DeliveryStatus.SENT

    def apply_status(
        self,
        status: DeliveryStatus,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Record a delivery outcome reported by the delivery worker.

        Raises:
            ValidationException: status is not a delivery outcome
            DomainException: the notification is already settled
        """
        try:
            status = DeliveryStatus(status)
        except ValueError as e:
            raise ValidationException(
                f"Unknown delivery status: {status}",
                {"notification_id": self.id}
            ) from e
        if status == DeliveryStatus.PENDING:
            raise ValidationException(
                "Delivery status can only be updated to sent or failed",
                {"notification_id": self.id}
            )
        if self.is_settled:
            raise DomainException(
                f"Notification {self.id} is already sent",
                {"notification_id": self.id}
            )

        self.delivery_status = status
        if status == DeliveryStatus.SENT:
            self.sent_at = sent_at or datetime.now(timezone.utc)
            self.error_message = None
        else:
            self.sent_at = sent_at
            self.error_message = error_message

    def acknowledge(self, user_id: str, timestamp: Optional[datetime] = None) -> None:
        """Mark the escalation acknowledged; the first acknowledgement wins."""
        if self.acknowledged_at is not None:
            return
        self.acknowledged_at = timestamp or datetime.now(timezone.utc)
        self.acknowledged_by = user_id

    def to_dict(self) -> dict:
        """Convert to dictionary for reporting and audit output."""
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "tracking_id": self.tracking_id,
            "escalation_rule_id": self.escalation_rule_id,
            "escalation_level": self.escalation_level,
            "trigger_type": self.trigger_type.value,
            "recipients": [r.to_dict() for r in self.recipients],
            "repeat_count": self.repeat_count,
            "delivery_status": self.delivery_status.value,
            "trigger_reason": self.trigger_reason,
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "error_message": self.error_message,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
        }


@dataclass
class PendingDelivery:
    """A pending notification plus the ticket context a template needs."""

    notification: EscalationNotification
    ticket_id: str
    ticket_number: Optional[str] = None
    ticket_title: Optional[str] = None
    priority: Optional[str] = None
    ticket_status: Optional[str] = None
    sla_rule_name: Optional[str] = None
    business_elapsed_minutes: float = 0
    max_tat_minutes: float = 0
    notification_template: Optional[str] = None
    include_ticket_details: bool = True

    def template_context(self) -> dict[str, Any]:
        """Flat mapping handed to notification templates."""
        context = self.notification.to_dict()
        context.update({
            "ticket_id": self.ticket_id,
            "ticket_number": self.ticket_number,
            "ticket_title": self.ticket_title,
            "priority": self.priority,
            "ticket_status": self.ticket_status,
            "sla_rule_name": self.sla_rule_name,
            "business_elapsed_minutes": self.business_elapsed_minutes,
            "max_tat_minutes": self.max_tat_minutes,
            "notification_template": self.notification_template,
            "include_ticket_details": self.include_ticket_details,
        })
        return context
