"""
SLA Escalation DTOs
===================

Data Transfer Objects exchanged with the scheduler, the delivery worker and
reporting. Pydantic models handle validation and serialization. Following
YAGNI - only what's needed.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from servicedesk.sla.domain import EscalationNotification


# ========== Type Aliases for Literals ==========
TriggerTypeStr = Literal["warning_zone", "imminent_breach", "breached", "recurring_breach"]
DeliveryStatusStr = Literal["pending", "sent", "failed"]
DeliveryOutcomeStr = Literal["sent", "failed"]
RunStatusStr = Literal["success", "completed_with_errors", "skipped", "failed"]


# ========== Request DTOs ==========

class NotificationStatusUpdate(BaseModel):
    """Delivery outcome reported by the delivery worker."""
    status: DeliveryOutcomeStr = Field(..., description="Delivery outcome")
    sent_at: Optional[datetime] = Field(None, description="When the notification went out")
    error_message: Optional[str] = Field(
        None,
        max_length=500,
        description="Transport error for failed deliveries"
    )


# ========== Response DTOs ==========

class RecipientResponse(BaseModel):
    name: Optional[str] = None
    email: str
    type: str


class EscalationNotificationResponse(BaseModel):
    """Serialized escalation notification for reporting and sweep results."""
    id: Optional[str] = Field(None, description="Notification ID")
    ticket_id: Optional[str] = None
    tracking_id: str
    escalation_rule_id: str
    escalation_level: int
    trigger_type: TriggerTypeStr
    recipients: List[RecipientResponse] = Field(default_factory=list)
    repeat_count: int
    delivery_status: DeliveryStatusStr
    trigger_reason: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_domain(cls, notification: EscalationNotification) -> "EscalationNotificationResponse":
        return cls(
            id=notification.id,
            ticket_id=notification.ticket_id,
            tracking_id=notification.tracking_id,
            escalation_rule_id=notification.escalation_rule_id,
            escalation_level=notification.escalation_level,
            trigger_type=notification.trigger_type.value,
            recipients=[RecipientResponse(**r.to_dict()) for r in notification.recipients],
            repeat_count=notification.repeat_count,
            delivery_status=notification.delivery_status.value,
            trigger_reason=notification.trigger_reason,
            created_at=notification.created_at,
            sent_at=notification.sent_at,
            error_message=notification.error_message,
        )


class TicketSweepResult(BaseModel):
    """Outcome of one ticket during a sweep: fired escalations or an error."""
    ticket_id: str
    fired: List[EscalationNotificationResponse] = Field(default_factory=list)
    error: Optional[str] = Field(None, description="Failure message when processing failed")

    @property
    def ok(self) -> bool:
        return self.error is None


class SweepRunReport(BaseModel):
    """Summary of one scheduled sweep run."""
    status: RunStatusStr
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    tickets_processed: int = 0
    tickets_failed: int = 0
    escalations_triggered: int = 0
    cancelled: bool = False
    errors: List[str] = Field(default_factory=list)
    reason: Optional[str] = Field(None, description="Why a run was skipped or failed")
