"""
SLA Escalation Infrastructure Models
=====================================

SQLAlchemy ORM models for the escalation context.

The user, ticket, SLA rule and tracking tables belong to the wider service
desk; they are mapped here with only the columns the escalation engine
reads. The escalation rule and notification log tables are owned by this
context.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from servicedesk.config import DeliveryStatus, EscalationType, ReferenceThreshold
from servicedesk.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    """
    Directory user.

    Maps to the 'user_master' table.
    """
    __tablename__ = "user_master"

    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    designation: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    department_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class TicketModel(Base):
    """
    Ticket columns read by the escalation engine.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    ticket_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="open")
    department_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    assigned_to_engineer_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("user_master.user_id"), nullable=True
    )
    created_by_coordinator_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("user_master.user_id"), nullable=True
    )
    created_by_user_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("user_master.user_id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SlaRuleModel(Base):
    """
    SLA rule thresholds.

    Maps to the 'sla_rules' table.
    """
    __tablename__ = "sla_rules"

    rule_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avg_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SlaTrackingModel(Base):
    """
    Per-ticket SLA tracking.

    Maps to the 'ticket_sla_tracking' table.
    """
    __tablename__ = "ticket_sla_tracking"

    tracking_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tickets.ticket_id", ondelete="CASCADE"), nullable=False, unique=True
    )
    sla_rule_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("sla_rules.rule_id"), nullable=False)

    sla_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    business_elapsed_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pause_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_paused_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tst_open", "resolved_at", "is_paused"),
    )


class EscalationRuleModel(Base):
    """
    Multi-level escalation configuration per SLA rule.

    Maps to the 'escalation_rules' table.
    """
    __tablename__ = "escalation_rules"

    escalation_rule_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    sla_rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_rules.rule_id", ondelete="CASCADE"), nullable=False
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)

    # Trigger configuration
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_threshold: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReferenceThreshold.MAX_TAT.value
    )
    trigger_offset_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Repeat configuration
    repeat_interval_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_repeat_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Recipient configuration
    recipient_type: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient_role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipient_designation: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    number_of_recipients: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    escalation_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=EscalationType.HIERARCHICAL.value
    )
    notification_template: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    include_ticket_details: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("sla_rule_id", "escalation_level", name="uq_er_rule_level"),
    )


class EscalationNotificationModel(Base):
    """
    Escalation notification log.

    Maps to the 'escalation_notifications_log' table. The unique constraint
    on (tracking_id, escalation_rule_id, repeat_count) is the last-resort
    guard against two evaluations recording the same instance.
    """
    __tablename__ = "escalation_notifications_log"

    notification_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tracking_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("ticket_sla_tracking.tracking_id", ondelete="CASCADE"), nullable=False
    )
    escalation_rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("escalation_rules.escalation_rule_id"), nullable=False
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Ordered list of {name, email, type}
    recipients: Mapped[List[dict]] = mapped_column(JSON, nullable=False, default=list)
    repeat_count: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Delivery
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Acknowledgement
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tracking_id", "escalation_rule_id", "repeat_count",
            name="uq_enl_tracking_rule_repeat"
        ),
        Index("ix_enl_tracking_rule", "tracking_id", "escalation_rule_id"),
        Index("ix_enl_status_created", "delivery_status", "created_at"),
    )
