"""
Shared fixtures and in-memory collaborators for the escalation engine tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from servicedesk.config import DeliveryStatus, TriggerType
from servicedesk.core import DuplicateEscalationException, ResourceNotFoundException
from servicedesk.sla.application import (
    EscalationService,
    IEscalationConfigProvider,
    IEscalationLog,
    IEscalationRuleRepository,
    ITrackingStore,
    IUserDirectory,
    RecipientResolver,
)
from servicedesk.sla.domain import (
    DirectoryUser,
    EscalationEngineConfig,
    EscalationHistory,
    EscalationNotification,
    EscalationRule,
    NotificationStats,
    PendingDelivery,
    Recipient,
    SlaTracking,
    TicketContext,
)


# ========== Factories ==========

def make_tracking(**overrides) -> SlaTracking:
    values = dict(
        tracking_id="trk-1",
        ticket_id="T-1",
        sla_rule_id="sla-1",
        business_elapsed_minutes=0,
        avg_tat_minutes=60,
        max_tat_minutes=120,
    )
    values.update(overrides)
    return SlaTracking(**values)


def make_rule(**overrides) -> EscalationRule:
    values = dict(
        escalation_rule_id="rule-1",
        sla_rule_id="sla-1",
        escalation_level=1,
        trigger_type=TriggerType.BREACHED,
        recipient_type="admin",
    )
    values.update(overrides)
    return EscalationRule(**values)


def make_user(user_id: str, role: str, **overrides) -> DirectoryUser:
    values = dict(
        user_id=user_id,
        name=f"User {user_id}",
        email=f"{user_id}@example.com",
        role=role,
    )
    values.update(overrides)
    return DirectoryUser(**values)


# ========== In-memory collaborators ==========

class InMemoryTrackingStore(ITrackingStore):
    def __init__(self):
        self.trackings: Dict[str, SlaTracking] = {}
        self.failing: Dict[str, Exception] = {}
        self.refreshed: List[str] = []

    def add(self, tracking: SlaTracking) -> SlaTracking:
        self.trackings[tracking.ticket_id] = tracking
        return tracking

    async def get_tracking(self, ticket_id: str) -> Optional[SlaTracking]:
        if ticket_id in self.failing:
            raise self.failing[ticket_id]
        return self.trackings.get(ticket_id)

    async def refresh_elapsed(self, ticket_id: str) -> Optional[SlaTracking]:
        self.refreshed.append(ticket_id)
        return self.trackings.get(ticket_id)

    async def list_open_unresolved_unpaused(self) -> List[str]:
        return [t.ticket_id for t in self.trackings.values() if t.is_evaluable]


class InMemoryRuleRepository(IEscalationRuleRepository):
    def __init__(self):
        self.rules: List[EscalationRule] = []

    def add(self, rule: EscalationRule) -> EscalationRule:
        self.rules.append(rule)
        return rule

    async def active_escalation_rules(self, sla_rule_id: str) -> List[EscalationRule]:
        return sorted(
            (r for r in self.rules if r.sla_rule_id == sla_rule_id and r.is_active),
            key=lambda r: r.escalation_level
        )


class InMemoryUserDirectory(IUserDirectory):
    def __init__(self):
        self.tickets: Dict[str, TicketContext] = {}
        self.users: List[DirectoryUser] = []
        self.failure: Optional[Exception] = None
        self.lookups = 0

    async def get_ticket_context(self, ticket_id: str) -> Optional[TicketContext]:
        return self.tickets.get(ticket_id)

    async def find_active_users(
        self,
        role: Optional[str] = None,
        designation: Optional[str] = None
    ) -> List[DirectoryUser]:
        self.lookups += 1
        if self.failure is not None:
            raise self.failure
        return [
            u for u in self.users
            if u.is_active
            and (role is None or u.role == role)
            and (designation is None or u.designation == designation)
        ]


class InMemoryEscalationLog(IEscalationLog):
    """Enforces (tracking, rule, repeat_count) uniqueness like the database."""

    def __init__(self):
        self.notifications: List[EscalationNotification] = []
        self.history_failure: Optional[Exception] = None
        self.ticket_of: Dict[str, str] = {}

    async def history(self, tracking_id: str, escalation_rule_id: str) -> EscalationHistory:
        await asyncio.sleep(0)
        if self.history_failure is not None:
            raise self.history_failure
        matching = [
            n for n in self.notifications
            if n.tracking_id == tracking_id and n.escalation_rule_id == escalation_rule_id
        ]
        return EscalationHistory(
            existing_count=len(matching),
            max_repeat_count_so_far=max((n.repeat_count for n in matching), default=0)
        )

    async def record(
        self,
        tracking_id: str,
        escalation_rule_id: str,
        escalation_level: int,
        trigger_type: TriggerType,
        recipients: List[Recipient],
        repeat_count: int,
        trigger_reason: Optional[str] = None
    ) -> EscalationNotification:
        await asyncio.sleep(0)
        for n in self.notifications:
            if (n.tracking_id, n.escalation_rule_id, n.repeat_count) == (
                tracking_id, escalation_rule_id, repeat_count
            ):
                raise DuplicateEscalationException(tracking_id, escalation_rule_id, repeat_count)

        notification = EscalationNotification(
            id=str(uuid4()),
            tracking_id=tracking_id,
            escalation_rule_id=escalation_rule_id,
            escalation_level=escalation_level,
            trigger_type=trigger_type,
            recipients=list(recipients),
            repeat_count=repeat_count,
            trigger_reason=trigger_reason,
        )
        self.notifications.append(notification)
        return notification

    def _get(self, notification_id: str) -> EscalationNotification:
        for n in self.notifications:
            if n.id == notification_id:
                return n
        raise ResourceNotFoundException("EscalationNotification", notification_id)

    async def update_status(
        self,
        notification_id: str,
        status: DeliveryStatus,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> EscalationNotification:
        notification = self._get(notification_id)
        notification.apply_status(status, sent_at, error_message)
        return notification

    async def acknowledge(
        self,
        notification_id: str,
        user_id: str,
        acknowledged_at: Optional[datetime] = None
    ) -> EscalationNotification:
        notification = self._get(notification_id)
        notification.acknowledge(user_id, acknowledged_at)
        return notification

    async def pending_for_delivery(self) -> List[PendingDelivery]:
        return [
            PendingDelivery(notification=n, ticket_id=self.ticket_of.get(n.tracking_id, ""))
            for n in self.notifications
            if n.delivery_status == DeliveryStatus.PENDING
        ]

    async def history_for_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        matching = [n for n in self.notifications if self.ticket_of.get(n.tracking_id) == ticket_id]
        return sorted(matching, key=lambda n: n.created_at, reverse=True)

    async def stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> NotificationStats:
        by_status = {s.value: 0 for s in DeliveryStatus}
        by_trigger = {t.value: 0 for t in TriggerType}
        for n in self.notifications:
            by_status[n.delivery_status.value] += 1
            by_trigger[n.trigger_type.value] += 1
        return NotificationStats(
            total=len(self.notifications), by_status=by_status, by_trigger_type=by_trigger
        )


class StaticConfigProvider(IEscalationConfigProvider):
    def __init__(self, config: Optional[EscalationEngineConfig] = None):
        self.config = config or EscalationEngineConfig(selection_seed=7)

    def get_config(self) -> EscalationEngineConfig:
        return self.config


# ========== Fixtures ==========

@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def tracking_store():
    return InMemoryTrackingStore()


@pytest.fixture
def rule_repository():
    return InMemoryRuleRepository()


@pytest.fixture
def directory():
    directory = InMemoryUserDirectory()
    directory.users = [
        make_user("admin1", "admin"),
        make_user("admin2", "admin"),
        make_user("head1", "it_head"),
    ]
    return directory


@pytest.fixture
def escalation_log():
    return InMemoryEscalationLog()


@pytest.fixture
def config_provider():
    return StaticConfigProvider()


@pytest.fixture
def service(tracking_store, rule_repository, escalation_log, directory, config_provider):
    return EscalationService(
        tracking_store=tracking_store,
        rule_repository=rule_repository,
        escalation_log=escalation_log,
        recipient_resolver=RecipientResolver(directory),
        config_provider=config_provider,
    )
