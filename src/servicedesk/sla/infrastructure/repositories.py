"""
SLA Escalation Infrastructure Repositories
===========================================

Concrete implementations of the repository interfaces using SQLAlchemy.

Each repository takes the session factory and opens a short-lived session
per operation, so reads always see the latest committed writes and
concurrent ticket evaluations never share a session.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicedesk.config import (
    CLOSED_TICKET_STATUSES, DeliveryStatus, TriggerType
)
from servicedesk.core import (
    ApplicationException,
    DuplicateEscalationException,
    EscalationHistoryUnavailableException,
    RepositoryException,
    ResourceNotFoundException,
)
from servicedesk.shared.infrastructure.logging import get_logger
from servicedesk.sla.application.recipients import IUserDirectory
from servicedesk.sla.application.services import (
    IElapsedTimeOracle,
    IEscalationLog,
    IEscalationRuleRepository,
    ITrackingStore,
)
from servicedesk.sla.domain import (
    DirectoryUser,
    EscalationHistory,
    EscalationNotification,
    EscalationRule,
    NotificationStats,
    PendingDelivery,
    Recipient,
    SlaTracking,
    TicketContext,
)
from servicedesk.sla.infrastructure.models import (
    EscalationNotificationModel,
    EscalationRuleModel,
    SlaRuleModel,
    SlaTrackingModel,
    TicketModel,
    UserModel,
)

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Some backends (SQLite) drop tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _str_or_none(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


def _tracking_to_domain(tracking: SlaTrackingModel, rule: SlaRuleModel) -> SlaTracking:
    return SlaTracking(
        tracking_id=str(tracking.tracking_id),
        ticket_id=str(tracking.ticket_id),
        sla_rule_id=str(tracking.sla_rule_id),
        business_elapsed_minutes=tracking.business_elapsed_minutes,
        avg_tat_minutes=rule.avg_tat_minutes,
        max_tat_minutes=rule.max_tat_minutes,
        is_paused=tracking.is_paused,
        resolved_at=_aware(tracking.resolved_at),
        sla_start_time=_aware(tracking.sla_start_time),
        pause_started_at=_aware(tracking.pause_started_at),
        total_paused_minutes=tracking.total_paused_minutes or 0,
    )


def _user_to_domain(user: UserModel) -> DirectoryUser:
    return DirectoryUser(
        user_id=str(user.user_id),
        name=user.full_name,
        email=user.email,
        role=user.role,
        designation=user.designation,
        department_id=_str_or_none(user.department_id),
        is_active=user.is_active,
    )


def _notification_to_domain(
    model: EscalationNotificationModel,
    ticket_id: Optional[UUID] = None
) -> EscalationNotification:
    return EscalationNotification(
        id=str(model.notification_id),
        tracking_id=str(model.tracking_id),
        escalation_rule_id=str(model.escalation_rule_id),
        escalation_level=model.escalation_level,
        trigger_type=model.trigger_type,
        recipients=[Recipient.from_dict(r) for r in (model.recipients or [])],
        repeat_count=model.repeat_count,
        delivery_status=model.delivery_status,
        trigger_reason=model.trigger_reason,
        created_at=_aware(model.created_at),
        sent_at=_aware(model.notification_sent_at),
        error_message=model.error_message,
        acknowledged_at=_aware(model.acknowledged_at),
        acknowledged_by=_str_or_none(model.acknowledged_by),
        ticket_id=_str_or_none(ticket_id),
    )


class SQLAlchemyTrackingStore(ITrackingStore):
    """
    SQLAlchemy implementation of the SLA tracking store.

    Elapsed business minutes are computed by the injected oracle; this class
    only persists the result.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        elapsed_oracle: IElapsedTimeOracle,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._session_factory = session_factory
        self._oracle = elapsed_oracle
        self._clock = clock

    @staticmethod
    def _tracking_query(ticket_uuid: UUID):
        return (
            select(SlaTrackingModel, SlaRuleModel)
            .join(SlaRuleModel, SlaRuleModel.rule_id == SlaTrackingModel.sla_rule_id)
            .where(SlaTrackingModel.ticket_id == ticket_uuid)
        )

    async def get_tracking(self, ticket_id: str) -> Optional[SlaTracking]:
        """Get tracking joined with its SLA rule thresholds."""
        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._session_factory() as session:
            row = (await session.execute(self._tracking_query(ticket_uuid))).first()

        if row is None:
            return None
        return _tracking_to_domain(row[0], row[1])

    async def refresh_elapsed(self, ticket_id: str) -> Optional[SlaTracking]:
        """Recompute and store elapsed business minutes for an open ticket."""
        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._session_factory() as session:
            async with session.begin():
                row = (await session.execute(self._tracking_query(ticket_uuid))).first()
                if row is None:
                    return None

                model, rule = row
                tracking = _tracking_to_domain(model, rule)
                if not tracking.is_evaluable:
                    return tracking

                now = self._clock()
                elapsed = await self._oracle.elapsed_minutes(tracking, now)
                model.business_elapsed_minutes = elapsed
                model.last_calculated_at = now
                tracking.business_elapsed_minutes = elapsed

        return tracking

    async def pause(self, ticket_id: str) -> SlaTracking:
        """
        Stop the SLA clock of a ticket.

        Elapsed minutes are brought up to the pause start first.

        Raises:
            ResourceNotFoundException: ticket has no tracking
            DomainException: tracking is resolved or already paused
        """
        async with self._session_factory() as session:
            async with session.begin():
                model, tracking = await self._load_tracking(session, ticket_id)
                now = self._clock()
                tracking.pause(now)

                elapsed = await self._oracle.elapsed_minutes(tracking, now)
                model.business_elapsed_minutes = elapsed
                model.last_calculated_at = now
                model.is_paused = True
                model.pause_started_at = now
                tracking.business_elapsed_minutes = elapsed

        logger.info("SLA tracking paused", extra={"ticket_id": ticket_id})
        return tracking

    async def resume(self, ticket_id: str) -> SlaTracking:
        """
        Restart the SLA clock, adding the finished pause to the tracking's
        paused total.

        Raises:
            ResourceNotFoundException: ticket has no tracking
            DomainException: tracking is not paused
        """
        async with self._session_factory() as session:
            async with session.begin():
                model, tracking = await self._load_tracking(session, ticket_id)
                paused = tracking.resume(self._clock())

                model.is_paused = False
                model.pause_started_at = None
                model.total_paused_minutes = tracking.total_paused_minutes

        logger.info(
            "SLA tracking resumed",
            extra={"ticket_id": ticket_id, "paused_minutes": round(paused, 2)}
        )
        return tracking

    async def _load_tracking(self, session: AsyncSession, ticket_id: str):
        ticket_uuid = _as_uuid(ticket_id)
        row = None
        if ticket_uuid is not None:
            row = (await session.execute(self._tracking_query(ticket_uuid))).first()
        if row is None:
            raise ResourceNotFoundException("SlaTracking", ticket_id)
        model, rule = row
        return model, _tracking_to_domain(model, rule)

    async def list_open_unresolved_unpaused(self) -> List[str]:
        """Ticket ids with open tracking on tickets that are not closed."""
        stmt = (
            select(SlaTrackingModel.ticket_id)
            .join(TicketModel, TicketModel.ticket_id == SlaTrackingModel.ticket_id)
            .where(
                and_(
                    SlaTrackingModel.resolved_at.is_(None),
                    SlaTrackingModel.is_paused.is_(False),
                    TicketModel.status.not_in(CLOSED_TICKET_STATUSES),
                )
            )
            .order_by(SlaTrackingModel.sla_start_time.asc())
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [str(ticket_uuid) for ticket_uuid in result.scalars().all()]


class SQLAlchemyEscalationRuleRepository(IEscalationRuleRepository):
    """SQLAlchemy implementation of the escalation rule repository."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def active_escalation_rules(self, sla_rule_id: str) -> List[EscalationRule]:
        """Active rules ordered by level; invalid rows are logged and skipped."""
        rule_uuid = _as_uuid(sla_rule_id)
        if rule_uuid is None:
            return []

        stmt = (
            select(EscalationRuleModel)
            .where(
                and_(
                    EscalationRuleModel.sla_rule_id == rule_uuid,
                    EscalationRuleModel.is_active.is_(True),
                )
            )
            .order_by(EscalationRuleModel.escalation_level.asc())
        )

        async with self._session_factory() as session:
            models = (await session.execute(stmt)).scalars().all()

        rules = []
        for model in models:
            try:
                rules.append(EscalationRule(
                    escalation_rule_id=str(model.escalation_rule_id),
                    sla_rule_id=str(model.sla_rule_id),
                    escalation_level=model.escalation_level,
                    trigger_type=model.trigger_type,
                    recipient_type=model.recipient_type,
                    reference_threshold=model.reference_threshold,
                    trigger_offset_minutes=model.trigger_offset_minutes or 0,
                    repeat_interval_minutes=model.repeat_interval_minutes,
                    max_repeat_count=model.max_repeat_count,
                    recipient_role=model.recipient_role,
                    recipient_designation=model.recipient_designation,
                    number_of_recipients=model.number_of_recipients,
                    escalation_type=model.escalation_type,
                    notification_template=model.notification_template,
                    include_ticket_details=model.include_ticket_details,
                    is_active=model.is_active,
                ))
            except ApplicationException as e:
                logger.error(
                    "Skipping invalid escalation rule",
                    extra={"escalation_rule_id": str(model.escalation_rule_id), "error": e.message}
                )
        return rules


class SQLAlchemyUserDirectory(IUserDirectory):
    """SQLAlchemy implementation of the user/ticket directory."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def get_ticket_context(self, ticket_id: str) -> Optional[TicketContext]:
        """Ticket plus its engineer, coordinator and requesting user."""
        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._session_factory() as session:
            ticket = await session.get(TicketModel, ticket_uuid)
            if ticket is None:
                return None

            people_ids = {
                uid for uid in (
                    ticket.assigned_to_engineer_id,
                    ticket.created_by_coordinator_id,
                    ticket.created_by_user_id,
                ) if uid is not None
            }
            users: Dict[UUID, DirectoryUser] = {}
            if people_ids:
                result = await session.execute(
                    select(UserModel).where(UserModel.user_id.in_(people_ids))
                )
                users = {u.user_id: _user_to_domain(u) for u in result.scalars().all()}

        return TicketContext(
            ticket_id=str(ticket.ticket_id),
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            priority=ticket.priority,
            status=ticket.status,
            department_id=_str_or_none(ticket.department_id),
            assigned_engineer=users.get(ticket.assigned_to_engineer_id),
            coordinator=users.get(ticket.created_by_coordinator_id),
            created_for=users.get(ticket.created_by_user_id),
        )

    async def find_active_users(
        self,
        role: Optional[str] = None,
        designation: Optional[str] = None
    ) -> List[DirectoryUser]:
        """Active users by role and/or designation."""
        conditions = [UserModel.is_active.is_(True)]
        if role is not None:
            conditions.append(UserModel.role == role)
        if designation is not None:
            conditions.append(UserModel.designation == designation)

        stmt = (
            select(UserModel)
            .where(and_(*conditions))
            .order_by(UserModel.last_name.asc(), UserModel.first_name.asc())
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_user_to_domain(u) for u in result.scalars().all()]


class SQLAlchemyEscalationLog(IEscalationLog):
    """
    SQLAlchemy implementation of the escalation notification log.

    Recipients are stored as a JSON array and converted to Recipient value
    objects on the way out.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def history(self, tracking_id: str, escalation_rule_id: str) -> EscalationHistory:
        """Count and highest repeat_count for a pair, from committed state."""
        tracking_uuid = _as_uuid(tracking_id)
        rule_uuid = _as_uuid(escalation_rule_id)
        if tracking_uuid is None or rule_uuid is None:
            raise EscalationHistoryUnavailableException(
                tracking_id, escalation_rule_id, "invalid identifier"
            )

        stmt = (
            select(
                func.count(EscalationNotificationModel.notification_id),
                func.max(EscalationNotificationModel.repeat_count),
            )
            .where(
                and_(
                    EscalationNotificationModel.tracking_id == tracking_uuid,
                    EscalationNotificationModel.escalation_rule_id == rule_uuid,
                )
            )
        )

        try:
            async with self._session_factory() as session:
                count, max_count = (await session.execute(stmt)).one()
        except SQLAlchemyError as e:
            raise EscalationHistoryUnavailableException(
                tracking_id, escalation_rule_id, str(e)
            ) from e

        return EscalationHistory(
            existing_count=count or 0,
            max_repeat_count_so_far=max_count or 0
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
        """Insert a pending notification and commit it."""
        tracking_uuid = _as_uuid(tracking_id)
        rule_uuid = _as_uuid(escalation_rule_id)
        if tracking_uuid is None or rule_uuid is None:
            raise RepositoryException(
                "Invalid tracking or escalation rule id",
                {"tracking_id": tracking_id, "escalation_rule_id": escalation_rule_id}
            )

        model = EscalationNotificationModel(
            notification_id=uuid4(),
            tracking_id=tracking_uuid,
            escalation_rule_id=rule_uuid,
            escalation_level=escalation_level,
            trigger_type=TriggerType(trigger_type).value,
            recipients=[r.to_dict() for r in recipients],
            repeat_count=repeat_count,
            trigger_reason=trigger_reason or None,
            delivery_status=DeliveryStatus.PENDING.value,
            created_at=_utcnow(),
        )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(model)
            except IntegrityError as e:
                if await self._exists(session, tracking_uuid, rule_uuid, repeat_count):
                    raise DuplicateEscalationException(
                        tracking_id, escalation_rule_id, repeat_count
                    ) from e
                raise RepositoryException(
                    f"Failed to record escalation: {e.orig}",
                    {"tracking_id": tracking_id, "escalation_rule_id": escalation_rule_id}
                ) from e

        return _notification_to_domain(model)

    @staticmethod
    async def _exists(
        session: AsyncSession,
        tracking_uuid: UUID,
        rule_uuid: UUID,
        repeat_count: int
    ) -> bool:
        stmt = select(EscalationNotificationModel.notification_id).where(
            and_(
                EscalationNotificationModel.tracking_id == tracking_uuid,
                EscalationNotificationModel.escalation_rule_id == rule_uuid,
                EscalationNotificationModel.repeat_count == repeat_count,
            )
        )
        return (await session.execute(stmt)).first() is not None

    async def _load_for_update(
        self,
        session: AsyncSession,
        notification_id: str
    ) -> EscalationNotificationModel:
        notification_uuid = _as_uuid(notification_id)
        model = None
        if notification_uuid is not None:
            model = await session.get(EscalationNotificationModel, notification_uuid)
        if model is None:
            raise ResourceNotFoundException("EscalationNotification", notification_id)
        return model

    async def update_status(
        self,
        notification_id: str,
        status: DeliveryStatus,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> EscalationNotification:
        """Apply a delivery outcome through the domain entity and persist it."""
        async with self._session_factory() as session:
            async with session.begin():
                model = await self._load_for_update(session, notification_id)
                notification = _notification_to_domain(model)
                notification.apply_status(status, sent_at, error_message)

                model.delivery_status = notification.delivery_status.value
                model.notification_sent_at = notification.sent_at
                model.error_message = notification.error_message

        return notification

    async def acknowledge(
        self,
        notification_id: str,
        user_id: str,
        acknowledged_at: Optional[datetime] = None
    ) -> EscalationNotification:
        """Record the first acknowledgement of a notification."""
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            raise ResourceNotFoundException("User", user_id)

        async with self._session_factory() as session:
            async with session.begin():
                model = await self._load_for_update(session, notification_id)
                notification = _notification_to_domain(model)
                notification.acknowledge(user_id, acknowledged_at)

                model.acknowledged_at = notification.acknowledged_at
                model.acknowledged_by = _as_uuid(notification.acknowledged_by)

        return notification

    async def pending_for_delivery(self) -> List[PendingDelivery]:
        """Pending notifications joined with ticket, SLA rule and escalation rule."""
        stmt = (
            select(
                EscalationNotificationModel,
                SlaTrackingModel,
                TicketModel,
                SlaRuleModel,
                EscalationRuleModel,
            )
            .join(SlaTrackingModel, SlaTrackingModel.tracking_id == EscalationNotificationModel.tracking_id)
            .join(TicketModel, TicketModel.ticket_id == SlaTrackingModel.ticket_id)
            .join(SlaRuleModel, SlaRuleModel.rule_id == SlaTrackingModel.sla_rule_id)
            .join(
                EscalationRuleModel,
                EscalationRuleModel.escalation_rule_id == EscalationNotificationModel.escalation_rule_id
            )
            .where(EscalationNotificationModel.delivery_status == DeliveryStatus.PENDING.value)
            .order_by(EscalationNotificationModel.created_at.asc())
        )

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            PendingDelivery(
                notification=_notification_to_domain(notification, tracking.ticket_id),
                ticket_id=str(ticket.ticket_id),
                ticket_number=ticket.ticket_number,
                ticket_title=ticket.title,
                priority=ticket.priority,
                ticket_status=ticket.status,
                sla_rule_name=sla_rule.rule_name,
                business_elapsed_minutes=tracking.business_elapsed_minutes,
                max_tat_minutes=sla_rule.max_tat_minutes,
                notification_template=escalation_rule.notification_template,
                include_ticket_details=escalation_rule.include_ticket_details,
            )
            for notification, tracking, ticket, sla_rule, escalation_rule in rows
        ]

    async def history_for_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        """Every notification of a ticket, newest first."""
        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return []

        stmt = (
            select(EscalationNotificationModel, SlaTrackingModel.ticket_id)
            .join(SlaTrackingModel, SlaTrackingModel.tracking_id == EscalationNotificationModel.tracking_id)
            .where(SlaTrackingModel.ticket_id == ticket_uuid)
            .order_by(
                EscalationNotificationModel.created_at.desc(),
                EscalationNotificationModel.repeat_count.desc(),
            )
        )

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [_notification_to_domain(model, owner) for model, owner in rows]

    async def stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> NotificationStats:
        """Totals by delivery status and trigger type within an optional window."""
        stmt = select(
            EscalationNotificationModel.delivery_status,
            EscalationNotificationModel.trigger_type,
            func.count(EscalationNotificationModel.notification_id),
        )
        if start is not None:
            stmt = stmt.where(EscalationNotificationModel.created_at >= start)
        if end is not None:
            stmt = stmt.where(EscalationNotificationModel.created_at <= end)
        stmt = stmt.group_by(
            EscalationNotificationModel.delivery_status,
            EscalationNotificationModel.trigger_type,
        )

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        by_status = {s.value: 0 for s in DeliveryStatus}
        by_trigger = {t.value: 0 for t in TriggerType}
        total = 0
        for status, trigger_type, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_trigger[trigger_type] = by_trigger.get(trigger_type, 0) + count
            total += count

        return NotificationStats(total=total, by_status=by_status, by_trigger_type=by_trigger)
