"""
SLA Escalation Application Services
====================================

The escalation orchestrator: drives per-ticket rule evaluation and the
fleet-wide sweep, and exposes the escalation log to the delivery worker
and reporting.

Following SOLID principles:
- Single Responsibility: evaluation, recipient resolution and persistence
  live in their own collaborators
- Dependency Inversion: depends on repository interfaces, not SQLAlchemy
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Dict, List, Optional, Tuple, TypeVar
from uuid import uuid4

from pydantic import ValidationError

from servicedesk.config import (
    DeliveryStatus,
    RecurringPolicyName,
    SelectionStrategyName,
    TriggerType,
)
from servicedesk.core import (
    DuplicateEscalationException,
    EscalationHistoryUnavailableException,
    ValidationException,
)
from servicedesk.shared.infrastructure.logging import get_context_logger, get_logger, log_latency
from servicedesk.sla.application.dto import (
    EscalationNotificationResponse,
    NotificationStatusUpdate,
    TicketSweepResult,
)
from servicedesk.sla.application.recipients import (
    RecipientResolver,
    RecipientSelector,
    build_selector,
)
from servicedesk.sla.domain import (
    EscalationEngineConfig,
    EscalationHistory,
    EscalationNotification,
    EscalationRule,
    NotificationStats,
    PendingDelivery,
    Recipient,
    SlaTracking,
    TriggerEvaluator,
    get_recurring_policy,
)

logger = get_logger(__name__)

T = TypeVar("T")


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITrackingStore(ABC):
    """Interface for SLA tracking access."""

    @abstractmethod
    async def get_tracking(self, ticket_id: str) -> Optional[SlaTracking]:
        """Get the tracking record of a ticket, None if it has none."""

    @abstractmethod
    async def refresh_elapsed(self, ticket_id: str) -> Optional[SlaTracking]:
        """
        Recompute elapsed business minutes for an open, unpaused ticket.

        No-op (returns the unchanged record or None) for missing, resolved
        or paused tracking.
        """

    @abstractmethod
    async def list_open_unresolved_unpaused(self) -> List[str]:
        """Ticket ids whose tracking is open, unresolved and not paused."""


class IElapsedTimeOracle(ABC):
    """Interface for business-time arithmetic (calendars, holidays, pauses)."""

    @abstractmethod
    async def elapsed_minutes(self, tracking: SlaTracking, until: datetime) -> float:
        """Business minutes elapsed for `tracking` up to `until`."""


class IEscalationRuleRepository(ABC):
    """Interface for escalation rule access."""

    @abstractmethod
    async def active_escalation_rules(self, sla_rule_id: str) -> List[EscalationRule]:
        """Active rules of an SLA rule, ordered by ascending escalation level."""


class IEscalationConfigProvider(ABC):
    """Interface for escalation engine configuration access."""

    @abstractmethod
    def get_config(self) -> EscalationEngineConfig:
        """Get current engine configuration."""


class IEscalationLog(ABC):
    """
    Interface for the escalation notification log.

    The single source of truth for whether a rule already fired for a
    tracking record, how many times, and with which delivery outcome.
    """

    @abstractmethod
    async def history(self, tracking_id: str, escalation_rule_id: str) -> EscalationHistory:
        """Count and highest repeat_count for a (tracking, rule) pair."""

    @abstractmethod
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
        """
        Append a pending notification.

        Raises:
            DuplicateEscalationException: (tracking, rule, repeat_count) exists
        """

    @abstractmethod
    async def update_status(
        self,
        notification_id: str,
        status: DeliveryStatus,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> EscalationNotification:
        """Record a delivery outcome."""

    @abstractmethod
    async def acknowledge(
        self,
        notification_id: str,
        user_id: str,
        acknowledged_at: Optional[datetime] = None
    ) -> EscalationNotification:
        """Mark a notification acknowledged by a user."""

    @abstractmethod
    async def pending_for_delivery(self) -> List[PendingDelivery]:
        """Pending notifications with ticket context, oldest first."""

    @abstractmethod
    async def history_for_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        """All notifications of a ticket, newest first."""

    @abstractmethod
    async def stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> NotificationStats:
        """Totals by delivery status and trigger type in a creation window."""


# ========== Application Services ==========

class TicketLockRegistry:
    """
    One asyncio.Lock per ticket id, created on demand and dropped when the
    last holder or waiter releases it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, ticket_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        self._users[ticket_id] = self._users.get(ticket_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[ticket_id] -= 1
            if self._users[ticket_id] == 0:
                del self._users[ticket_id]
                del self._locks[ticket_id]

    def is_locked(self, ticket_id: str) -> bool:
        lock = self._locks.get(ticket_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class EscalationService:
    """
    Escalation orchestrator.

    Construct one long-lived instance at startup and inject it into the
    scheduler job and any caller that needs escalation data.
    """

    def __init__(
        self,
        tracking_store: ITrackingStore,
        rule_repository: IEscalationRuleRepository,
        escalation_log: IEscalationLog,
        recipient_resolver: RecipientResolver,
        config_provider: IEscalationConfigProvider
    ):
        self._tracking_store = tracking_store
        self._rule_repo = rule_repository
        self._log = escalation_log
        self._resolver = recipient_resolver
        self._config_provider = config_provider

        self._locks = TicketLockRegistry()
        self._cancel_event = asyncio.Event()
        self._evaluators: Dict[RecurringPolicyName, TriggerEvaluator] = {}
        self._selectors: Dict[Tuple[SelectionStrategyName, Optional[int]], RecipientSelector] = {}

    # ========== Configuration-derived collaborators ==========

    def _config(self) -> EscalationEngineConfig:
        return self._config_provider.get_config()

    def _evaluator_for(self, config: EscalationEngineConfig) -> TriggerEvaluator:
        name = config.recurring_breach_policy
        if name not in self._evaluators:
            self._evaluators[name] = TriggerEvaluator(get_recurring_policy(name))
        return self._evaluators[name]

    def _selector_for(self, config: EscalationEngineConfig) -> RecipientSelector:
        # Cached so round-robin rotation survives across tickets and sweeps
        key = (config.recipient_selection, config.selection_seed)
        if key not in self._selectors:
            self._selectors[key] = build_selector(*key)
        return self._selectors[key]

    @staticmethod
    async def _with_timeout(awaitable: Awaitable[T], timeout: float) -> T:
        return await asyncio.wait_for(awaitable, timeout)

    # ========== Cancellation ==========

    def cancel(self) -> None:
        """Stop starting new ticket evaluations; in-flight ones finish."""
        self._cancel_event.set()

    def resume(self) -> None:
        """Allow sweeps to start tickets again after cancel()."""
        self._cancel_event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ========== Per-ticket processing ==========

    async def process_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        """
        Evaluate every active escalation rule of a ticket and record the
        ones that fire.

        Concurrent calls for the same ticket are serialized.

        Returns:
            Notifications created by this call (empty for missing, resolved
            or paused tracking)

        Raises:
            EscalationHistoryUnavailableException: history could not be read
        """
        config = self._config()
        async with self._locks.hold(ticket_id):
            return await self._process_ticket_locked(ticket_id, config)

    async def _process_ticket_locked(
        self,
        ticket_id: str,
        config: EscalationEngineConfig
    ) -> List[EscalationNotification]:
        timeout = config.step_timeout_seconds

        await self._with_timeout(self._tracking_store.refresh_elapsed(ticket_id), timeout)
        tracking = await self._with_timeout(self._tracking_store.get_tracking(ticket_id), timeout)

        if tracking is None:
            logger.debug("No SLA tracking for ticket", extra={"ticket_id": ticket_id})
            return []
        if not tracking.is_evaluable:
            logger.debug(
                "SLA tracking resolved or paused, skipping",
                extra={"ticket_id": ticket_id, "is_paused": tracking.is_paused}
            )
            return []

        rules = await self._with_timeout(
            self._rule_repo.active_escalation_rules(tracking.sla_rule_id), timeout
        )
        evaluator = self._evaluator_for(config)

        fired: List[EscalationNotification] = []
        for rule in sorted(rules, key=lambda r: r.escalation_level):
            if not rule.is_active:
                continue
            notification = await self._evaluate_rule(ticket_id, tracking, rule, evaluator, config)
            if notification is not None:
                fired.append(notification)

        return fired

    async def _evaluate_rule(
        self,
        ticket_id: str,
        tracking: SlaTracking,
        rule: EscalationRule,
        evaluator: TriggerEvaluator,
        config: EscalationEngineConfig
    ) -> Optional[EscalationNotification]:
        timeout = config.step_timeout_seconds
        history = await self._read_history(tracking, rule, timeout)

        decision = evaluator.evaluate(rule, tracking, history)
        if not decision.fire:
            logger.debug(
                "Escalation not triggered",
                extra={
                    "ticket_id": ticket_id,
                    "escalation_rule_id": rule.escalation_rule_id,
                    "reason": decision.reason,
                }
            )
            return None

        recipients = await self._resolver.resolve(
            rule,
            ticket_id,
            self._selector_for(config),
            default_limit=config.default_number_of_recipients,
            timeout_seconds=timeout,
        )
        if not recipients:
            logger.warning(
                "Escalation fired without recipients",
                extra={
                    "ticket_id": ticket_id,
                    "escalation_rule_id": rule.escalation_rule_id,
                    "recipient_type": rule.recipient_type.value,
                }
            )

        try:
            notification = await self._with_timeout(
                self._log.record(
                    tracking_id=tracking.tracking_id,
                    escalation_rule_id=rule.escalation_rule_id,
                    escalation_level=rule.escalation_level,
                    trigger_type=rule.trigger_type,
                    recipients=recipients,
                    repeat_count=decision.repeat_count,
                    trigger_reason=decision.reason,
                ),
                timeout
            )
        except DuplicateEscalationException as e:
            logger.info(
                "Escalation already recorded by a concurrent evaluation",
                extra={"ticket_id": ticket_id, **e.details}
            )
            return None

        notification.ticket_id = ticket_id
        logger.info(
            "Escalation triggered",
            extra={
                "ticket_id": ticket_id,
                "notification_id": notification.id,
                "escalation_level": rule.escalation_level,
                "trigger_type": rule.trigger_type.value,
                "repeat_count": notification.repeat_count,
                "recipient_count": len(recipients),
                "reason": decision.reason,
            }
        )
        return notification

    async def _read_history(
        self,
        tracking: SlaTracking,
        rule: EscalationRule,
        timeout: float
    ) -> EscalationHistory:
        """Never assume "fire" on an unreadable history."""
        try:
            return await self._with_timeout(
                self._log.history(tracking.tracking_id, rule.escalation_rule_id), timeout
            )
        except EscalationHistoryUnavailableException:
            raise
        except Exception as e:
            raise EscalationHistoryUnavailableException(
                tracking.tracking_id,
                rule.escalation_rule_id,
                str(e) or type(e).__name__
            ) from e

    # ========== Fleet sweep ==========

    async def process_all_pending(self) -> List[TicketSweepResult]:
        """
        Evaluate every open, unresolved, unpaused ticket.

        Tickets run concurrently up to max_concurrent_tickets. A failing
        ticket is reported in its result and never aborts the sweep. After
        cancel(), tickets that have not started are skipped.

        Returns:
            One result per started ticket, with fired notifications or an error
        """
        config = self._config()
        sweep_logger = get_context_logger(__name__, uuid4().hex)

        ticket_ids = await self._with_timeout(
            self._tracking_store.list_open_unresolved_unpaused(),
            config.step_timeout_seconds
        )
        ticket_ids = list(dict.fromkeys(ticket_ids))
        semaphore = asyncio.Semaphore(config.max_concurrent_tickets)

        async def run_one(ticket_id: str) -> Optional[TicketSweepResult]:
            async with semaphore:
                if self._cancel_event.is_set():
                    return None
                try:
                    fired = await self.process_ticket(ticket_id)
                except Exception as e:
                    sweep_logger.error(
                        "Escalation processing failed for ticket",
                        extra={"ticket_id": ticket_id, "error": str(e) or type(e).__name__}
                    )
                    return TicketSweepResult(ticket_id=ticket_id, error=str(e) or type(e).__name__)
                return TicketSweepResult(
                    ticket_id=ticket_id,
                    fired=[EscalationNotificationResponse.from_domain(n) for n in fired]
                )

        with log_latency(sweep_logger, "escalation_sweep", tickets=len(ticket_ids)):
            outcomes = await asyncio.gather(*(run_one(t) for t in ticket_ids))

        results = [r for r in outcomes if r is not None]
        sweep_logger.info(
            "Escalation sweep finished",
            extra={
                "tickets_listed": len(ticket_ids),
                "tickets_processed": len(results),
                "tickets_failed": sum(1 for r in results if not r.ok),
                "tickets_skipped": len(ticket_ids) - len(results),
                "escalations_triggered": sum(len(r.fired) for r in results),
            }
        )
        return results

    # ========== Escalation log access ==========

    async def history(self, ticket_id: str) -> List[EscalationNotification]:
        """Escalation history of a ticket, newest first."""
        return await self._log.history_for_ticket(ticket_id)

    async def pending_for_delivery(self) -> List[PendingDelivery]:
        """Pending notifications with the ticket context templates need."""
        return await self._log.pending_for_delivery()

    async def update_status(
        self,
        notification_id: str,
        status: DeliveryStatus | str,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> EscalationNotification:
        """
        Record a delivery outcome for a notification.

        Raises:
            ValidationException: status is not sent/failed or the payload is invalid
            ResourceNotFoundException: unknown notification
            DomainException: notification already sent
        """
        status_value = status.value if isinstance(status, DeliveryStatus) else status
        try:
            update = NotificationStatusUpdate(
                status=status_value,
                sent_at=sent_at,
                error_message=error_message
            )
        except ValidationError as e:
            raise ValidationException(
                "Invalid notification status update",
                {"notification_id": notification_id, "errors": e.errors()}
            ) from e

        notification = await self._log.update_status(
            notification_id,
            DeliveryStatus(update.status),
            sent_at=update.sent_at,
            error_message=update.error_message
        )
        logger.info(
            "Escalation delivery status updated",
            extra={"notification_id": notification_id, "status": update.status}
        )
        return notification

    async def acknowledge(
        self,
        notification_id: str,
        user_id: str,
        acknowledged_at: Optional[datetime] = None
    ) -> EscalationNotification:
        """Mark a notification acknowledged."""
        return await self._log.acknowledge(notification_id, user_id, acknowledged_at)

    async def notification_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> NotificationStats:
        """Escalation totals by delivery status and trigger type."""
        return await self._log.stats(start, end)
