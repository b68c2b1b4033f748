"""
Recipient Resolution
====================

Turns an escalation rule's recipient settings into an ordered,
de-duplicated, size-bounded list of recipients.

Each recipient type has its own strategy class registered by type; adding a
recipient type means adding a strategy, not another branch. Which users are
picked from a pool is delegated to a RecipientSelector so tests can seed or
fix the order.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from servicedesk.config import RecipientType, SelectionStrategyName, UserRole
from servicedesk.core import ConfigurationException
from servicedesk.shared.infrastructure.logging import get_logger
from servicedesk.sla.domain import DirectoryUser, EscalationRule, Recipient, TicketContext

logger = get_logger(__name__)


# ========== Directory Interface (Dependency Inversion) ==========

class IUserDirectory(ABC):
    """Interface for ticket-to-people and role/designation lookups."""

    @abstractmethod
    async def get_ticket_context(self, ticket_id: str) -> Optional[TicketContext]:
        """Ticket with its engineer, coordinator, creator and department."""

    @abstractmethod
    async def find_active_users(
        self,
        role: Optional[str] = None,
        designation: Optional[str] = None
    ) -> List[DirectoryUser]:
        """Active users matching a role and/or designation."""


# ========== Selection strategies ==========

class RecipientSelector(ABC):
    """Orders a pool of eligible users; the first ones get picked."""

    @abstractmethod
    def order(self, candidates: Sequence[DirectoryUser], pool_key: str) -> List[DirectoryUser]:
        """Return the candidates in pick order."""


class RandomSelector(RecipientSelector):
    """Uniformly shuffled order; pass a seed for reproducible picks."""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)

    def order(self, candidates: Sequence[DirectoryUser], pool_key: str) -> List[DirectoryUser]:
        shuffled = list(candidates)
        self._random.shuffle(shuffled)
        return shuffled


class RoundRobinSelector(RecipientSelector):
    """
    Deterministic rotation.

    Candidates are sorted by email, then each call for the same pool starts
    one position further along so load spreads across the pool.
    """

    def __init__(self):
        self._offsets: Dict[str, int] = {}

    def order(self, candidates: Sequence[DirectoryUser], pool_key: str) -> List[DirectoryUser]:
        ordered = sorted(candidates, key=lambda u: ((u.email or "").lower(), u.user_id))
        if not ordered:
            return []
        offset = self._offsets.get(pool_key, 0) % len(ordered)
        self._offsets[pool_key] = offset + 1
        return ordered[offset:] + ordered[:offset]


def build_selector(name: SelectionStrategyName | str, seed: Optional[int] = None) -> RecipientSelector:
    """Create a selector from its configured name."""
    try:
        name = SelectionStrategyName(name)
    except ValueError as e:
        raise ConfigurationException(f"Unknown recipient selection strategy: {name}") from e

    if name == SelectionStrategyName.ROUND_ROBIN:
        return RoundRobinSelector()
    return RandomSelector(seed)


# ========== Collector ==========

class RecipientCollector:
    """
    Accumulates recipients in pick order.

    Skips users without an email, drops duplicate emails (case-insensitive)
    and refuses additions once the limit is reached. A limit of None means
    unbounded.
    """

    def __init__(self, limit: Optional[int]):
        self._limit = limit
        self._recipients: List[Recipient] = []
        self._seen: set[str] = set()

    @property
    def is_full(self) -> bool:
        return self._limit is not None and len(self._recipients) >= self._limit

    @property
    def recipients(self) -> List[Recipient]:
        return list(self._recipients)

    def add(self, user: DirectoryUser, recipient_type: str) -> bool:
        """Add a user; returns True if it was added."""
        if self.is_full or not user.email:
            return False
        key = user.email.strip().lower()
        if key in self._seen:
            return False
        self._seen.add(key)
        self._recipients.append(Recipient(name=user.name, email=user.email.strip(), type=recipient_type))
        return True

    def add_all(self, users: Iterable[DirectoryUser], recipient_type: str) -> None:
        for user in users:
            if self.is_full:
                return
            self.add(user, recipient_type)


# ========== Recipient strategies ==========

class RecipientStrategy(ABC):
    """Resolves recipients for one recipient type."""

    recipient_type: RecipientType

    @abstractmethod
    async def collect(
        self,
        rule: EscalationRule,
        ticket: Optional[TicketContext],
        directory: IUserDirectory,
        selector: RecipientSelector,
        collector: RecipientCollector
    ) -> None:
        """Add recipients to the collector; never raises for an empty pool."""

    @staticmethod
    def _active(users: Iterable[DirectoryUser]) -> List[DirectoryUser]:
        return [u for u in users if u.is_active]

    @staticmethod
    def _split_by_department(
        users: Sequence[DirectoryUser],
        department_id: Optional[str]
    ) -> tuple[List[DirectoryUser], List[DirectoryUser]]:
        """Users of the given department first, everyone else second."""
        if department_id is None:
            return [], list(users)
        same = [u for u in users if u.department_id == department_id]
        other = [u for u in users if u.department_id != department_id]
        return same, other


class AssignedEngineerStrategy(RecipientStrategy):
    """The ticket's currently assigned engineer, if any."""

    recipient_type = RecipientType.ASSIGNED_ENGINEER

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        if ticket is None or ticket.assigned_engineer is None:
            return
        collector.add(ticket.assigned_engineer, UserRole.ENGINEER.value)


class CoordinatorStrategy(RecipientStrategy):
    """The ticket's own coordinator, padded with other active coordinators."""

    recipient_type = RecipientType.COORDINATOR

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        if ticket is not None and ticket.coordinator is not None and ticket.coordinator.is_active:
            collector.add(ticket.coordinator, UserRole.COORDINATOR.value)
        if collector.is_full:
            return

        pool = self._active(await directory.find_active_users(role=UserRole.COORDINATOR.value))
        collector.add_all(selector.order(pool, UserRole.COORDINATOR.value), UserRole.COORDINATOR.value)


class RoleStrategy(RecipientStrategy):
    """Active users holding a fixed role."""

    def __init__(self, recipient_type: RecipientType, role: UserRole):
        self.recipient_type = recipient_type
        self._role = role

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        pool = self._active(await directory.find_active_users(role=self._role.value))
        collector.add_all(selector.order(pool, self._role.value), self._role.value)


class DepartmentHeadStrategy(RecipientStrategy):
    """Active department heads, the ticket's own department first."""

    recipient_type = RecipientType.DEPARTMENT_HEAD

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        role = UserRole.DEPARTMENT_HEAD.value
        pool = self._active(await directory.find_active_users(role=role))
        department_id = ticket.department_id if ticket else None
        same, other = self._split_by_department(pool, department_id)

        collector.add_all(selector.order(same, f"{role}:{department_id}"), role)
        collector.add_all(selector.order(other, role), role)


class CustomRoleStrategy(RecipientStrategy):
    """Active users whose role equals the rule's recipient_role."""

    recipient_type = RecipientType.CUSTOM_ROLE

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        role = rule.recipient_role
        if not role:
            logger.warning(
                "custom_role rule has no recipient_role",
                extra={"escalation_rule_id": rule.escalation_rule_id}
            )
            return
        pool = self._active(await directory.find_active_users(role=role))
        collector.add_all(selector.order(pool, f"role:{role}"), role)


class CustomDesignationStrategy(RecipientStrategy):
    """Active users holding a designation, the ticket's department first."""

    recipient_type = RecipientType.CUSTOM_DESIGNATION

    async def collect(self, rule, ticket, directory, selector, collector) -> None:
        designation = rule.recipient_designation or rule.recipient_role
        if not designation:
            logger.warning(
                "custom_designation rule has no designation",
                extra={"escalation_rule_id": rule.escalation_rule_id}
            )
            return

        pool = self._active(await directory.find_active_users(designation=designation))
        department_id = ticket.department_id if ticket else None
        same, other = self._split_by_department(pool, department_id)

        for group, key in ((same, f"designation:{designation}:{department_id}"),
                           (other, f"designation:{designation}")):
            for user in selector.order(group, key):
                if collector.is_full:
                    return
                collector.add(user, user.designation or designation)


def default_strategies() -> Dict[RecipientType, RecipientStrategy]:
    """One strategy per recipient type."""
    strategies: List[RecipientStrategy] = [
        AssignedEngineerStrategy(),
        CoordinatorStrategy(),
        RoleStrategy(RecipientType.IT_HEAD, UserRole.IT_HEAD),
        RoleStrategy(RecipientType.ADMIN, UserRole.ADMIN),
        RoleStrategy(RecipientType.SUPERADMIN, UserRole.SUPERADMIN),
        DepartmentHeadStrategy(),
        CustomRoleStrategy(),
        CustomDesignationStrategy(),
    ]
    return {s.recipient_type: s for s in strategies}


# ========== Directory timeouts ==========

class TimeoutUserDirectory(IUserDirectory):
    """Wraps a directory so every lookup carries its own timeout."""

    def __init__(self, directory: IUserDirectory, timeout_seconds: float):
        self._directory = directory
        self._timeout = timeout_seconds

    async def get_ticket_context(self, ticket_id: str) -> Optional[TicketContext]:
        return await asyncio.wait_for(self._directory.get_ticket_context(ticket_id), self._timeout)

    async def find_active_users(
        self,
        role: Optional[str] = None,
        designation: Optional[str] = None
    ) -> List[DirectoryUser]:
        return await asyncio.wait_for(
            self._directory.find_active_users(role=role, designation=designation),
            self._timeout
        )


# ========== Resolver ==========

class RecipientResolver:
    """
    Resolves escalation recipients using the registered strategies.

    Failures degrade gracefully: whatever was collected before a lookup
    failed is returned, possibly empty. A missed escalation is worse than
    one with partial recipients.
    """

    def __init__(
        self,
        directory: IUserDirectory,
        strategies: Optional[Mapping[RecipientType, RecipientStrategy]] = None
    ):
        self._directory = directory
        self._strategies: Dict[RecipientType, RecipientStrategy] = dict(
            strategies if strategies is not None else default_strategies()
        )

    def register(self, strategy: RecipientStrategy) -> None:
        """Add or replace the strategy for a recipient type."""
        self._strategies[strategy.recipient_type] = strategy

    @staticmethod
    def recipient_limit(rule: EscalationRule, default_limit: int) -> Optional[int]:
        """
        Effective cap for a rule.

        Unset or zero falls back to the default; negative means all eligible.
        """
        if rule.number_of_recipients is None or rule.number_of_recipients == 0:
            return default_limit
        if rule.number_of_recipients < 0:
            return None
        return rule.number_of_recipients

    async def resolve(
        self,
        rule: EscalationRule,
        ticket_id: str,
        selector: RecipientSelector,
        default_limit: int = 3,
        timeout_seconds: Optional[float] = None
    ) -> List[Recipient]:
        """Resolve recipients for `rule` on `ticket_id`; never raises."""
        collector = RecipientCollector(self.recipient_limit(rule, default_limit))
        strategy = self._strategies.get(rule.recipient_type)
        if strategy is None:
            logger.warning(
                "No recipient strategy registered",
                extra={
                    "recipient_type": rule.recipient_type.value,
                    "escalation_rule_id": rule.escalation_rule_id,
                }
            )
            return []

        directory = self._directory
        if timeout_seconds is not None:
            directory = TimeoutUserDirectory(directory, timeout_seconds)

        ticket: Optional[TicketContext] = None
        try:
            ticket = await directory.get_ticket_context(ticket_id)
        except Exception as e:
            logger.warning(
                "Ticket context unavailable, resolving recipients without it",
                extra={"ticket_id": ticket_id, "error": str(e) or type(e).__name__}
            )

        try:
            await strategy.collect(rule, ticket, directory, selector, collector)
        except Exception as e:
            logger.warning(
                "Recipient resolution failed, escalating with partial recipients",
                extra={
                    "ticket_id": ticket_id,
                    "escalation_rule_id": rule.escalation_rule_id,
                    "recipient_type": rule.recipient_type.value,
                    "resolved_count": len(collector.recipients),
                    "error": str(e) or type(e).__name__,
                }
            )

        return collector.recipients
