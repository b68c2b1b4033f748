"""
Tests for recipient resolution

Per-type strategies, caps, de-duplication, selection strategies and
graceful degradation on directory failures.
"""

import asyncio

import pytest

from conftest import InMemoryUserDirectory, make_rule, make_user
from servicedesk.config import RecipientType
from servicedesk.core import ConfigurationException
from servicedesk.sla.application import (
    RandomSelector,
    RecipientResolver,
    RecipientStrategy,
    RoundRobinSelector,
    build_selector,
)
from servicedesk.sla.domain import TicketContext


@pytest.fixture
def selector():
    return RandomSelector(seed=11)


@pytest.fixture
def admins_directory():
    directory = InMemoryUserDirectory()
    directory.users = [make_user(f"admin{i}", "admin") for i in range(5)]
    return directory


def emails(recipients):
    return [r.email for r in recipients]


class TestRecipientLimit:
    """Effective cap per rule"""

    @pytest.mark.parametrize("configured,expected", [
        (None, 3),
        (0, 3),
        (1, 1),
        (7, 7),
        (-1, None),
    ])
    def test_limit(self, configured, expected):
        rule = make_rule(number_of_recipients=configured)
        assert RecipientResolver.recipient_limit(rule, default_limit=3) == expected


class TestAssignedEngineer:
    """assigned_engineer yields 0 or 1 recipients"""

    @pytest.mark.asyncio
    async def test_assigned_engineer(self, selector):
        directory = InMemoryUserDirectory()
        engineer = make_user("eng1", "engineer")
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", assigned_engineer=engineer)
        rule = make_rule(recipient_type=RecipientType.ASSIGNED_ENGINEER, number_of_recipients=5)

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert len(recipients) == 1
        assert recipients[0].email == "eng1@example.com"
        assert recipients[0].type == "engineer"
        assert recipients[0].name == "User eng1"

    @pytest.mark.asyncio
    async def test_unassigned_ticket(self, selector):
        directory = InMemoryUserDirectory()
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1")
        rule = make_rule(recipient_type="assigned_engineer")

        assert await RecipientResolver(directory).resolve(rule, "T-1", selector) == []

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, selector):
        rule = make_rule(recipient_type="assigned_engineer")
        assert await RecipientResolver(InMemoryUserDirectory()).resolve(rule, "nope", selector) == []


class TestCoordinator:
    """Ticket coordinator first, padded from the pool"""

    @pytest.mark.asyncio
    async def test_ticket_coordinator_first_without_duplicates(self, selector):
        directory = InMemoryUserDirectory()
        own = make_user("coord-own", "coordinator")
        directory.users = [own, make_user("coord-a", "coordinator"), make_user("coord-b", "coordinator")]
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", coordinator=own)
        rule = make_rule(recipient_type="coordinator", number_of_recipients=3)

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert recipients[0].email == "coord-own@example.com"
        assert sorted(emails(recipients)) == [
            "coord-a@example.com", "coord-b@example.com", "coord-own@example.com"
        ]
        assert all(r.type == "coordinator" for r in recipients)

    @pytest.mark.asyncio
    async def test_inactive_ticket_coordinator_skipped(self, selector):
        directory = InMemoryUserDirectory()
        own = make_user("coord-own", "coordinator", is_active=False)
        directory.users = [make_user("coord-a", "coordinator")]
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", coordinator=own)
        rule = make_rule(recipient_type="coordinator")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["coord-a@example.com"]


class TestRoleRecipients:
    """it_head / admin / superadmin pools"""

    @pytest.mark.asyncio
    async def test_cap_applies(self, admins_directory, selector):
        rule = make_rule(recipient_type="admin", number_of_recipients=2)
        recipients = await RecipientResolver(admins_directory).resolve(rule, "T-1", selector)
        assert len(recipients) == 2

    @pytest.mark.asyncio
    async def test_default_cap(self, admins_directory, selector):
        rule = make_rule(recipient_type="admin")
        recipients = await RecipientResolver(admins_directory).resolve(rule, "T-1", selector)
        assert len(recipients) == 3

    @pytest.mark.asyncio
    async def test_configured_default_cap(self, admins_directory, selector):
        rule = make_rule(recipient_type="admin", number_of_recipients=0)
        recipients = await RecipientResolver(admins_directory).resolve(
            rule, "T-1", selector, default_limit=4
        )
        assert len(recipients) == 4

    @pytest.mark.asyncio
    async def test_negative_cap_means_all(self, admins_directory, selector):
        rule = make_rule(recipient_type="admin", number_of_recipients=-1)
        recipients = await RecipientResolver(admins_directory).resolve(rule, "T-1", selector)
        assert len(recipients) == 5

    @pytest.mark.asyncio
    async def test_only_matching_role(self, directory, selector):
        rule = make_rule(recipient_type="it_head")
        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)
        assert emails(recipients) == ["head1@example.com"]
        assert recipients[0].type == "it_head"

    @pytest.mark.asyncio
    async def test_empty_pool(self, directory, selector):
        rule = make_rule(recipient_type="superadmin")
        assert await RecipientResolver(directory).resolve(rule, "T-1", selector) == []

    @pytest.mark.asyncio
    async def test_duplicate_emails_case_insensitive(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [
            make_user("a1", "admin", email="Ops@Example.com"),
            make_user("a2", "admin", email="ops@example.com"),
            make_user("a3", "admin", email=None),
        ]
        rule = make_rule(recipient_type="admin", number_of_recipients=-1)

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert len(recipients) == 1
        assert recipients[0].email.lower() == "ops@example.com"


class TestDepartmentScoped:
    """department_head and custom_designation prefer the ticket's department"""

    @pytest.mark.asyncio
    async def test_department_head_same_department_first(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [
            make_user("head-other1", "department_head", department_id="D2"),
            make_user("head-own", "department_head", department_id="D1"),
            make_user("head-other2", "department_head", department_id="D3"),
        ]
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", department_id="D1")
        rule = make_rule(recipient_type="department_head", number_of_recipients=2)

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert len(recipients) == 2
        assert recipients[0].email == "head-own@example.com"

    @pytest.mark.asyncio
    async def test_department_head_without_ticket_department(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [make_user("head1", "department_head", department_id="D2")]
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1")
        rule = make_rule(recipient_type="department_head")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["head1@example.com"]

    @pytest.mark.asyncio
    async def test_custom_designation(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [
            make_user("m-other", "engineer", designation="Network Manager", department_id="D2"),
            make_user("m-own", "engineer", designation="Network Manager", department_id="D1"),
            make_user("x", "engineer", designation="Analyst", department_id="D1"),
        ]
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", department_id="D1")
        rule = make_rule(recipient_type="custom_designation", recipient_designation="Network Manager")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["m-own@example.com", "m-other@example.com"]
        assert all(r.type == "Network Manager" for r in recipients)

    @pytest.mark.asyncio
    async def test_custom_designation_falls_back_to_role_field(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [make_user("m1", "engineer", designation="Network Manager")]
        rule = make_rule(recipient_type="custom_designation", recipient_role="Network Manager")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["m1@example.com"]


class TestCustomRole:
    """custom_role matches recipient_role"""

    @pytest.mark.asyncio
    async def test_custom_role(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [make_user("qa1", "qa_lead"), make_user("e1", "engineer")]
        rule = make_rule(recipient_type="custom_role", recipient_role="qa_lead")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["qa1@example.com"]
        assert recipients[0].type == "qa_lead"

    @pytest.mark.asyncio
    async def test_missing_role_yields_nothing(self, selector):
        directory = InMemoryUserDirectory()
        directory.users = [make_user("qa1", "qa_lead")]
        rule = make_rule(recipient_type="custom_role")

        assert await RecipientResolver(directory).resolve(rule, "T-1", selector) == []
        assert directory.lookups == 0


class TestSelectors:
    """Seeded random and round-robin selection"""

    @pytest.mark.asyncio
    async def test_seeded_random_is_reproducible(self, admins_directory):
        rule = make_rule(recipient_type="admin", number_of_recipients=2)
        resolver = RecipientResolver(admins_directory)

        first = await resolver.resolve(rule, "T-1", RandomSelector(seed=42))
        second = await resolver.resolve(rule, "T-1", RandomSelector(seed=42))

        assert emails(first) == emails(second)

    @pytest.mark.asyncio
    async def test_round_robin_rotates(self):
        directory = InMemoryUserDirectory()
        directory.users = [make_user(name, "admin") for name in ("carol", "alice", "bob")]
        rule = make_rule(recipient_type="admin", number_of_recipients=1)
        resolver = RecipientResolver(directory)
        selector = RoundRobinSelector()

        picks = [emails(await resolver.resolve(rule, "T-1", selector))[0] for _ in range(4)]

        assert picks == [
            "alice@example.com",
            "bob@example.com",
            "carol@example.com",
            "alice@example.com",
        ]

    def test_build_selector(self):
        assert isinstance(build_selector("round_robin"), RoundRobinSelector)
        assert isinstance(build_selector("random", seed=1), RandomSelector)

    def test_build_unknown_selector(self):
        with pytest.raises(ConfigurationException):
            build_selector("lottery")


class FlakyDirectory(InMemoryUserDirectory):
    """Ticket lookups work; pool lookups fail."""

    async def find_active_users(self, role=None, designation=None):
        raise ConnectionError("directory unavailable")


class SlowDirectory(InMemoryUserDirectory):
    async def find_active_users(self, role=None, designation=None):
        await asyncio.sleep(1)
        return []


class BrokenTicketDirectory(InMemoryUserDirectory):
    async def get_ticket_context(self, ticket_id):
        raise ConnectionError("tickets unavailable")


class TestDegradation:
    """Resolver never raises"""

    @pytest.mark.asyncio
    async def test_partial_recipients_on_pool_failure(self, selector):
        directory = FlakyDirectory()
        own = make_user("coord-own", "coordinator")
        directory.tickets["T-1"] = TicketContext(ticket_id="T-1", coordinator=own)
        rule = make_rule(recipient_type="coordinator")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["coord-own@example.com"]

    @pytest.mark.asyncio
    async def test_failure_with_nothing_collected(self, selector):
        rule = make_rule(recipient_type="admin")
        assert await RecipientResolver(FlakyDirectory()).resolve(rule, "T-1", selector) == []

    @pytest.mark.asyncio
    async def test_lookup_timeout(self, selector):
        rule = make_rule(recipient_type="admin")
        recipients = await RecipientResolver(SlowDirectory()).resolve(
            rule, "T-1", selector, timeout_seconds=0.01
        )
        assert recipients == []

    @pytest.mark.asyncio
    async def test_role_pool_without_ticket_context(self, selector):
        directory = BrokenTicketDirectory()
        directory.users = [make_user("admin1", "admin")]
        rule = make_rule(recipient_type="admin")

        recipients = await RecipientResolver(directory).resolve(rule, "T-1", selector)

        assert emails(recipients) == ["admin1@example.com"]

    @pytest.mark.asyncio
    async def test_unregistered_type(self, directory, selector):
        rule = make_rule(recipient_type="admin")
        assert await RecipientResolver(directory, strategies={}).resolve(rule, "T-1", selector) == []


class OnCallStrategy(RecipientStrategy):
    """Pages a fixed on-call rota instead of querying the directory."""

    recipient_type = RecipientType.ADMIN

    def __init__(self, rota):
        self.rota = rota

    async def collect(self, rule, ticket, directory, selector, collector):
        collector.add_all(self.rota, "on_call")


class TestStrategyRegistration:
    """Custom recipient strategies"""

    @pytest.mark.asyncio
    async def test_register_replaces_builtin(self, admins_directory, selector):
        resolver = RecipientResolver(admins_directory)
        resolver.register(OnCallStrategy([make_user("pager1", "engineer")]))

        recipients = await resolver.resolve(make_rule(recipient_type="admin"), "T-1", selector)

        assert emails(recipients) == ["pager1@example.com"]
        assert recipients[0].type == "on_call"

    @pytest.mark.asyncio
    async def test_register_fills_missing_type(self, directory, selector):
        resolver = RecipientResolver(directory, strategies={})
        rota = [make_user(f"pager{i}", "engineer") for i in range(4)]
        resolver.register(OnCallStrategy(rota))

        recipients = await resolver.resolve(
            make_rule(recipient_type="admin", number_of_recipients=2), "T-1", selector
        )

        assert emails(recipients) == ["pager0@example.com", "pager1@example.com"]
