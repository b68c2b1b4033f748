"""
Trigger Evaluation
==================

Pure functions deciding whether an escalation rule fires for a tracking
snapshot, given what the escalation log already holds for the pair.

Threshold arithmetic:
    base  = avg_tat or max_tat (per reference_threshold)
    point = base + trigger_offset_minutes

    warning_zone / imminent_breach   point <= elapsed < base
    breached                         elapsed >= base
    recurring_breach                 expected = floor((elapsed - base) / interval) > 0

warning_zone and imminent_breach share the same window on purpose; rules
are told apart only by their configured offsets.

The recurring re-fire policy is pluggable. ``interval_boundary`` raises one
notification per crossed interval boundary; ``cap_only`` fires on every
evaluation until max_repeat_count is reached.
"""

import math
from abc import ABC, abstractmethod
from typing import Dict, Type

from servicedesk.config import RecurringPolicyName, TriggerType
from servicedesk.core import ConfigurationException
from servicedesk.sla.domain.entities import EscalationRule, SlaTracking
from servicedesk.sla.domain.value_objects import EscalationHistory, TriggerDecision


def _fmt(minutes: float) -> str:
    return f"{minutes:g}"


class RecurringFirePolicy(ABC):
    """Decides whether a recurring breach rule may fire again."""

    name: RecurringPolicyName

    @abstractmethod
    def allows(self, expected: int, history: EscalationHistory) -> bool:
        """Whether a new instance may fire with `expected` intervals passed."""


class IntervalBoundaryPolicy(RecurringFirePolicy):
    """Fire only when more intervals have passed than have been notified."""

    name = RecurringPolicyName.INTERVAL_BOUNDARY

    def allows(self, expected: int, history: EscalationHistory) -> bool:
        return expected > history.max_repeat_count_so_far


class CapOnlyPolicy(RecurringFirePolicy):
    """Fire on every evaluation once breached; only the repeat cap stops it."""

    name = RecurringPolicyName.CAP_ONLY

    def allows(self, expected: int, history: EscalationHistory) -> bool:
        return True


RECURRING_POLICIES: Dict[RecurringPolicyName, Type[RecurringFirePolicy]] = {
    RecurringPolicyName.INTERVAL_BOUNDARY: IntervalBoundaryPolicy,
    RecurringPolicyName.CAP_ONLY: CapOnlyPolicy,
}


def get_recurring_policy(name: RecurringPolicyName | str) -> RecurringFirePolicy:
    """Instantiate a recurring fire policy by name."""
    try:
        return RECURRING_POLICIES[RecurringPolicyName(name)]()
    except (ValueError, KeyError) as e:
        raise ConfigurationException(
            f"Unknown recurring breach policy: {name}",
            {"available": [p.value for p in RECURRING_POLICIES]}
        ) from e


class TriggerEvaluator:
    """
    Evaluates one escalation rule against one tracking snapshot.

    Stateless apart from the recurring policy; safe to share across
    concurrent ticket evaluations.
    """

    def __init__(self, recurring_policy: RecurringFirePolicy | None = None):
        self._recurring_policy = recurring_policy or IntervalBoundaryPolicy()

    @property
    def recurring_policy(self) -> RecurringFirePolicy:
        return self._recurring_policy

    @staticmethod
    def reference_base(rule: EscalationRule, tracking: SlaTracking) -> float:
        """The threshold (avg or max TAT) the rule measures against."""
        return tracking.threshold_for(rule.reference_threshold)

    @staticmethod
    def trigger_point(rule: EscalationRule, tracking: SlaTracking) -> float:
        """Reference threshold shifted by the rule's signed offset."""
        return TriggerEvaluator.reference_base(rule, tracking) + (rule.trigger_offset_minutes or 0)

    @staticmethod
    def expected_repeats(rule: EscalationRule, elapsed: float, base: float) -> int:
        """Number of whole repeat intervals elapsed past the threshold."""
        if not rule.repeat_interval_minutes or rule.repeat_interval_minutes <= 0:
            return 0
        if elapsed < base:
            return 0
        return int(math.floor((elapsed - base) / rule.repeat_interval_minutes))

    def evaluate(
        self,
        rule: EscalationRule,
        tracking: SlaTracking,
        history: EscalationHistory
    ) -> TriggerDecision:
        """
        Decide whether `rule` fires now.

        Args:
            rule: The escalation rule under evaluation
            tracking: Current SLA tracking snapshot
            history: Prior notifications for this (tracking, rule) pair

        Returns:
            TriggerDecision with the reason and, when firing, the next repeat_count
        """
        elapsed = tracking.business_elapsed_minutes
        base = self.reference_base(rule, tracking)
        point = self.trigger_point(rule, tracking)

        if rule.trigger_type == TriggerType.RECURRING_BREACH:
            return self._evaluate_recurring(rule, elapsed, base, history)

        if rule.trigger_type == TriggerType.WARNING_ZONE:
            in_window = point <= elapsed < base
            reason = f"Warning zone: {_fmt(elapsed)}/{_fmt(base)} minutes"
        elif rule.trigger_type == TriggerType.IMMINENT_BREACH:
            in_window = point <= elapsed < base
            reason = f"Imminent breach: {_fmt(base - elapsed)} minutes remaining"
        else:
            in_window = elapsed >= base
            reason = f"SLA breached: {_fmt(elapsed - base)} minutes over"

        if not in_window:
            return TriggerDecision.suppress(
                f"{rule.trigger_type.value} not reached: elapsed {_fmt(elapsed)}, "
                f"window starts at {_fmt(point if rule.trigger_type != TriggerType.BREACHED else base)}"
            )

        if history.existing_count > 0:
            return TriggerDecision.suppress(
                f"{rule.trigger_type.value} already notified ({history.existing_count} record(s))"
            )

        return TriggerDecision(
            fire=True,
            reason=reason,
            repeat_count=history.existing_count + 1
        )

    def _evaluate_recurring(
        self,
        rule: EscalationRule,
        elapsed: float,
        base: float,
        history: EscalationHistory
    ) -> TriggerDecision:
        if elapsed < base:
            return TriggerDecision.suppress(
                f"recurring_breach not reached: elapsed {_fmt(elapsed)}, threshold {_fmt(base)}"
            )
        if not rule.repeat_interval_minutes or rule.repeat_interval_minutes <= 0:
            return TriggerDecision.suppress("recurring_breach rule has no repeat interval")

        expected = self.expected_repeats(rule, elapsed, base)
        if expected <= 0:
            return TriggerDecision.suppress(
                f"recurring_breach: no full interval passed ({_fmt(elapsed - base)} minutes over)"
            )

        if (rule.max_repeat_count is not None
                and history.max_repeat_count_so_far >= rule.max_repeat_count):
            return TriggerDecision.suppress(
                f"recurring_breach capped at {rule.max_repeat_count} notifications"
            )

        if not self._recurring_policy.allows(expected, history):
            return TriggerDecision.suppress(
                f"recurring_breach: {expected} interval(s) passed, "
                f"{history.max_repeat_count_so_far} already notified"
            )

        return TriggerDecision(
            fire=True,
            reason=f"Recurring breach notification: {expected} intervals passed",
            repeat_count=history.max_repeat_count_so_far + 1
        )
