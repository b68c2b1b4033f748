"""
Core Exceptions
================

Custom exceptions for the escalation engine.

These exceptions define domain-specific errors that can be caught and handled
at the application boundaries (the sweep loop, the delivery worker).
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class DuplicateEscalationException(RepositoryException):
    """
    Raised when an escalation with the same (tracking, rule, repeat_count)
    has already been recorded, typically by a concurrent evaluation.
    """

    def __init__(
        self,
        tracking_id: str,
        escalation_rule_id: str,
        repeat_count: int
    ):
        self.tracking_id = tracking_id
        self.escalation_rule_id = escalation_rule_id
        self.repeat_count = repeat_count
        super().__init__(
            f"Escalation already recorded for tracking {tracking_id}, "
            f"rule {escalation_rule_id}, repeat {repeat_count}",
            {
                "tracking_id": tracking_id,
                "escalation_rule_id": escalation_rule_id,
                "repeat_count": repeat_count,
            }
        )


class EscalationHistoryUnavailableException(RepositoryException):
    """Raised when the escalation history for a rule cannot be read."""

    def __init__(
        self,
        tracking_id: str,
        escalation_rule_id: str,
        reason: str
    ):
        self.tracking_id = tracking_id
        self.escalation_rule_id = escalation_rule_id
        super().__init__(
            f"Escalation history unavailable for tracking {tracking_id}, "
            f"rule {escalation_rule_id}: {reason}",
            {"tracking_id": tracking_id, "escalation_rule_id": escalation_rule_id}
        )
