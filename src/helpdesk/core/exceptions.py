"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
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


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for LLM API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


class StepTimeoutException(ApplicationException):
    """Raised when a triage step does not complete within its time budget."""

    def __init__(self, step: str, timeout_ms: int):
        self.step = step
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Timeout in {step} after {timeout_ms}ms",
            {"step": step, "timeout_ms": timeout_ms}
        )


class TriageFailedException(DomainException):
    """Raised when a triage run cannot complete because a step exhausted its retries."""

    def __init__(
        self,
        ticket_id: str,
        step: str,
        details: Optional[dict] = None
    ):
        self.ticket_id = ticket_id
        self.step = step
        super().__init__(
            f"Triage failed for ticket {ticket_id} at step {step}",
            details or {"ticket_id": ticket_id, "step": step}
        )
