"""Scheduling errors raised by the engine itself.

Each carries its category and retry flag so classification never depends on
the wording of the message.
"""

from __future__ import annotations

from expensebot.core.scheduling.types import ErrorCategory


class SchedulingError(Exception):
    """Base class for engine-raised errors."""

    category: ErrorCategory = ErrorCategory.SYSTEM
    retryable: bool = False


class TemplateNotFoundError(SchedulingError):
    """NotFound — the template (or its queue entry) no longer exists."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class SchedulingNotEnabledError(SchedulingError):
    """NotEnabled — scheduling is disabled or paused for the template."""

    def __init__(self, template_id: str, reason: str = "scheduling not enabled"):
        self.template_id = template_id
        super().__init__(f"Template {template_id}: {reason}")


class AuthenticationRequiredError(SchedulingError):
    """The caller is not authenticated; the remote call must not be attempted."""

    category = ErrorCategory.AUTHENTICATION
    retryable = True

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)
