"""Collaborator interfaces consumed by the scheduling engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from expensebot.core.expense.payload import ExpenseCreatePayload
    from expensebot.memory.models import Template


class KeyValueStore(Protocol):
    """Persistent JSON key-value store (no transactions, last writer wins)."""

    def get(self, key: str) -> Any | None:
        """Return stored value or None."""

    def set(self, key: str, value: Any) -> None:
        """Store value under key."""


class TemplateStore(Protocol):
    """Template repository."""

    def get(self, template_id: str) -> Template | None:
        """Return the template or None when it does not exist."""

    def update(self, template_id: str, partial: dict[str, Any]) -> Template:
        """Apply a partial update and return the saved template."""


class ExpenseCreator(Protocol):
    """Remote create-action client."""

    async def create_expense(self, payload: ExpenseCreatePayload) -> dict[str, Any]:
        """Create the expense; returns ``{"data": {...}}``, raises on failure."""


class Notifier(Protocol):
    """Fire-and-forget notification dispatcher."""

    async def notify_success(
        self, title: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Report a successful scheduled run."""

    async def notify_failure(
        self, title: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Report a terminal failure."""

    async def notify_auth_required(
        self,
        title: str = "Authentication Required",
        message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Ask the user to re-authenticate."""
