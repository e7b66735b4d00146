"""TemplateRepository — typed access to template documents in the MemoryStore."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger

from expensebot.core.scheduling.errors import TemplateNotFoundError
from expensebot.memory.models import Template
from expensebot.memory.store import MemoryStore


class TemplateRepository:
    """Template CRUD over :class:`MemoryStore`.

    ``update`` takes a partial mapping of top-level fields; nested values may be
    models or plain dicts. The template is re-validated before it is saved.
    """

    def __init__(self, db: MemoryStore):
        self.db = db

    def get(self, template_id: str) -> Template | None:
        data = self.db.get_template(template_id)
        return Template.model_validate(data) if data else None

    def list_all(self) -> list[Template]:
        return [Template.model_validate(d) for d in self.db.list_templates()]

    def create(self, template: Template) -> Template:
        self._save(template)
        logger.info(f"Template created: {template.id} ({template.name})")
        return template

    def update(self, template_id: str, partial: dict[str, Any]) -> Template:
        current = self.get(template_id)
        if current is None:
            raise TemplateNotFoundError(template_id)

        fields = {k: v for k, v in partial.items() if k not in ("id", "created_at")}
        data = {
            **current.model_dump(),
            **fields,
            "updated_at": datetime.now(timezone.utc),
        }
        template = Template.model_validate(data)
        self._save(template)
        return template

    def delete(self, template_id: str) -> bool:
        removed = self.db.delete_template(template_id)
        if removed:
            logger.info(f"Template deleted: {template_id}")
        return removed

    def _save(self, template: Template) -> None:
        self.db.save_template(
            template.id, template.name, template.model_dump(mode="json")
        )
