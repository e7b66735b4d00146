"""NotificationManager — persisted notification history + optional Telegram push.

Dispatch is fire-and-forget: nothing raised here ever reaches the engine.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from expensebot.core.config.schema import NotificationsConfig
from expensebot.memory.store import MemoryStore

TELEGRAM_API = "https://api.telegram.org/bot{token}"


class NotificationManager:
    """Records every notification and pushes it to Telegram when configured."""

    def __init__(self, db: MemoryStore, config: NotificationsConfig | None = None):
        self.db = db
        self.config = config or NotificationsConfig()

    async def notify_success(
        self, title: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        await self._dispatch("success", title, message, metadata)

    async def notify_failure(
        self, title: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        await self._dispatch("failure", title, message, metadata)

    async def notify_auth_required(
        self,
        title: str = "Authentication Required",
        message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        message = message or (
            "Scheduled expenses are on hold. Save a fresh API token with "
            "`expensebot auth set-token` to resume."
        )
        await self._dispatch("auth", title, message, {"requires_action": True, **(metadata or {})})

    def history(self, limit: int = 50) -> list[dict[str, Any]]:
        return self.db.get_notifications(limit)

    async def _dispatch(
        self, kind: str, title: str, message: str, metadata: dict[str, Any] | None
    ) -> None:
        if not self.config.enabled:
            logger.debug(f"Notifications disabled, dropping {kind}: {title}")
            return
        logger.info(f"Notification [{kind}] {title}: {message}")

        try:
            self.db.add_notification(kind, title, message, metadata)
            self.db.prune_notifications(self.config.history_limit, self.config.retention_days)
        except Exception as e:
            logger.warning(f"Could not persist notification: {e}")

        if self.config.telegram_token and self.config.telegram_chat_id:
            try:
                await send_telegram(
                    self.config.telegram_token,
                    self.config.telegram_chat_id,
                    f"<b>{_escape(title)}</b>\n{_escape(message)}",
                )
            except Exception as e:
                logger.warning(f"Telegram push failed: {e}")


async def send_telegram(token: str, chat_id: str, html_text: str) -> None:
    """Send an HTML message via the Telegram Bot API."""
    url = f"{TELEGRAM_API.format(token=token)}/sendMessage"
    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
        resp = await client.post(
            url,
            json={"chat_id": chat_id, "text": html_text, "parse_mode": "HTML"},
        )
        resp.raise_for_status()


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
