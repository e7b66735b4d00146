"""ExpenseClient — async httpx client for the remote expense API."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
from loguru import logger

from expensebot.core.expense.payload import ExpenseCreatePayload
from expensebot.core.scheduling.errors import AuthenticationRequiredError


class ExpenseAPIError(Exception):
    """Raised on a non-2xx response (or a transport failure, ``status_code=0``)."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        if status_code:
            super().__init__(f"API Error {status_code}: {detail}")
        else:
            super().__init__(f"Network request failed: {detail}")


class ExpenseClient:
    """Creates expenses the way the web app does: draft, finalize, submit.

    Parameters
    ----------
    base_url : str
        API root (e.g. "https://app.navan.com/api/liquid/user").
    token_provider : callable
        Returns the current bearer token, or None when not authenticated.
    timezone : str
        Sent as ``x-timezone`` on writes.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None],
        timezone: str = "America/Los_Angeles",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timezone = timezone
        self.timeout = timeout
        self._transport = transport

    async def create_expense(self, payload: ExpenseCreatePayload) -> dict[str, Any]:
        """Create and submit one expense. Returns ``{"data": {...}}``."""
        body = payload.to_api()
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers=self._headers(),
            transport=self._transport,
        ) as client:
            draft = await self._request(client, "POST", "/expenses/manual", body)
            expense_id = draft.get("uuid") or draft.get("id")
            if not expense_id:
                raise ExpenseAPIError(502, "No expense ID returned from draft creation")
            logger.debug(f"Draft expense created: {expense_id}")

            await self._request(client, "PATCH", f"/expenses/{expense_id}", body)
            submitted = await self._request(
                client, "POST", f"/expenses/{expense_id}/submit", {}
            )

        logger.info(f"Expense submitted: {expense_id}")
        return {"data": {**submitted, "uuid": expense_id}}

    def _headers(self) -> dict[str, str]:
        token = self.token_provider()
        if not token:
            raise AuthenticationRequiredError("Authentication token not found or expired")
        return {
            "accept": "application/json, text/plain, */*",
            "accept-language": "en",
            "authorization": token,
            "x-timezone": self.timezone,
        }

    async def _request(
        self, client: httpx.AsyncClient, method: str, path: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            resp = await client.request(method, path, json=body)
        except httpx.TransportError as e:
            raise ExpenseAPIError(0, str(e) or type(e).__name__) from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            logger.error(f"{method} {path} failed ({resp.status_code}): {detail}")
            raise ExpenseAPIError(resp.status_code, detail)

        if not resp.content:
            return {}
        data = resp.json()
        return data if isinstance(data, dict) else {"result": data}


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or resp.reason_phrase)
    return resp.reason_phrase
