"""Remote expense API — request payload mapping and HTTP client."""

from expensebot.core.expense.client import ExpenseAPIError, ExpenseClient
from expensebot.core.expense.payload import ExpenseCreatePayload, build_expense_payload

__all__ = ["ExpenseAPIError", "ExpenseClient", "ExpenseCreatePayload", "build_expense_payload"]
