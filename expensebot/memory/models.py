"""Pydantic data models — expense templates and their execution history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import AwareDatetime, BaseModel, Field

from expensebot.core.scheduling.types import RecurrenceRule

ExecutionStatus = Literal["success", "failed", "pending", "skipped", "retry"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════
# EXPENSE DATA
# ════════════════════════════════════════════════════════════


class Merchant(BaseModel):
    name: str
    category: str = ""
    category_group: str = ""
    description: str = ""
    formatted_address: str = ""
    logo: str | None = None
    online: bool = False
    per_diem: bool = False
    time_zone: str = "UTC"


class Participant(BaseModel):
    id: str | None = None
    name: str = ""
    email: str | None = None


class CustomFieldValue(BaseModel):
    field_id: str
    value: str | int | float | bool


class TaxDetails(BaseModel):
    country: str = ""
    no_tax: bool = True
    reverse_charge: bool = False
    tax_rate_decimal: bool = False
    vat_number: str | None = None
    address: str | None = None


class ExpenseDetails(BaseModel):
    description: str = ""
    personal: bool = False
    personal_merchant_amount: float | None = None
    participants: list[Participant] = Field(default_factory=list)
    custom_field_values: list[CustomFieldValue] = Field(default_factory=list)
    tax_details: TaxDetails = Field(default_factory=TaxDetails)


class ReportingData(BaseModel):
    bill_to: str | None = None
    department: str | None = None
    region: str | None = None
    subsidiary: str | None = None


class ExpenseData(BaseModel):
    """What a template submits each time it runs."""

    merchant: Merchant
    merchant_amount: float = Field(gt=0)
    merchant_currency: str
    policy: str = ""
    details: ExpenseDetails = Field(default_factory=ExpenseDetails)
    reporting_data: ReportingData = Field(default_factory=ReportingData)


# ════════════════════════════════════════════════════════════
# EXECUTION HISTORY
# ════════════════════════════════════════════════════════════


class ExecutionError(BaseModel):
    code: str
    message: str
    retriable: bool


class ExecutionRecord(BaseModel):
    """One entry of a template's append-only execution history."""

    id: str
    scheduled_at: AwareDatetime
    executed_at: AwareDatetime
    status: ExecutionStatus
    expense_id: str | None = None
    error: ExecutionError | None = None
    retry_count: int = 0
    duration_ms: int = 0


# ════════════════════════════════════════════════════════════
# TEMPLATE
# ════════════════════════════════════════════════════════════


class TemplateMetadata(BaseModel):
    tags: list[str] = Field(default_factory=list)
    favorite: bool = False
    use_count: int = 0
    scheduled_use_count: int = 0
    last_used: AwareDatetime | None = None


class Template(BaseModel):
    """Saved expense-creation request plus an optional recurrence rule."""

    id: str = Field(default_factory=lambda: f"tpl_{uuid.uuid4().hex[:10]}")
    name: str = Field(min_length=1, max_length=100)
    created_at: AwareDatetime = Field(default_factory=_utcnow)
    updated_at: AwareDatetime = Field(default_factory=_utcnow)
    expense_data: ExpenseData
    scheduling: RecurrenceRule | None = None
    execution_history: list[ExecutionRecord] = Field(default_factory=list)
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)
