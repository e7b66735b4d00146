"""Template -> remote create-expense payload.

The payload models forbid unknown fields: only what the API accepts can be
sent, and every field is copied explicitly from the template.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from expensebot.memory.models import Template


class _ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid",
    )


class MerchantPayload(_ApiModel):
    name: str
    category: str
    category_group: str
    description: str
    formatted_address: str
    logo: str | None = None
    online: bool
    per_diem: bool
    time_zone: str


class ParticipantPayload(_ApiModel):
    id: str | None = None
    name: str
    email: str | None = None


class CustomFieldPayload(_ApiModel):
    field_id: str
    value: str | int | float | bool


class TaxDetailsPayload(_ApiModel):
    country: str
    no_tax: bool
    reverse_charge: bool
    tax_rate_decimal: bool
    vat_number: str | None = None
    address: str | None = None
    # Computed server-side; always sent blank
    synced_from_ledger: bool = False
    tax_lines: list[Any] = Field(default_factory=list)
    tax: float | None = None
    net_amount: float | None = None
    gross_amount: float | None = None


class DetailsPayload(_ApiModel):
    description: str
    personal: bool
    personal_merchant_amount: float | None = None
    participants: list[ParticipantPayload]
    custom_field_values: list[CustomFieldPayload]
    tax_details: TaxDetailsPayload


class ReportingDataPayload(_ApiModel):
    bill_to: str | None = None
    department: str | None = None
    region: str | None = None
    subsidiary: str | None = None


class ExpenseCreatePayload(_ApiModel):
    date: str
    merchant: MerchantPayload
    merchant_amount: float
    merchant_currency: str
    policy: str
    details: DetailsPayload
    reporting_data: ReportingDataPayload

    def to_api(self) -> dict[str, Any]:
        """camelCase JSON body, unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def build_expense_payload(template: Template, now: datetime) -> ExpenseCreatePayload:
    """Build the request for one run of ``template``, dated ``now``.

    The template's own timestamps never leak into the request.
    """
    data = template.expense_data
    merchant = data.merchant
    details = data.details
    tax = details.tax_details
    reporting = data.reporting_data

    return ExpenseCreatePayload(
        date=_iso_utc(now),
        merchant=MerchantPayload(
            name=merchant.name,
            category=merchant.category,
            category_group=merchant.category_group,
            description=merchant.description,
            formatted_address=merchant.formatted_address,
            logo=merchant.logo,
            online=merchant.online,
            per_diem=merchant.per_diem,
            time_zone=merchant.time_zone,
        ),
        merchant_amount=data.merchant_amount,
        merchant_currency=data.merchant_currency,
        policy=data.policy,
        details=DetailsPayload(
            description=details.description,
            personal=details.personal,
            personal_merchant_amount=details.personal_merchant_amount,
            participants=[
                ParticipantPayload(id=p.id, name=p.name, email=p.email)
                for p in details.participants
            ],
            custom_field_values=[
                CustomFieldPayload(field_id=c.field_id, value=c.value)
                for c in details.custom_field_values
            ],
            tax_details=TaxDetailsPayload(
                country=tax.country,
                no_tax=tax.no_tax,
                reverse_charge=tax.reverse_charge,
                tax_rate_decimal=tax.tax_rate_decimal,
                vat_number=tax.vat_number,
                address=tax.address,
            ),
        ),
        reporting_data=ReportingDataPayload(
            bill_to=reporting.bill_to,
            department=reporting.department,
            region=reporting.region,
            subsidiary=reporting.subsidiary,
        ),
    )


def _iso_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )
