"""Shared fixtures: a temp SQLite store, a controllable clock and a template factory."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from expensebot.memory.models import Template
from expensebot.memory.store import MemoryStore


class Clock:
    """Injectable clock; tests move time with ``advance``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "test.db"))


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc))


def _template(name: str = "Phone bill", scheduling: dict | None = None, **rule) -> Template:
    if scheduling is None:
        scheduling = {
            "enabled": True,
            "interval": "daily",
            "execution_time": {"hour": 8, "minute": 0, "timezone": "UTC"},
            **rule,
        }
    return Template.model_validate({
        "name": name,
        "expense_data": {
            "merchant": {
                "name": "Verizon",
                "category": "telecom",
                "category_group": "utilities",
                "description": "Wireless",
                "formatted_address": "1 Verizon Way",
                "online": True,
                "time_zone": "America/New_York",
            },
            "merchant_amount": 42.5,
            "merchant_currency": "USD",
            "policy": "telecom",
            "details": {
                "description": "Monthly phone plan",
                "participants": [{"id": "u1", "name": "Pat", "email": "pat@example.com"}],
                "custom_field_values": [{"field_id": "cost_center", "value": "R&D"}],
                "tax_details": {"country": "US", "no_tax": True},
            },
            "reporting_data": {"department": "Engineering"},
        },
        "scheduling": scheduling,
    })


@pytest.fixture
def make_template():
    return _template
