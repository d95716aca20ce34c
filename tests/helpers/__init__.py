"""Test helpers: wizard payload builders and a settable clock."""

from tests.helpers.wizard import (
    NUMBERS,
    OPERATOR_KEY,
    TENANT_ID,
    USER_ID,
    WEBHOOK_SECRET,
    FakeClock,
    brand_form,
    campaign_form,
    compliance_form,
    fill_wizard,
)

__all__ = [
    "NUMBERS",
    "OPERATOR_KEY",
    "TENANT_ID",
    "USER_ID",
    "WEBHOOK_SECRET",
    "FakeClock",
    "brand_form",
    "campaign_form",
    "compliance_form",
    "fill_wizard",
]
