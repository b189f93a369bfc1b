import json
from decimal import Decimal

import pytest

from billing_models import BillingValidationError
from billing_settings import BillingSettings, load_settings, settings_from_mapping


def test_defaults_without_file_or_environment(tmp_path):
    settings = load_settings(tmp_path / "missing.json", environ={})
    assert settings == BillingSettings()
    assert settings.due_days == 30
    assert settings.usage_unit is None


def test_file_values_then_environment_overrides(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"dueDays": "15", "defaultDiscount": "2.5", "invoicePrefix": "RS", "unknown": 1}),
        encoding="utf-8",
    )
    settings = load_settings(path, environ={"VPN_BILLING_DUE_DAYS": "20", "VPN_BILLING_USAGE_UNIT": "MB"})
    assert settings.due_days == 20
    assert settings.default_discount_percent == Decimal("2.5")
    assert settings.invoice_prefix == "RS"
    assert settings.usage_unit == "mb"


@pytest.mark.parametrize(
    "values, field",
    [
        ({"due_days": "1.5"}, "due_days"),
        ({"default_discount_percent": "150"}, "default_discount_percent"),
        ({"usage_unit": "tb"}, "usage_unit"),
        ({"default_plan": "weekly"}, "default_plan"),
        ({"default_duration_months": "12"}, "default_duration_months"),
        ({"invoice_prefix": ""}, "invoice_prefix"),
    ],
)
def test_invalid_values_are_rejected(values, field):
    with pytest.raises(BillingValidationError) as excinfo:
        settings_from_mapping(values)
    assert field in excinfo.value.errors


def test_unreadable_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(BillingValidationError):
        load_settings(path, environ={})
