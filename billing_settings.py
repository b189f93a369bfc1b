"""Billing settings snapshot.

Settings are read once per batch and handed to the calculator and the
reconciliator as an immutable value. A change saved mid-batch applies to the
next batch.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from billing_models import (
    BillingValidationError,
    PLAN_DURATIONS,
    PLAN_TYPES,
    key,
    parse_decimal,
)

ENV_PREFIX = "VPN_BILLING_"
DEFAULT_DATA_DIR = Path(os.getenv("VPN_BILLING_DATA_DIR", "data"))
DEFAULT_SETTINGS_FILE = "settings.json"

USAGE_UNITS = ("bytes", "mb", "gb")

# Keys saved by the operator settings screen.
_CAMEL_ALIASES = {
    "dueDays": "due_days",
    "defaultDiscount": "default_discount_percent",
    "invoicePrefix": "invoice_prefix",
    "overdueAfterDays": "overdue_after_days",
    "usageUnit": "usage_unit",
    "defaultPlan": "default_plan",
    "defaultDurationMonths": "default_duration_months",
}


@dataclass(frozen=True)
class BillingSettings:
    currency: str = "تومان"
    due_days: int = 30
    default_discount_percent: Decimal = Decimal("0")
    invoice_prefix: str = "INV"
    overdue_after_days: int = 30
    usage_unit: Optional[str] = None
    default_plan: str = "limited"
    default_duration_months: int = 1


def _coerce(name: str, raw: Any) -> Any:
    if name in {"due_days", "overdue_after_days", "default_duration_months"}:
        parsed = parse_decimal(raw)
        if parsed is None or parsed != parsed.to_integral_value():
            raise BillingValidationError({name: f"expected a whole number, got {raw!r}"})
        return int(parsed)
    if name == "default_discount_percent":
        parsed = parse_decimal(raw)
        if parsed is None:
            raise BillingValidationError({name: f"expected a number, got {raw!r}"})
        return parsed
    if name == "usage_unit":
        value = key(raw).lower()
        return value or None
    return key(raw)


def validate_settings(settings: BillingSettings) -> BillingSettings:
    errors: Dict[str, str] = {}
    if settings.due_days < 0:
        errors["due_days"] = "due days cannot be negative"
    if settings.overdue_after_days < 0:
        errors["overdue_after_days"] = "overdue threshold cannot be negative"
    if not (0 <= settings.default_discount_percent <= 100):
        errors["default_discount_percent"] = "discount must be between 0 and 100"
    if not settings.invoice_prefix:
        errors["invoice_prefix"] = "invoice prefix is required"
    if settings.usage_unit is not None and settings.usage_unit not in USAGE_UNITS:
        errors["usage_unit"] = f"usage unit must be one of {list(USAGE_UNITS)}"
    if settings.default_plan not in PLAN_TYPES:
        errors["default_plan"] = f"plan type must be one of {list(PLAN_TYPES)}"
    if settings.default_duration_months not in PLAN_DURATIONS:
        errors["default_duration_months"] = "plan duration must be between 1 and 6 months"
    if errors:
        raise BillingValidationError(errors)
    return settings


def settings_from_mapping(values: Mapping[str, Any], base: Optional[BillingSettings] = None) -> BillingSettings:
    """Overlay a key/value mapping (snake_case or camelCase keys) on ``base``."""
    known = {f.name for f in fields(BillingSettings)}
    updates: Dict[str, Any] = {}
    for raw_name, raw_value in values.items():
        name = _CAMEL_ALIASES.get(raw_name, raw_name)
        if name not in known:
            continue
        updates[name] = _coerce(name, raw_value)
    return validate_settings(replace(base or BillingSettings(), **updates))


def load_settings(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> BillingSettings:
    """Read the JSON settings file (if any), then apply VPN_BILLING_* overrides."""
    settings = BillingSettings()
    if path is not None and path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (json.JSONDecodeError, OSError) as exc:
            raise BillingValidationError({"settings": f"cannot read {path}: {exc}"}) from exc
        if not isinstance(data, dict):
            raise BillingValidationError({"settings": f"{path} must hold a JSON object"})
        settings = settings_from_mapping(data, settings)

    env = os.environ if environ is None else environ
    overrides = {
        f.name: env[ENV_PREFIX + f.name.upper()]
        for f in fields(BillingSettings)
        if ENV_PREFIX + f.name.upper() in env
    }
    if overrides:
        settings = settings_from_mapping(overrides, settings)
    return settings
