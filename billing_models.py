"""Domain records, value helpers and data-entry validation for VPN reseller billing.

Money is kept as ``Decimal`` end to end. Usage is kept as ``Decimal`` gigabytes
rounded to three places. Records serialize to plain JSON-compatible dicts via
``to_record`` / ``from_record`` so the store never has to know field types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd


class BillingError(Exception):
    """Raised when input data, configuration or a requested operation is invalid."""


class BillingValidationError(BillingError):
    """Data-entry rejection; ``errors`` maps field name to a readable reason."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        detail = "; ".join(f"{name}: {reason}" for name, reason in sorted(self.errors.items()))
        super().__init__(f"Validation failed: {detail}")


class InvalidStatusTransition(BillingValidationError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__({"status": f"cannot move invoice from '{current}' to '{requested}'"})


class RecordNotFoundError(BillingError):
    def __init__(self, entity: str, identifier: Any, by: str = "id"):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found for {by} {identifier}")


class InvoiceConflictError(BillingError):
    def __init__(self, representative_id: int, month: str):
        self.representative_id = representative_id
        self.month = month
        super().__init__(
            f"An invoice already exists for representative {representative_id} in month {month}"
        )


class StorageError(BillingError):
    def __init__(self, subject: str, reason: str):
        self.subject = subject
        super().__init__(f"Storage failure for {subject}: {reason}")


@dataclass(frozen=True)
class Diagnostic:
    """One rejected row or entity in a batch, kept for operator review."""

    kind: str
    subject: str
    message: str

    def to_record(self) -> Dict[str, str]:
        return {"kind": self.kind, "subject": self.subject, "message": self.message}


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
REPRESENTATIVE_STATUSES = ("active", "inactive", "suspended")
PLAN_TYPES = ("limited", "unlimited")
PLAN_DURATIONS = (1, 2, 3, 4, 5, 6)
PAYMENT_METHODS = ("cash", "bank_transfer", "card", "cheque", "online", "crypto")

INVOICE_PENDING = "pending"
INVOICE_SENT = "sent"
INVOICE_PAID = "paid"
INVOICE_OVERDUE = "overdue"
INVOICE_CANCELLED = "cancelled"
INVOICE_STATUSES = (INVOICE_PENDING, INVOICE_SENT, INVOICE_PAID, INVOICE_OVERDUE, INVOICE_CANCELLED)

# Operator-issued transitions; paid and cancelled are terminal.
INVOICE_TRANSITIONS: Dict[str, frozenset] = {
    INVOICE_PENDING: frozenset({INVOICE_SENT, INVOICE_CANCELLED}),
    INVOICE_SENT: frozenset({INVOICE_PAID, INVOICE_OVERDUE, INVOICE_CANCELLED}),
    INVOICE_OVERDUE: frozenset({INVOICE_PAID, INVOICE_CANCELLED}),
    INVOICE_PAID: frozenset(),
    INVOICE_CANCELLED: frozenset(),
}

CENT = Decimal("0.01")
USAGE_QUANTUM = Decimal("0.001")

PERSIAN_DIGITS = "۰۱۲۳۴۵۶۷۸۹"
ARABIC_DIGITS = "٠١٢٣٤٥٦٧٨٩"
_DIGIT_TABLE = str.maketrans(
    {**{ch: str(i) for i, ch in enumerate(PERSIAN_DIGITS)}, **{ch: str(i) for i, ch in enumerate(ARABIC_DIGITS)}}
)

IRANIAN_PHONE_RE = re.compile(r"^(\+98|0)?9\d{9}$")
TELEGRAM_USERNAME_RE = re.compile(r"^@?[a-zA-Z0-9_]{5,32}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# -----------------------------------------------------------------------------
# Value helpers
# -----------------------------------------------------------------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def is_missing(value: Any) -> bool:
    """Null-like check that works across pandas/numpy/native types."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def key(value: Any) -> str:
    """Trimmed string form; whole floats lose their trailing ``.0``."""
    if is_missing(value):
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
        if numeric.is_integer():
            return str(int(numeric))
    return str(value).strip()


def normalize_digits(text: str) -> str:
    """Fold Persian and Arabic-Indic digits to ASCII."""
    return text.translate(_DIGIT_TABLE)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a spreadsheet/form number to Decimal, or None when it is not a number."""
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if pd.notna(value) and abs(value) != float("inf") else None
    s = normalize_digits(str(value)).replace(",", "").replace("٬", "").replace("٫", ".").strip()
    if not s:
        return None
    try:
        parsed = Decimal(s)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def money(value: Any) -> Decimal:
    """Round to 2 decimals half-up; missing or unparseable values count as zero."""
    parsed = parse_decimal(value)
    if parsed is None:
        parsed = Decimal("0")
    return parsed.quantize(CENT, rounding=ROUND_HALF_UP)


def round_usage(value: Decimal) -> Decimal:
    return value.quantize(USAGE_QUANTUM, rounding=ROUND_HALF_UP)


def optional_money(value: Any) -> Optional[Decimal]:
    parsed = parse_decimal(value)
    return None if parsed is None else parsed.quantize(CENT, rounding=ROUND_HALF_UP)


def value_from_aliases(row: Dict[str, Any], aliases: Iterable[str]) -> Any:
    """Return the first non-missing value found for alias names."""
    for alias in aliases:
        if alias in row and not is_missing(row.get(alias)):
            return row.get(alias)
    return None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if is_missing(value) or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal_text(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
@dataclass
class Representative:
    """A reseller account and its tariff."""

    id: int
    username: str
    name: str
    phone: Optional[str] = None
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None
    email: Optional[str] = None
    store_name: Optional[str] = None
    duration_prices: Dict[int, Decimal] = field(default_factory=dict)
    unlimited_monthly_price: Optional[Decimal] = None
    price_per_gb: Optional[Decimal] = None
    discount_percent: Optional[Decimal] = None
    plan_type: str = "limited"
    plan_months: int = 1
    status: str = "active"
    parent_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)

    def price_for_duration(self, months: int) -> Optional[Decimal]:
        return self.duration_prices.get(months)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "phone": self.phone,
            "telegram_id": self.telegram_id,
            "telegram_username": self.telegram_username,
            "email": self.email,
            "store_name": self.store_name,
            "duration_prices": {str(k): str(v) for k, v in sorted(self.duration_prices.items())},
            "unlimited_monthly_price": _decimal_text(self.unlimited_monthly_price),
            "price_per_gb": _decimal_text(self.price_per_gb),
            "discount_percent": _decimal_text(self.discount_percent),
            "plan_type": self.plan_type,
            "plan_months": self.plan_months,
            "status": self.status,
            "parent_id": self.parent_id,
            "notes": self.notes,
            "created_at": _format_dt(self.created_at),
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Representative":
        """Build from a stored record or operator form; accepts ``price1Month`` style keys too."""
        prices: Dict[int, Decimal] = {}
        stored = row.get("duration_prices") or {}
        for months, price in stored.items():
            parsed = optional_money(price)
            if parsed is not None:
                prices[int(months)] = parsed
        for months in PLAN_DURATIONS:
            # An explicit tier key replaces the stored tier; a blank one removes it.
            alias = next((a for a in (f"price_{months}_month", f"price{months}Month") if a in row), None)
            if alias is None:
                continue
            parsed = optional_money(row[alias])
            if parsed is None:
                prices.pop(months, None)
            else:
                prices[months] = parsed

        plan_months = value_from_aliases(row, ["plan_months", "planMonths"])
        parent = value_from_aliases(row, ["parent_id", "parentId", "parent_rep_id", "parentRepId"])
        created = _parse_dt(value_from_aliases(row, ["created_at", "createdAt"]))
        return cls(
            id=int(row["id"]),
            username=key(row.get("username")),
            name=key(row.get("name")),
            phone=key(row.get("phone")) or None,
            telegram_id=key(value_from_aliases(row, ["telegram_id", "telegramId"])) or None,
            telegram_username=key(value_from_aliases(row, ["telegram_username", "telegramUsername"])) or None,
            email=key(row.get("email")) or None,
            store_name=key(value_from_aliases(row, ["store_name", "storeName"])) or None,
            duration_prices=prices,
            unlimited_monthly_price=optional_money(
                value_from_aliases(row, ["unlimited_monthly_price", "unlimitedMonthlyPrice"])
            ),
            price_per_gb=optional_money(value_from_aliases(row, ["price_per_gb", "pricePerGb"])),
            discount_percent=parse_decimal(value_from_aliases(row, ["discount_percent", "discountPercent"])),
            plan_type=key(value_from_aliases(row, ["plan_type", "planType"])) or "limited",
            plan_months=int(num_or_default(plan_months, 1)),
            status=key(row.get("status")) or "active",
            parent_id=int(num_or_default(parent, 0)) or None,
            notes=key(row.get("notes")) or None,
            created_at=created or now_utc(),
        )


def num_or_default(value: Any, default: float) -> float:
    parsed = parse_decimal(value)
    return default if parsed is None else float(parsed)


@dataclass
class UsageRecord:
    """One accepted observation of consumption, already normalized to GB."""

    admin_username: str
    data_usage_gb: Decimal
    month: str
    raw_data: Dict[str, Any] = field(default_factory=dict)
    row_number: Optional[int] = None
    unit: str = "gb"
    processed: bool = False
    id: Optional[int] = None
    imported_at: datetime = field(default_factory=now_utc)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_username": self.admin_username,
            "data_usage_gb": str(self.data_usage_gb),
            "month": self.month,
            "raw_data": {str(k): _jsonable(v) for k, v in self.raw_data.items()},
            "row_number": self.row_number,
            "unit": self.unit,
            "processed": self.processed,
            "imported_at": _format_dt(self.imported_at),
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=row.get("id"),
            admin_username=key(row.get("admin_username")),
            data_usage_gb=parse_decimal(row.get("data_usage_gb")) or Decimal("0"),
            month=key(row.get("month")),
            raw_data=dict(row.get("raw_data") or {}),
            row_number=row.get("row_number"),
            unit=row.get("unit") or "gb",
            processed=bool(row.get("processed")),
            imported_at=_parse_dt(row.get("imported_at")) or now_utc(),
        )


def _jsonable(value: Any) -> Any:
    if is_missing(value):
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "item"):
        return value.item()
    return str(value)


@dataclass(frozen=True)
class InvoiceItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal

    def to_record(self) -> Dict[str, str]:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "InvoiceItem":
        return cls(
            description=key(row.get("description")),
            quantity=parse_decimal(row.get("quantity")) or Decimal("0"),
            unit_price=money(row.get("unit_price")),
            total_price=money(row.get("total_price")),
        )


@dataclass(frozen=True)
class InvoiceDraft:
    """Calculated, not yet persisted invoice for one representative and month."""

    representative_id: int
    representative_name: str
    username: str
    month: str
    data_usage_gb: Decimal
    plan_type: str
    unit_price: Decimal
    discount_percent: Decimal
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    items: List[InvoiceItem]

    def to_record(self) -> Dict[str, Any]:
        return {
            "representative_id": self.representative_id,
            "representative_name": self.representative_name,
            "username": self.username,
            "month": self.month,
            "data_usage_gb": str(self.data_usage_gb),
            "plan_type": self.plan_type,
            "unit_price": str(self.unit_price),
            "discount_percent": str(self.discount_percent),
            "total_amount": str(self.total_amount),
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
            "items": [item.to_record() for item in self.items],
        }


@dataclass
class Invoice:
    """A persisted billing statement. Only ``status`` and ``sent_at`` ever change."""

    id: int
    representative_id: int
    invoice_number: str
    month: str
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    due_date: datetime
    status: str = INVOICE_PENDING
    items: List[InvoiceItem] = field(default_factory=list)
    created_at: datetime = field(default_factory=now_utc)
    sent_at: Optional[datetime] = None
    data_usage_gb: Optional[Decimal] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "representative_id": self.representative_id,
            "invoice_number": self.invoice_number,
            "month": self.month,
            "total_amount": str(self.total_amount),
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
            "status": self.status,
            "due_date": _format_dt(self.due_date),
            "created_at": _format_dt(self.created_at),
            "sent_at": _format_dt(self.sent_at),
            "data_usage_gb": _decimal_text(self.data_usage_gb),
            "items": [item.to_record() for item in self.items],
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Invoice":
        return cls(
            id=int(row["id"]),
            representative_id=int(row["representative_id"]),
            invoice_number=key(row.get("invoice_number")),
            month=key(row.get("month")),
            total_amount=money(row.get("total_amount")),
            discount_amount=money(row.get("discount_amount")),
            final_amount=money(row.get("final_amount")),
            status=key(row.get("status")) or INVOICE_PENDING,
            due_date=_parse_dt(row.get("due_date")) or now_utc(),
            created_at=_parse_dt(row.get("created_at")) or now_utc(),
            sent_at=_parse_dt(row.get("sent_at")),
            data_usage_gb=parse_decimal(row.get("data_usage_gb")),
            items=[InvoiceItem.from_record(item) for item in row.get("items") or []],
        )


@dataclass(frozen=True)
class Payment:
    """A manually recorded receipt. Corrections are new entries, never edits."""

    id: int
    representative_id: int
    amount: Decimal
    payment_date: datetime
    payment_method: str = "cash"
    invoice_id: Optional[int] = None
    reference_number: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "representative_id": self.representative_id,
            "invoice_id": self.invoice_id,
            "amount": str(self.amount),
            "payment_date": _format_dt(self.payment_date),
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "description": self.description,
            "created_at": _format_dt(self.created_at),
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Payment":
        invoice_id = row.get("invoice_id")
        return cls(
            id=int(row["id"]),
            representative_id=int(row["representative_id"]),
            invoice_id=int(invoice_id) if invoice_id is not None else None,
            amount=money(row.get("amount")),
            payment_date=_parse_dt(row.get("payment_date")) or now_utc(),
            payment_method=key(row.get("payment_method")) or "cash",
            reference_number=key(row.get("reference_number")) or None,
            description=key(row.get("description")) or None,
            created_at=_parse_dt(row.get("created_at")) or now_utc(),
        )


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
def is_valid_phone(phone: str) -> bool:
    return bool(IRANIAN_PHONE_RE.match(normalize_digits(phone.strip())))


def is_valid_telegram_username(username: str) -> bool:
    return bool(TELEGRAM_USERNAME_RE.match(username.strip()))


def validate_representative(rep: Representative) -> None:
    """Reject a representative before persistence, reporting every bad field at once."""
    errors: Dict[str, str] = {}
    if not rep.username:
        errors["username"] = "username is required"
    if not rep.name:
        errors["name"] = "name is required"
    if rep.phone and not is_valid_phone(rep.phone):
        errors["phone"] = "not a valid Iranian mobile number"
    if rep.telegram_username and not is_valid_telegram_username(rep.telegram_username):
        errors["telegram_username"] = "telegram username must be 5-32 letters, digits or underscores"
    if rep.email and not EMAIL_RE.match(rep.email):
        errors["email"] = "not a valid email address"
    if rep.discount_percent is not None and not (0 <= rep.discount_percent <= 100):
        errors["discount_percent"] = "discount must be between 0 and 100"
    for months, price in rep.duration_prices.items():
        if months not in PLAN_DURATIONS:
            errors[f"price_{months}_month"] = "duration must be between 1 and 6 months"
        elif price < 0:
            errors[f"price_{months}_month"] = "price cannot be negative"
    for name in ("unlimited_monthly_price", "price_per_gb"):
        price = getattr(rep, name)
        if price is not None and price < 0:
            errors[name] = "price cannot be negative"
    if rep.plan_type not in PLAN_TYPES:
        errors["plan_type"] = f"plan type must be one of {list(PLAN_TYPES)}"
    if rep.plan_months not in PLAN_DURATIONS:
        errors["plan_months"] = "plan duration must be between 1 and 6 months"
    if rep.status not in REPRESENTATIVE_STATUSES:
        errors["status"] = f"status must be one of {list(REPRESENTATIVE_STATUSES)}"
    if rep.parent_id is not None and rep.parent_id == rep.id:
        errors["parent_id"] = "a representative cannot refer itself"
    if errors:
        raise BillingValidationError(errors)


# Operator form keys accepted for each stored representative field.
FORM_ALIASES: Dict[str, List[str]] = {
    "telegram_id": ["telegramId"],
    "telegram_username": ["telegramUsername"],
    "store_name": ["storeName"],
    "unlimited_monthly_price": ["unlimitedMonthlyPrice"],
    "price_per_gb": ["pricePerGb"],
    "discount_percent": ["discountPercent"],
    "plan_type": ["planType"],
    "plan_months": ["planMonths"],
    "parent_id": ["parentId", "parent_rep_id", "parentRepId"],
    **{f"price_{m}_month": [f"price{m}Month"] for m in PLAN_DURATIONS},
}

DECIMAL_FORM_FIELDS = ("unlimited_monthly_price", "price_per_gb", "discount_percent") + tuple(
    f"price_{m}_month" for m in PLAN_DURATIONS
)
WHOLE_NUMBER_FORM_FIELDS = ("plan_months", "parent_id")


def canonical_form(values: Dict[str, Any]) -> Dict[str, Any]:
    """Rename camelCase/alias form keys to stored field names; a canonical key wins over its aliases."""
    renamed: Dict[str, Any] = {}
    for name, value in values.items():
        target = next((field_name for field_name, aliases in FORM_ALIASES.items() if name in aliases), name)
        if target != name and target in values:
            continue
        renamed[target] = value
    return renamed


def check_numeric_fields(values: Dict[str, Any]) -> None:
    """Reject form values that were filled in but do not parse as numbers."""
    form = canonical_form(values)
    errors: Dict[str, str] = {}
    for name in DECIMAL_FORM_FIELDS + WHOLE_NUMBER_FORM_FIELDS:
        raw = form.get(name)
        if is_missing(raw) or key(raw) == "":
            continue
        parsed = parse_decimal(raw)
        if parsed is None:
            errors[name] = f"expected a number, got {raw!r}"
        elif name in WHOLE_NUMBER_FORM_FIELDS and parsed != parsed.to_integral_value():
            errors[name] = f"expected a whole number, got {raw!r}"
    if errors:
        raise BillingValidationError(errors)


def check_referral_chain(rep_id: int, parent_id: Optional[int], parents: Dict[int, Optional[int]]) -> None:
    """Refuse a parent link that would close a cycle in the referral forest.

    ``parents`` maps every existing representative id to its parent id. The walk
    is bounded by the number of representatives so corrupt data cannot loop.
    """
    if parent_id is None:
        return
    if parent_id not in parents:
        raise BillingValidationError({"parent_id": f"parent representative {parent_id} does not exist"})
    current: Optional[int] = parent_id
    for _ in range(len(parents) + 1):
        if current is None:
            return
        if current == rep_id:
            raise BillingValidationError({"parent_id": "referral chain would form a cycle"})
        current = parents.get(current)
    raise BillingValidationError({"parent_id": "referral chain would form a cycle"})


def validate_payment(payment: Payment) -> None:
    errors: Dict[str, str] = {}
    if payment.amount <= 0:
        errors["amount"] = "payment amount must be greater than zero"
    if payment.payment_method not in PAYMENT_METHODS:
        errors["payment_method"] = f"payment method must be one of {list(PAYMENT_METHODS)}"
    if errors:
        raise BillingValidationError(errors)


def check_status_transition(current: str, requested: str) -> None:
    if requested not in INVOICE_STATUSES:
        raise BillingValidationError({"status": f"unknown invoice status '{requested}'"})
    if requested not in INVOICE_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatusTransition(current, requested)
