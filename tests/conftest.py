from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_models import Invoice, Payment, Representative
from billing_settings import BillingSettings
from billing_store import BillingStore


@pytest.fixture
def settings():
    return BillingSettings()


@pytest.fixture
def store(tmp_path):
    return BillingStore(tmp_path / "data")


@pytest.fixture
def tiered_rep():
    return Representative(id=1, username="u1", name="Reza", duration_prices={1: Decimal("50000")})


@pytest.fixture
def legacy_rep():
    return Representative(
        id=2,
        username="u2",
        name="Sara",
        price_per_gb=Decimal("1000"),
        discount_percent=Decimal("10"),
    )


@pytest.fixture
def march_2025():
    return datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)


def make_invoice(invoice_id, rep_id, final, status="pending", month="2025-03", created_at=None):
    created_at = created_at or datetime(2025, 3, 1, tzinfo=timezone.utc)
    return Invoice(
        id=invoice_id,
        representative_id=rep_id,
        invoice_number=f"INV-{rep_id}-{invoice_id}",
        month=month,
        total_amount=Decimal(final),
        discount_amount=Decimal("0"),
        final_amount=Decimal(final),
        due_date=created_at,
        status=status,
        created_at=created_at,
    )


def make_payment(payment_id, rep_id, amount, invoice_id=None, paid_at=None):
    return Payment(
        id=payment_id,
        representative_id=rep_id,
        amount=Decimal(amount),
        payment_date=paid_at or datetime(2025, 3, 10, tzinfo=timezone.utc),
        invoice_id=invoice_id,
    )
