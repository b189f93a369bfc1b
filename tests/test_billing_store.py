from datetime import datetime, timezone
from decimal import Decimal
import multiprocessing

import pytest

from billing_models import (
    BillingValidationError,
    InvalidStatusTransition,
    InvoiceConflictError,
    InvoiceDraft,
    Payment,
    RecordNotFoundError,
    Representative,
    StorageError,
    check_referral_chain,
    check_status_transition,
    validate_payment,
    validate_representative,
)
from billing_store import BillingStore

DUE = datetime(2025, 4, 30, tzinfo=timezone.utc)


def draft_for(rep, month="2025-03", amount="1000"):
    value = Decimal(amount)
    return InvoiceDraft(
        representative_id=rep.id,
        representative_name=rep.name,
        username=rep.username,
        month=month,
        data_usage_gb=Decimal("1.000"),
        plan_type="limited",
        unit_price=value,
        discount_percent=Decimal("0"),
        total_amount=value,
        discount_amount=Decimal("0"),
        final_amount=value,
        items=[],
    )


def test_representative_validation_collects_every_field():
    rep = Representative(
        id=1,
        username="",
        name="",
        phone="12345",
        telegram_username="ab",
        email="not-an-email",
        discount_percent=Decimal("120"),
        duration_prices={7: Decimal("10"), 2: Decimal("-1")},
        plan_type="weekly",
        plan_months=9,
        status="gone",
        parent_id=1,
    )
    with pytest.raises(BillingValidationError) as excinfo:
        validate_representative(rep)
    assert set(excinfo.value.errors) == {
        "username",
        "name",
        "phone",
        "telegram_username",
        "email",
        "discount_percent",
        "price_7_month",
        "price_2_month",
        "plan_type",
        "plan_months",
        "status",
        "parent_id",
    }


def test_persian_digit_phone_is_accepted():
    validate_representative(Representative(id=1, username="u1", name="Reza", phone="۰۹۱۲۱۲۳۴۵۶۷"))


def test_referral_cycles_are_refused():
    parents = {1: None, 2: 1, 3: 2}
    check_referral_chain(4, 3, parents)
    with pytest.raises(BillingValidationError, match="cycle"):
        check_referral_chain(1, 3, parents)
    with pytest.raises(BillingValidationError, match="does not exist"):
        check_referral_chain(4, 99, parents)


def test_status_machine():
    check_status_transition("pending", "sent")
    check_status_transition("sent", "overdue")
    check_status_transition("overdue", "paid")
    for current, requested in [("pending", "paid"), ("paid", "cancelled"), ("cancelled", "pending")]:
        with pytest.raises(InvalidStatusTransition):
            check_status_transition(current, requested)
    with pytest.raises(BillingValidationError, match="unknown"):
        check_status_transition("pending", "archived")


def test_payment_validation():
    good = Payment(id=1, representative_id=1, amount=Decimal("1"), payment_date=DUE)
    validate_payment(good)
    with pytest.raises(BillingValidationError) as excinfo:
        validate_payment(Payment(id=1, representative_id=1, amount=Decimal("0"), payment_date=DUE, payment_method="gold"))
    assert set(excinfo.value.errors) == {"amount", "payment_method"}


def test_representative_records_survive_reload(store):
    rep = store.create_representative(
        {
            "username": "u1",
            "name": "رضا",
            "price1Month": "50,000",
            "price_3_month": "۴۵۰۰۰",
            "unlimitedMonthlyPrice": "200000",
            "discountPercent": "5",
        }
    )
    loaded = store.get_representative(rep.id)
    assert loaded.name == "رضا"
    assert loaded.duration_prices == {1: Decimal("50000.00"), 3: Decimal("45000.00")}
    assert loaded.unlimited_monthly_price == Decimal("200000.00")
    assert loaded.discount_percent == Decimal("5")
    assert store.representative_directory()["u1"].id == rep.id


def test_non_numeric_prices_are_rejected(store):
    with pytest.raises(BillingValidationError) as excinfo:
        store.create_representative({"username": "u1", "name": "Reza", "price2Month": "cheap", "discountPercent": "x"})
    assert set(excinfo.value.errors) == {"price_2_month", "discount_percent"}
    assert store.list_representatives() == []

    rep = store.create_representative({"username": "u1", "name": "Reza", "price_per_gb": ""})
    with pytest.raises(BillingValidationError):
        store.update_representative(rep.id, {"price_per_gb": "n/a"})


def test_usernames_are_unique_and_frozen_once_invoiced(store):
    rep = store.create_representative({"username": "u1", "name": "Reza"})
    with pytest.raises(BillingValidationError, match="already taken"):
        store.create_representative({"username": "u1", "name": "Other"})

    store.update_representative(rep.id, {"username": "u1b"})
    store.create_invoice(draft_for(store.get_representative(rep.id)), "INV-1", DUE)
    with pytest.raises(BillingValidationError, match="cannot change"):
        store.update_representative(rep.id, {"username": "u1c"})
    assert store.update_representative(rep.id, {"name": "Reza K"}).name == "Reza K"


def test_update_refuses_referral_cycle(store):
    a = store.create_representative({"username": "a", "name": "A"})
    b = store.create_representative({"username": "b", "name": "B", "parent_id": a.id})
    with pytest.raises(BillingValidationError, match="cycle"):
        store.update_representative(a.id, {"parent_id": b.id})


def test_delete_representative_rules(store):
    parent = store.create_representative({"username": "p", "name": "P"})
    child = store.create_representative({"username": "c", "name": "C", "parent_id": parent.id})
    billed = store.create_representative({"username": "b", "name": "B"})
    store.create_invoice(draft_for(billed), "INV-B", DUE)

    with pytest.raises(BillingValidationError):
        store.delete_representative(parent.id)
    with pytest.raises(BillingValidationError):
        store.delete_representative(billed.id)
    store.delete_representative(child.id)
    store.delete_representative(parent.id)
    with pytest.raises(RecordNotFoundError):
        store.get_representative(parent.id)


def test_invoice_status_updates_and_sent_stamp(store):
    rep = store.create_representative({"username": "u1", "name": "Reza"})
    invoice = store.create_invoice(draft_for(rep), "INV-1", DUE)
    sent_at = datetime(2025, 4, 2, tzinfo=timezone.utc)

    sent = store.update_invoice_status(invoice.id, "sent", at=sent_at)
    assert sent.sent_at == sent_at
    assert store.get_invoice(invoice.id).status == "sent"
    with pytest.raises(InvalidStatusTransition):
        store.update_invoice_status(invoice.id, "pending")
    with pytest.raises(RecordNotFoundError):
        store.update_invoice_status(999, "sent")


def test_payments_are_checked_and_appended(store, caplog):
    rep = store.create_representative({"username": "u1", "name": "Reza"})
    other = store.create_representative({"username": "u2", "name": "Sara"})
    invoice = store.create_invoice(draft_for(rep), "INV-1", DUE)

    payment = store.add_payment(
        {"representative_id": rep.id, "invoice_id": invoice.id, "amount": "۱٬۰۰۰", "reference_number": "R1"}
    )
    assert payment.amount == Decimal("1000.00")
    assert payment.payment_method == "cash"

    store.add_payment({"representative_id": rep.id, "amount": "5", "reference_number": "R1"})
    assert "R1" in caplog.text

    with pytest.raises(BillingValidationError, match="another representative"):
        store.add_payment({"representative_id": other.id, "invoice_id": invoice.id, "amount": "10"})
    with pytest.raises(BillingValidationError):
        store.add_payment({"representative_id": rep.id, "amount": "0"})
    with pytest.raises(RecordNotFoundError):
        store.add_payment({"representative_id": 42, "amount": "10"})

    assert [p.id for p in store.list_payments(representative_id=rep.id)] == [1, 2]


def test_corrupt_collection_is_a_storage_error(store):
    store.data_dir.mkdir(parents=True, exist_ok=True)
    (store.data_dir / "invoices.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        store.list_invoices()


def _create_invoices_in_process(data_dir, worker, count):
    store = BillingStore(data_dir)
    rep = Representative(id=worker, username=f"w{worker}", name=f"Worker {worker}")
    for n in range(count):
        store.create_invoice(draft_for(rep, month=f"{2020 + n // 12}-{n % 12 + 1:02d}"), f"INV-{worker}-{n}", DUE)
    try:
        store.create_invoice(draft_for(Representative(id=99, username="shared", name="S")), f"INV-S-{worker}", DUE)
    except InvoiceConflictError:
        pass


def test_separate_processes_never_lose_invoices(tmp_path):
    data_dir = tmp_path / "data"
    context = multiprocessing.get_context("fork")
    workers = [context.Process(target=_create_invoices_in_process, args=(data_dir, w, 20)) for w in (1, 2)]
    for process in workers:
        process.start()
    for process in workers:
        process.join(timeout=120)
    assert [process.exitcode for process in workers] == [0, 0]

    invoices = BillingStore(data_dir).list_invoices()
    assert len(invoices) == 41
    assert len({inv.id for inv in invoices}) == 41
    assert len([inv for inv in invoices if inv.representative_id == 99]) == 1
    assert not list(data_dir.glob("*.tmp"))


def test_camel_case_update_applies_every_field(store):
    rep = store.create_representative({"username": "u1", "name": "Reza", "price_per_gb": "1000"})

    updated = store.update_representative(rep.id, {"pricePerGb": "2000", "discountPercent": "5", "planMonths": "2"})

    assert updated.price_per_gb == Decimal("2000.00")
    assert updated.discount_percent == Decimal("5")
    assert updated.plan_months == 2
    assert store.get_representative(rep.id).price_per_gb == Decimal("2000.00")


def test_duration_tier_can_be_replaced_or_removed(store):
    rep = store.create_representative(
        {"username": "u1", "name": "Reza", "price_1_month": "50000", "price_2_month": "45000", "price_per_gb": "900"}
    )

    store.update_representative(rep.id, {"price2Month": "44000"})
    assert store.get_representative(rep.id).duration_prices == {1: Decimal("50000.00"), 2: Decimal("44000.00")}

    store.update_representative(rep.id, {"price_1_month": None, "price2Month": ""})
    cleared = store.get_representative(rep.id)
    assert cleared.duration_prices == {}
    assert cleared.price_per_gb == Decimal("900.00")


def test_whole_number_fields_and_payment_amount_are_checked(store):
    with pytest.raises(BillingValidationError) as excinfo:
        store.create_representative({"username": "u1", "name": "Reza", "planMonths": "two", "parent_id": "x"})
    assert set(excinfo.value.errors) == {"plan_months", "parent_id"}
    with pytest.raises(BillingValidationError) as excinfo:
        store.create_representative({"username": "u1", "name": "Reza", "plan_months": "1.5"})
    assert "whole number" in excinfo.value.errors["plan_months"]

    rep = store.create_representative({"username": "u1", "name": "Reza"})
    with pytest.raises(BillingValidationError) as excinfo:
        store.add_payment({"representative_id": rep.id, "amount": "ten"})
    assert excinfo.value.errors == {"amount": "expected a number, got 'ten'"}
    assert store.list_payments() == []


def test_invoice_keeps_billed_usage(store):
    rep = store.create_representative({"username": "u1", "name": "Reza"})
    invoice = store.create_invoice(draft_for(rep), "INV-1", DUE)
    assert store.get_invoice(invoice.id).data_usage_gb == Decimal("1.000")
