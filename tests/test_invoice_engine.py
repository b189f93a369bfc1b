from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
import re
import threading

from openpyxl import load_workbook
import pytest

from billing_models import BillingError, InvoiceConflictError, StorageError, UsageRecord
from billing_settings import BillingSettings
from invoice_engine import (
    aggregate_usage,
    calculate_invoice_drafts,
    commit_invoice_drafts,
    generate_invoice_number,
    run_invoice_generation,
    select_drafts,
)

LOGGER = logging.getLogger("test_invoice_engine")


def usage(username, gb, month="2025-03"):
    return UsageRecord(admin_username=username, data_usage_gb=Decimal(gb), month=month)


def seed_representatives(store):
    u1 = store.create_representative({"username": "u1", "name": "Reza", "price1Month": "50000"})
    u2 = store.create_representative(
        {"username": "u2", "name": "Sara", "price_per_gb": "1000", "discount_percent": "10"}
    )
    return u1, u2


def test_aggregate_usage_sums_per_user_for_month():
    totals = aggregate_usage(
        [usage("u1", "2.0"), usage("u2", "1"), usage("u1", "3.0"), usage("u1", "9", month="2025-02")],
        "2025-03",
    )
    assert list(totals.items()) == [("u1", Decimal("5.000")), ("u2", Decimal("1.000"))]


def test_calculate_drafts_end_to_end(store, settings):
    seed_representatives(store)
    records = [usage("u1", "2.0"), usage("u1", "3.0"), usage("u2", "100")]
    result = calculate_invoice_drafts(records, "2025-03", store.representative_directory(), settings)

    by_user = {d.username: d for d in result.drafts}
    assert by_user["u1"].total_amount == Decimal("250000.00")
    assert by_user["u1"].discount_amount == Decimal("0.00")
    assert by_user["u1"].final_amount == Decimal("250000.00")
    assert by_user["u1"].data_usage_gb == Decimal("5.000")
    assert by_user["u1"].items[0].description == "مصرف داده VPN - 2025-03"
    assert by_user["u2"].final_amount == Decimal("90000.00")
    assert result.diagnostics == []


def test_unmatched_and_unpriced_users_do_not_abort_batch(store, settings):
    seed_representatives(store)
    store.create_representative({"username": "u9", "name": "Nima"})
    records = [usage("ghost", "4"), usage("u9", "1"), usage("u1", "1")]
    result = calculate_invoice_drafts(records, "2025-03", store.representative_directory(), settings)

    assert [d.username for d in result.drafts] == ["u1"]
    assert result.unmatched == ["ghost"]
    kinds = [(d.kind, d.subject) for d in result.diagnostics]
    assert kinds == [("lookup", "ghost"), ("pricing", "u9")]
    assert result.diagnostics[0].message == "representative not found for username ghost"


def test_zero_usage_produces_no_draft(store, settings):
    seed_representatives(store)
    result = calculate_invoice_drafts([usage("u1", "0")], "2025-03", store.representative_directory(), settings)
    assert result.drafts == []
    assert result.diagnostics == []


def test_select_drafts(store, settings):
    _, u2 = seed_representatives(store)
    result = calculate_invoice_drafts(
        [usage("u1", "1"), usage("u2", "1")], "2025-03", store.representative_directory(), settings
    )
    assert len(select_drafts(result.drafts, None)) == 2
    assert [d.representative_id for d in select_drafts(result.drafts, {u2.id})] == [u2.id]
    assert select_drafts(result.drafts, set()) == []


def test_commit_rejects_second_invoice_for_same_month(store, settings):
    seed_representatives(store)
    drafts = calculate_invoice_drafts(
        [usage("u1", "1")], "2025-03", store.representative_directory(), settings
    ).drafts
    now = datetime(2025, 4, 1, tzinfo=timezone.utc)

    first = commit_invoice_drafts(drafts, store, settings, LOGGER, now=now)
    second = commit_invoice_drafts(drafts, store, settings, LOGGER, now=now)

    assert len(first.created) == 1
    assert first.created[0].due_date == now + timedelta(days=30)
    assert first.created[0].status == "pending"
    assert second.created == []
    assert [d.kind for d in second.diagnostics] == ["conflict"]
    assert len(store.list_invoices()) == 1


def test_cancelled_invoice_frees_the_month(store, settings):
    seed_representatives(store)
    drafts = calculate_invoice_drafts(
        [usage("u1", "1")], "2025-03", store.representative_directory(), settings
    ).drafts
    first = commit_invoice_drafts(drafts, store, settings, LOGGER).created[0]
    store.update_invoice_status(first.id, "cancelled")

    again = commit_invoice_drafts(drafts, store, settings, LOGGER)
    assert len(again.created) == 1
    assert [inv.status for inv in store.list_invoices()] == ["cancelled", "pending"]


def test_store_serializes_concurrent_creation(store, settings):
    seed_representatives(store)
    draft = calculate_invoice_drafts(
        [usage("u1", "1")], "2025-03", store.representative_directory(), settings
    ).drafts[0]
    outcomes = []

    def create(n):
        try:
            store.create_invoice(draft, f"INV-T-{n}", datetime(2025, 5, 1, tzinfo=timezone.utc))
            outcomes.append("created")
        except InvoiceConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=create, args=(n,)) for n in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict"] * 4 + ["created"]
    assert len(store.list_invoices(month="2025-03")) == 1


def test_storage_failure_is_reported_per_invoice(store, settings, monkeypatch):
    seed_representatives(store)
    drafts = calculate_invoice_drafts(
        [usage("u1", "1"), usage("u2", "1")], "2025-03", store.representative_directory(), settings
    ).drafts
    real_create = store.create_invoice

    def flaky_create(draft, number, due_date):
        if draft.username == "u1":
            raise StorageError("invoices.json", "disk full")
        return real_create(draft, number, due_date)

    monkeypatch.setattr(store, "create_invoice", flaky_create)
    result = commit_invoice_drafts(drafts, store, settings, LOGGER)

    assert [inv.representative_id for inv in result.created] == [drafts[1].representative_id]
    assert [(d.kind, d.subject) for d in result.diagnostics] == [("storage", "u1 (1)")]


def test_abort_keeps_earlier_invoices(store, settings):
    seed_representatives(store)
    drafts = calculate_invoice_drafts(
        [usage("u1", "1"), usage("u2", "1")], "2025-03", store.representative_directory(), settings
    ).drafts
    calls = []

    def should_abort():
        calls.append(1)
        return len(calls) > 1

    result = commit_invoice_drafts(drafts, store, settings, LOGGER, should_abort=should_abort)
    assert result.aborted is True
    assert len(result.created) == 1
    assert len(store.list_invoices()) == 1


def test_invoice_number_format():
    number = generate_invoice_number(12, "1404/03", "RS", datetime(2025, 3, 1, tzinfo=timezone.utc))
    assert re.fullmatch(r"RS-12-140403-\d{6}[0-9A-F]{4}", number)


def test_run_invoice_generation_writes_workbook(tmp_path, store):
    seed_representatives(store)
    store.add_usage_records([usage("u1", "2.0"), usage("u1", "3.0"), usage("ghost", "1")])
    settings = BillingSettings(invoice_prefix="VPN", due_days=10)

    report = run_invoice_generation("2025-03", store, settings, LOGGER, outputs_dir=tmp_path)

    assert [inv.final_amount for inv in report["created"]] == [Decimal("250000.00")]
    assert report["created"][0].invoice_number.startswith("VPN-1-202503-")
    assert report["unmatched"] == ["ghost"]

    workbook = load_workbook(report["workbook"])
    assert workbook.sheetnames == ["Invoices", "Diagnostics"]
    invoices = list(workbook["Invoices"].iter_rows(values_only=True))
    assert invoices[0][0] == "representative_id"
    assert invoices[1][2] == "u1"
    assert invoices[1][11] == 250000
    diagnostics = list(workbook["Diagnostics"].iter_rows(values_only=True))
    assert diagnostics[1][:2] == ("lookup", "ghost")


def test_dry_run_persists_nothing(store, settings):
    seed_representatives(store)
    store.add_usage_records([usage("u1", "1")])
    report = run_invoice_generation("2025-03", store, settings, LOGGER, dry_run=True)
    assert len(report["drafts"]) == 1
    assert report["created"] == []
    assert store.list_invoices() == []


def test_generation_requires_usage_and_a_matching_selection(store, settings):
    seed_representatives(store)
    with pytest.raises(BillingError, match="No usage records"):
        run_invoice_generation("2025-03", store, settings, LOGGER)
    store.add_usage_records([usage("u1", "1")])
    with pytest.raises(BillingError, match="selected"):
        run_invoice_generation("2025-03", store, settings, LOGGER, selection={999})
