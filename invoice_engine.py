#!/usr/bin/env python3
"""Build monthly representative invoices from imported usage records.

1. Load accepted usage records for the billing month and sum them per admin username.
2. Match each username to a representative; unmatched usernames are reported, not billed.
3. Price the aggregate (unlimited, duration tier or legacy per-GB) and apply the discount.
4. Persist the operator's selection of drafts one invoice at a time. An existing
   active invoice for the same representative and month is a conflict.
5. Write:
   - ./outputs/invoices/{month}_Invoice_Batch.xlsx (Invoices + Diagnostics tabs)
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

import pandas as pd

from billing_models import (
    BillingError,
    Diagnostic,
    InvoiceConflictError,
    Invoice,
    InvoiceDraft,
    InvoiceItem,
    Representative,
    StorageError,
    UsageRecord,
    key,
    now_utc,
    round_usage,
)
from billing_settings import DEFAULT_DATA_DIR, DEFAULT_SETTINGS_FILE, BillingSettings, load_settings
from billing_store import BillingStore
from pricing import resolve_price

DEFAULT_OUTPUTS_DIR = Path("outputs") / "invoices"

USAGE_ITEM_DESCRIPTION = "مصرف داده VPN - {month}"
UNLIMITED_ITEM_DESCRIPTION = "اشتراک نامحدود - {months} ماه"

INVOICE_COLUMNS = [
    "representative_id",
    "representative_name",
    "username",
    "month",
    "invoice_number",
    "data_usage_gb",
    "plan_type",
    "unit_price",
    "discount_percent",
    "total_amount",
    "discount_amount",
    "final_amount",
    "due_date",
    "status",
]
FINANCIAL_COLUMNS = ["unit_price", "total_amount", "discount_amount", "final_amount"]


@dataclass
class CalculationResult:
    month: str
    drafts: List[InvoiceDraft] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


@dataclass
class CommitResult:
    created: List[Invoice] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    aborted: bool = False


def aggregate_usage(records: Iterable[UsageRecord], month: str) -> "OrderedDict[str, Decimal]":
    """Sum GB per admin username for one month, keeping first-seen order."""
    totals: "OrderedDict[str, Decimal]" = OrderedDict()
    for record in records:
        if record.month != month:
            continue
        totals[record.admin_username] = totals.get(record.admin_username, Decimal("0")) + record.data_usage_gb
    return OrderedDict((username, round_usage(total)) for username, total in totals.items())


def build_invoice_draft(rep: Representative, usage_gb: Decimal, month: str, settings: BillingSettings) -> InvoiceDraft:
    quote = resolve_price(rep, usage_gb, settings)
    if quote.plan_type == "unlimited":
        description = UNLIMITED_ITEM_DESCRIPTION.format(months=quote.plan_months)
    else:
        description = USAGE_ITEM_DESCRIPTION.format(month=month)
    item = InvoiceItem(
        description=description,
        quantity=quote.quantity,
        unit_price=quote.unit_price,
        total_price=quote.total_amount,
    )
    return InvoiceDraft(
        representative_id=rep.id,
        representative_name=rep.name,
        username=rep.username,
        month=month,
        data_usage_gb=usage_gb,
        plan_type=quote.plan_type,
        unit_price=quote.unit_price,
        discount_percent=quote.discount_percent,
        total_amount=quote.total_amount,
        discount_amount=quote.discount_amount,
        final_amount=quote.final_amount,
        items=[item],
    )


def calculate_invoice_drafts(
    records: Iterable[UsageRecord],
    month: str,
    directory: Dict[str, Representative],
    settings: BillingSettings,
) -> CalculationResult:
    """One draft per matched representative with nonzero usage; failures never abort the batch."""
    result = CalculationResult(month=month)
    for username, usage_gb in aggregate_usage(records, month).items():
        if usage_gb <= 0:
            continue
        rep = directory.get(username)
        if rep is None:
            result.unmatched.append(username)
            result.diagnostics.append(
                Diagnostic("lookup", username, f"representative not found for username {username}")
            )
            continue
        try:
            result.drafts.append(build_invoice_draft(rep, usage_gb, month, settings))
        except BillingError as exc:
            result.diagnostics.append(Diagnostic("pricing", username, str(exc)))
    return result


def generate_invoice_number(representative_id: int, month: str, prefix: str = "INV", now: Optional[datetime] = None) -> str:
    """PREFIX-{rep}-{month digits}-{ms suffix}{random}; unique without a store lookup."""
    now = now or datetime.now()
    month_token = re.sub(r"[^0-9A-Za-z]", "", month)
    millis = int(now.timestamp() * 1000) % 1_000_000
    return f"{prefix}-{representative_id}-{month_token}-{millis:06d}{uuid4().hex[:4].upper()}"


def select_drafts(drafts: List[InvoiceDraft], selection: Optional[Set[int]]) -> List[InvoiceDraft]:
    """``None`` means generate all; otherwise keep drafts for the selected representative ids."""
    if selection is None:
        return list(drafts)
    return [draft for draft in drafts if draft.representative_id in selection]


def commit_invoice_drafts(
    drafts: List[InvoiceDraft],
    store: BillingStore,
    settings: BillingSettings,
    logger: logging.Logger,
    now: Optional[datetime] = None,
    should_abort: Optional[Callable[[], bool]] = None,
) -> CommitResult:
    """Write each draft on its own; earlier writes stay committed if a later one fails or the run is aborted."""
    result = CommitResult()
    created_at = now or now_utc()
    due_date = created_at + timedelta(days=settings.due_days)
    for draft in drafts:
        if should_abort is not None and should_abort():
            result.aborted = True
            logger.warning("Invoice generation aborted after %d invoices", len(result.created))
            break
        subject = f"{draft.username} ({draft.representative_id})"
        existing = store.find_active_invoice(draft.representative_id, draft.month)
        if existing is not None:
            message = f"invoice {existing.invoice_number} already exists for month {draft.month}"
            logger.warning("Conflict for %s: %s", subject, message)
            result.diagnostics.append(Diagnostic("conflict", subject, message))
            continue
        number = generate_invoice_number(draft.representative_id, draft.month, settings.invoice_prefix, created_at)
        try:
            invoice = store.create_invoice(draft, number, due_date)
        except InvoiceConflictError as exc:
            logger.warning("Conflict for %s: %s", subject, exc)
            result.diagnostics.append(Diagnostic("conflict", subject, str(exc)))
            continue
        except StorageError as exc:
            logger.error("Failed to save invoice for %s: %s", subject, exc)
            result.diagnostics.append(Diagnostic("storage", subject, str(exc)))
            continue
        result.created.append(invoice)
        logger.info("Created invoice %s for %s: %s", invoice.invoice_number, subject, invoice.final_amount)
    return result


def _draft_rows(drafts: List[InvoiceDraft], created: List[Invoice]) -> List[Dict[str, Any]]:
    by_rep = {(inv.representative_id, inv.month): inv for inv in created}
    rows: List[Dict[str, Any]] = []
    for draft in drafts:
        invoice = by_rep.get((draft.representative_id, draft.month))
        rows.append(
            {
                "representative_id": draft.representative_id,
                "representative_name": draft.representative_name,
                "username": draft.username,
                "month": draft.month,
                "invoice_number": invoice.invoice_number if invoice else "",
                "data_usage_gb": float(draft.data_usage_gb),
                "plan_type": draft.plan_type,
                "unit_price": float(draft.unit_price),
                "discount_percent": float(draft.discount_percent),
                "total_amount": float(draft.total_amount),
                "discount_amount": float(draft.discount_amount),
                "final_amount": float(draft.final_amount),
                "due_date": invoice.due_date.date().isoformat() if invoice else "",
                "status": invoice.status if invoice else "draft",
            }
        )
    return rows


def export_invoice_workbook(
    drafts: List[InvoiceDraft],
    created: List[Invoice],
    diagnostics: List[Diagnostic],
    output_path: Path,
) -> Path:
    """Write the batch review workbook: one row per draft plus every diagnostic."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    invoices_df = pd.DataFrame(_draft_rows(drafts, created), columns=INVOICE_COLUMNS)
    diagnostics_df = pd.DataFrame(
        [d.to_record() for d in diagnostics],
        columns=["kind", "subject", "message"],
    )

    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        invoices_df.to_excel(writer, index=False, sheet_name="Invoices")
        diagnostics_df.to_excel(writer, index=False, sheet_name="Diagnostics")

        workbook = writer.book
        fmt_money = workbook.add_format({"num_format": "#,##0"})
        fmt_usage = workbook.add_format({"num_format": "0.000"})
        worksheet = writer.sheets["Invoices"]
        worksheet.right_to_left()
        for col_idx, col_name in enumerate(invoices_df.columns):
            col_fmt = None
            if col_name in FINANCIAL_COLUMNS:
                col_fmt = fmt_money
            elif col_name == "data_usage_gb":
                col_fmt = fmt_usage
            worksheet.set_column(col_idx, col_idx, 18, col_fmt)
        writer.sheets["Diagnostics"].set_column(0, 2, 40)
    return output_path


def run_invoice_generation(
    month: str,
    store: BillingStore,
    settings: BillingSettings,
    logger: logging.Logger,
    selection: Optional[Set[int]] = None,
    outputs_dir: Optional[Path] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Main workflow execution for one billing month."""
    month = key(month)
    if not month:
        raise BillingError("A billing month is required.")

    records = store.list_usage_records(month=month)
    if not records:
        raise BillingError(f"No usage records imported for month {month}")
    logger.info("Loaded %d usage records for %s", len(records), month)

    calculation = calculate_invoice_drafts(records, month, store.representative_directory(), settings)
    for username in calculation.unmatched:
        logger.warning("Representative not found for username: %s", username)
    logger.info("Prepared %d invoice drafts", len(calculation.drafts))

    chosen = select_drafts(calculation.drafts, selection)
    if selection is not None and not chosen:
        raise BillingError("None of the selected representatives has an invoice draft for this month.")

    commit = CommitResult()
    if not dry_run:
        commit = commit_invoice_drafts(chosen, store, settings, logger)

    diagnostics = calculation.diagnostics + commit.diagnostics
    workbook_path = None
    if outputs_dir is not None:
        safe_month = re.sub(r"[^0-9A-Za-z]", "", month) or "month"
        workbook_path = export_invoice_workbook(
            chosen, commit.created, diagnostics, outputs_dir / f"{safe_month}_Invoice_Batch.xlsx"
        )
        logger.info("Wrote invoice batch workbook: %s", workbook_path)

    return {
        "month": month,
        "drafts": chosen,
        "created": commit.created,
        "unmatched": calculation.unmatched,
        "diagnostics": diagnostics,
        "aborted": commit.aborted,
        "workbook": workbook_path,
    }


def _parse_assignments(pairs: List[str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected field=value, got: {pair}")
        name, value = pair.split("=", 1)
        values[name.strip()] = value.strip() or None
    return values


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate VPN representative invoices and record ledger entries.")
    parser.add_argument(
        "--data-dir",
        default=str(DEFAULT_DATA_DIR),
        help="Billing data directory (or set VPN_BILLING_DATA_DIR).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # generate
    gen = subparsers.add_parser("generate", help="Generate invoices for a billing month")
    gen.add_argument("--month", required=True, help="Billing month exactly as imported (e.g. 2025-03 or 1404/03).")
    gen.add_argument(
        "--representative",
        type=int,
        action="append",
        dest="representatives",
        metavar="ID",
        help="Only write invoices for this representative id (repeatable). Default: all.",
    )
    gen.add_argument("--dry-run", action="store_true", help="Calculate and export drafts without saving invoices.")
    gen.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Directory for the invoice batch workbook.",
    )

    # status
    status = subparsers.add_parser("status", help="Move an invoice to a new workflow status")
    status.add_argument("--invoice-id", type=int, required=True)
    status.add_argument("--status", required=True, choices=["sent", "paid", "overdue", "cancelled"])

    # pay
    pay = subparsers.add_parser("pay", help="Record a payment received from a representative")
    pay.add_argument("--representative-id", type=int, required=True)
    pay.add_argument("--amount", required=True)
    pay.add_argument("--method", default="cash")
    pay.add_argument("--invoice-id", type=int, default=None)
    pay.add_argument("--reference", default=None, help="Bank or receipt reference number.")
    pay.add_argument("--description", default=None)
    pay.add_argument("--date", default=None, help="Payment date (ISO format). Default: now.")

    # representative
    rep = subparsers.add_parser("representative", help="Create or edit a representative")
    rep.add_argument("--id", type=int, default=None, help="Edit this representative instead of creating one.")
    rep.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="FIELD=VALUE",
        help="Field assignment, e.g. --set username=u1 --set price_1_month=50000 (repeatable).",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger = logging.getLogger("invoice_engine")

    data_dir = Path(args.data_dir).resolve()
    try:
        settings = load_settings(data_dir / DEFAULT_SETTINGS_FILE)
        store = BillingStore(data_dir)
        if args.command == "generate":
            report = run_invoice_generation(
                month=args.month,
                store=store,
                settings=settings,
                logger=logger,
                selection=set(args.representatives) if args.representatives else None,
                outputs_dir=Path(args.outputs_dir).resolve(),
                dry_run=args.dry_run,
            )
            logger.info(
                "Created %d invoices, %d diagnostics",
                len(report["created"]),
                len(report["diagnostics"]),
            )
        elif args.command == "status":
            store.update_invoice_status(args.invoice_id, args.status)
        elif args.command == "pay":
            payment = store.add_payment(
                {
                    "representative_id": args.representative_id,
                    "invoice_id": args.invoice_id,
                    "amount": args.amount,
                    "payment_method": args.method,
                    "reference_number": args.reference,
                    "description": args.description,
                    "payment_date": args.date,
                }
            )
            logger.info("Recorded payment %s of %s", payment.id, payment.amount)
        elif args.command == "representative":
            values = _parse_assignments(args.set)
            if args.id is None:
                created = store.create_representative(values)
                logger.info("Representative id: %s", created.id)
            else:
                store.update_representative(args.id, values)
        else:
            parser.error(f"Unknown command: {args.command}")
    except BillingError as exc:
        logger.error("%s", exc)
        return 2
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Unexpected failure.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
