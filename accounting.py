#!/usr/bin/env python3
"""Representative balances derived from the invoice and payment ledgers.

Nothing here is stored: every figure is recomputed from the invoice and
payment collections on each call, so a balance can never drift from the
entries it summarizes. Invoice workflow status stays under operator control;
when it disagrees with the ledger a warning is reported instead of a fix.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from billing_models import (
    INVOICE_CANCELLED,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PENDING,
    INVOICE_SENT,
    BillingError,
    Invoice,
    Payment,
    Representative,
    now_utc,
)
from billing_settings import DEFAULT_DATA_DIR, DEFAULT_SETTINGS_FILE, BillingSettings, load_settings
from billing_store import BillingStore

DEBTOR = "debtor"
CREDITOR = "creditor"
BALANCED = "balanced"

STATUS_LABELS_FA = {DEBTOR: "بدهکار", CREDITOR: "بستانکار", BALANCED: "متعادل"}
OPEN_STATUSES = (INVOICE_PENDING, INVOICE_SENT, INVOICE_OVERDUE)

DEFAULT_REPORT_DIR = Path("outputs") / "accounting"

ZERO = Decimal("0")


@dataclass(frozen=True)
class AccountSummary:
    representative_id: int
    invoice_count: int
    total_invoiced: Decimal
    total_paid: Decimal
    outstanding: Decimal
    status: str
    last_payment_date: Optional[datetime]
    oldest_unpaid_invoice_date: Optional[datetime]
    is_overdue: bool
    is_settled: bool
    warnings: List[str] = field(default_factory=list)
    name: str = ""
    username: str = ""


def classify(outstanding: Decimal) -> str:
    if outstanding > 0:
        return DEBTOR
    if outstanding < 0:
        return CREDITOR
    return BALANCED


def _as_datetime(value: Optional[datetime]) -> datetime:
    return value if value is not None else now_utc()


def status_warnings(invoices: List[Invoice], payments: List[Payment], outstanding: Decimal) -> List[str]:
    """Disagreements between manual invoice status and what the ledger shows."""
    warnings: List[str] = []
    linked: Dict[int, Decimal] = {}
    for payment in payments:
        if payment.invoice_id is not None:
            linked[payment.invoice_id] = linked.get(payment.invoice_id, ZERO) + payment.amount

    for invoice in invoices:
        if invoice.status == INVOICE_PAID:
            received = linked.get(invoice.id)
            if received is not None and received < invoice.final_amount:
                warnings.append(
                    f"invoice {invoice.invoice_number} is marked paid but only {received} of "
                    f"{invoice.final_amount} was recorded against it"
                )
            elif received is None and outstanding > 0:
                warnings.append(
                    f"invoice {invoice.invoice_number} is marked paid while the representative still owes {outstanding}"
                )
        elif invoice.status in OPEN_STATUSES and outstanding <= 0:
            warnings.append(
                f"invoice {invoice.invoice_number} is still {invoice.status} although payments cover the balance"
            )
    return warnings


def reconcile(
    representative_id: int,
    invoices: Iterable[Invoice],
    payments: Iterable[Payment],
    as_of: Optional[datetime] = None,
    overdue_after_days: int = 30,
) -> AccountSummary:
    """Pure projection of one representative's ledger. Cancelled invoices are void and owe nothing."""
    rep_invoices = [
        inv for inv in invoices if inv.representative_id == representative_id and inv.status != INVOICE_CANCELLED
    ]
    rep_payments = [p for p in payments if p.representative_id == representative_id]

    total_invoiced = sum((inv.final_amount for inv in rep_invoices), ZERO)
    total_paid = sum((p.amount for p in rep_payments), ZERO)
    outstanding = total_invoiced - total_paid

    last_payment = max((p.payment_date for p in rep_payments), default=None)
    oldest_unpaid = min(
        (inv.created_at for inv in rep_invoices if inv.status == INVOICE_PENDING),
        default=None,
    )
    is_overdue = False
    if oldest_unpaid is not None:
        is_overdue = (_as_datetime(as_of) - oldest_unpaid).days > overdue_after_days

    return AccountSummary(
        representative_id=representative_id,
        invoice_count=len(rep_invoices),
        total_invoiced=total_invoiced,
        total_paid=total_paid,
        outstanding=outstanding,
        status=classify(outstanding),
        last_payment_date=last_payment,
        oldest_unpaid_invoice_date=oldest_unpaid,
        is_overdue=is_overdue,
        is_settled=outstanding <= 0,
        warnings=status_warnings(rep_invoices, rep_payments, outstanding),
    )


def summarize_accounts(
    representatives: Iterable[Representative],
    invoices: List[Invoice],
    payments: List[Payment],
    settings: BillingSettings,
    as_of: Optional[datetime] = None,
) -> List[AccountSummary]:
    summaries: List[AccountSummary] = []
    for rep in representatives:
        summary = reconcile(rep.id, invoices, payments, as_of, settings.overdue_after_days)
        summaries.append(replace(summary, name=rep.name, username=rep.username))
    return summaries


def filter_summaries(summaries: List[AccountSummary], status: Optional[str] = None) -> List[AccountSummary]:
    """Status filter as on the accounting screen: all, debtor, creditor, balanced or overdue."""
    if status in (None, "", "all"):
        return list(summaries)
    if status == "overdue":
        return [s for s in summaries if s.is_overdue]
    return [s for s in summaries if s.status == status]


def accounting_totals(summaries: List[AccountSummary]) -> Dict[str, Any]:
    return {
        "total_outstanding": sum((max(ZERO, s.outstanding) for s in summaries), ZERO),
        "total_overpaid": sum((abs(min(ZERO, s.outstanding)) for s in summaries), ZERO),
        "debtor_count": sum(1 for s in summaries if s.status == DEBTOR),
        "creditor_count": sum(1 for s in summaries if s.status == CREDITOR),
        "balanced_count": sum(1 for s in summaries if s.status == BALANCED),
        "overdue_count": sum(1 for s in summaries if s.is_overdue),
    }


def monthly_revenue(invoices: Iterable[Invoice]) -> List[Dict[str, Any]]:
    """Final amounts of paid invoices per billing month, oldest month first."""
    revenue: Dict[str, Decimal] = {}
    for invoice in invoices:
        if invoice.status == INVOICE_PAID:
            revenue[invoice.month] = revenue.get(invoice.month, ZERO) + invoice.final_amount
    return [{"month": month, "revenue": revenue[month]} for month in sorted(revenue)]


def top_representatives(summaries: List[AccountSummary], limit: int = 5) -> List[AccountSummary]:
    ranked = sorted(summaries, key=lambda s: (-s.total_invoiced, s.representative_id))
    return ranked[:limit]


def dashboard_stats(
    representatives: List[Representative],
    invoices: List[Invoice],
    payments: List[Payment],
    settings: BillingSettings,
    month: Optional[str] = None,
) -> Dict[str, Any]:
    """Headline figures for the operator dashboard."""
    if month is None:
        today = date.today()
        month = f"{today.year:04d}-{today.month:02d}"
    summaries = summarize_accounts(representatives, invoices, payments, settings)
    return {
        "total_representatives": sum(1 for rep in representatives if rep.status == "active"),
        "outstanding_balance": accounting_totals(summaries)["total_outstanding"],
        "monthly_revenue": sum(
            (inv.final_amount for inv in invoices if inv.month == month and inv.status == INVOICE_PAID),
            ZERO,
        ),
        "pending_invoices": sum(1 for inv in invoices if inv.status == INVOICE_PENDING),
    }


def _format_date(value: Optional[datetime]) -> str:
    return value.date().isoformat() if value is not None else "ندارد"


def summaries_frame(summaries: List[AccountSummary]) -> pd.DataFrame:
    """Report table with the column headings operators already use."""
    rows = [
        {
            "نام": s.name,
            "نام کاربری": s.username,
            "تعداد فاکتور": s.invoice_count,
            "مجموع صورتحساب": float(s.total_invoiced),
            "مجموع پرداخت": float(s.total_paid),
            "مانده": float(s.outstanding),
            "وضعیت": STATUS_LABELS_FA[s.status],
            "آخرین پرداخت": _format_date(s.last_payment_date),
            "قدیمی‌ترین فاکتور پرداخت‌نشده": _format_date(s.oldest_unpaid_invoice_date),
            "معوق": "بله" if s.is_overdue else "خیر",
        }
        for s in summaries
    ]
    return pd.DataFrame(rows)


def export_accounting_workbook(summaries: List[AccountSummary], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    report_df = summaries_frame(summaries)
    warnings_df = pd.DataFrame(
        [{"username": s.username, "warning": w} for s in summaries for w in s.warnings],
        columns=["username", "warning"],
    )
    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        report_df.to_excel(writer, index=False, sheet_name="Accounts")
        warnings_df.to_excel(writer, index=False, sheet_name="Warnings")
        worksheet = writer.sheets["Accounts"]
        worksheet.right_to_left()
        fmt_money = writer.book.add_format({"num_format": "#,##0"})
        worksheet.set_column(0, max(len(report_df.columns) - 1, 0), 20)
        worksheet.set_column(3, 5, 20, fmt_money)
        writer.sheets["Warnings"].set_column(0, 1, 60)
    return output_path


def run_accounting_report(
    store: BillingStore,
    settings: BillingSettings,
    logger: logging.Logger,
    status: Optional[str] = None,
    output_path: Optional[Path] = None,
) -> List[AccountSummary]:
    summaries = summarize_accounts(
        store.list_representatives(),
        store.list_invoices(),
        store.list_payments(),
        settings,
    )
    for summary in summaries:
        for warning in summary.warnings:
            logger.warning("%s: %s", summary.username, warning)
    selected = filter_summaries(summaries, status)

    totals = accounting_totals(selected)
    logger.info(
        "%d representatives: %d debtors, %d creditors, outstanding %s, overpaid %s",
        len(selected),
        totals["debtor_count"],
        totals["creditor_count"],
        totals["total_outstanding"],
        totals["total_overpaid"],
    )
    if output_path is not None:
        if not selected:
            raise BillingError("No representatives match the requested filter; nothing to export.")
        export_accounting_workbook(selected, output_path)
        logger.info("Wrote accounting report: %s", output_path)
    return selected


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Representative balances from invoices and payments.")
    parser.add_argument(
        "--data-dir",
        default=str(DEFAULT_DATA_DIR),
        help="Billing data directory (or set VPN_BILLING_DATA_DIR).",
    )
    parser.add_argument(
        "--status",
        default="all",
        choices=["all", DEBTOR, CREDITOR, BALANCED, "overdue"],
        help="Only report representatives in this state.",
    )
    parser.add_argument(
        "--output",
        default=None,
        metavar="PATH",
        help=f"Write an xlsx report (e.g. {DEFAULT_REPORT_DIR / 'accounting_report.xlsx'}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger = logging.getLogger("accounting")

    data_dir = Path(args.data_dir).resolve()
    try:
        run_accounting_report(
            store=BillingStore(data_dir),
            settings=load_settings(data_dir / DEFAULT_SETTINGS_FILE),
            logger=logger,
            status=args.status,
            output_path=Path(args.output).resolve() if args.output else None,
        )
    except BillingError as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Unexpected failure while building the accounting report.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
