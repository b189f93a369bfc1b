#!/usr/bin/env python3
"""Prepare manual Telegram delivery for representatives.

This module only builds ``https://t.me/`` links and pre-filled message text
for an operator to open. Nothing is sent.
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import quote

import pandas as pd

from billing_models import (
    INVOICE_CANCELLED,
    BillingError,
    Invoice,
    Payment,
    PERSIAN_DIGITS,
    Representative,
    key,
    now_utc,
)
from billing_settings import DEFAULT_DATA_DIR, DEFAULT_SETTINGS_FILE, BillingSettings, load_settings
from billing_store import BillingStore
from accounting import reconcile

TELEGRAM_BASE_URL = "https://t.me/"
PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

MESSAGE_TEMPLATES: Dict[str, str] = {
    "invoice_notification": """سلام {{name}} عزیز 👋

فاکتور ماهانه شما برای دوره {{month}} آماده شده است.

📋 جزئیات فاکتور:
• مصرف: {{usage}} گیگابایت
• مبلغ: {{amount}} {{currency}}
• مهلت پرداخت: {{dueDate}}

لطفاً جهت مشاهده و پرداخت فاکتور اقدام فرمایید.

با تشکر
سیستم مدیریت VPN""",
    "payment_reminder": """سلام {{name}} عزیز 🔔

یادآوری دوستانه برای پرداخت فاکتور:

💰 مبلغ قابل پرداخت: {{amount}} {{currency}}
📅 مهلت پرداخت: {{dueDate}}
⏰ روزهای باقی‌مانده: {{daysLeft}}

لطفاً در اسرع وقت نسبت به پرداخت اقدام فرمایید.

با تشکر""",
    "welcome_message": """سلام {{name}} عزیز 🎉

به سیستم VPN ما خوش آمدید!

🌟 امکانات شما:
• دسترسی نامحدود
• پشتیبانی ۲۴ساعته
• کیفیت بالا

در صورت نیاز به راهنمایی با ما در ارتباط باشید.

موفق باشید! 🚀""",
}


@dataclass(frozen=True)
class Contact:
    representative: Representative
    handle: str
    link: str


@dataclass
class ContactPartition:
    deliverable: List[Contact] = field(default_factory=list)
    missing_contact: List[Representative] = field(default_factory=list)


def has_channel(rep: Representative) -> bool:
    """Data presence only; nothing checks that the account is reachable."""
    return bool(key(rep.telegram_id) or key(rep.telegram_username))


def telegram_handle(rep: Representative) -> str:
    """Telegram username without the leading @, else the numeric/text telegram id."""
    username = key(rep.telegram_username).lstrip("@")
    return username or key(rep.telegram_id).lstrip("@")


def telegram_link(handle: str, text: Optional[str] = None) -> str:
    link = TELEGRAM_BASE_URL + handle.strip().lstrip("@")
    if text:
        link += "?text=" + quote(text, safe="")
    return link


def partition_contacts(representatives: Iterable[Representative]) -> ContactPartition:
    partition = ContactPartition()
    for rep in representatives:
        if has_channel(rep):
            handle = telegram_handle(rep)
            partition.deliverable.append(Contact(rep, handle, telegram_link(handle)))
        else:
            partition.missing_contact.append(rep)
    return partition


def to_persian_digits(text: str) -> str:
    return "".join(PERSIAN_DIGITS[int(ch)] if ch.isdigit() and ch.isascii() else ch for ch in text)


def format_amount(amount: Any) -> str:
    """Whole-unit amount with Persian digits and Arabic thousands separators."""
    value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    grouped = f"{value.quantize(Decimal('1')):,}".replace(",", "٬")
    return to_persian_digits(grouped)


def render_message(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{{field}}`` placeholders; unknown placeholders are left as written."""

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in values and values[name] is not None:
            return str(values[name])
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template)


def message_values(
    rep: Representative,
    invoices: List[Invoice],
    payments: List[Payment],
    settings: BillingSettings,
    as_of: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Template fields for one representative from their ledger and latest invoice."""
    as_of = as_of or now_utc()
    summary = reconcile(rep.id, invoices, payments, as_of, settings.overdue_after_days)
    rep_invoices = [
        inv for inv in invoices if inv.representative_id == rep.id and inv.status != INVOICE_CANCELLED
    ]
    values: Dict[str, Any] = {
        "name": rep.name,
        "username": rep.username,
        "amount": format_amount(max(summary.outstanding, Decimal("0"))),
        "currency": settings.currency,
        "invoiceCount": to_persian_digits(str(len(rep_invoices))),
    }
    if rep_invoices:
        latest = max(rep_invoices, key=lambda inv: (inv.created_at, inv.id))
        values.update(
            {
                "month": latest.month,
                "dueDate": latest.due_date.date().isoformat(),
                "daysLeft": to_persian_digits(str(max((latest.due_date - as_of).days, 0))),
            }
        )
        if latest.data_usage_gb is not None:
            values["usage"] = to_persian_digits(str(latest.data_usage_gb))
    return values


def prepare_deliveries(
    representatives: Iterable[Representative],
    invoices: List[Invoice],
    payments: List[Payment],
    template: str,
    settings: BillingSettings,
    as_of: Optional[datetime] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """Links with pre-filled text for reachable representatives plus the follow-up list."""
    partition = partition_contacts(representatives)
    deliveries: List[Dict[str, Any]] = []
    for contact in partition.deliverable:
        values = message_values(contact.representative, invoices, payments, settings, as_of)
        message = render_message(template, values)
        deliveries.append(
            {
                "representative_id": contact.representative.id,
                "name": contact.representative.name,
                "username": contact.representative.username,
                "link": contact.link,
                "message_link": telegram_link(contact.handle, message),
                "message": message,
            }
        )
    missing = [
        {
            "representative_id": rep.id,
            "name": rep.name,
            "username": rep.username,
            "phone": rep.phone or "",
        }
        for rep in partition.missing_contact
    ]
    return {"deliveries": deliveries, "missing_contact": missing}


def run_contact_export(
    store: BillingStore,
    settings: BillingSettings,
    template_name: str,
    output_path: Path,
    logger: logging.Logger,
) -> Dict[str, List[Dict[str, Any]]]:
    template = MESSAGE_TEMPLATES.get(template_name)
    if template is None:
        raise BillingError(f"Unknown message template '{template_name}'. Use one of {sorted(MESSAGE_TEMPLATES)}")
    result = prepare_deliveries(
        store.list_representatives(),
        store.list_invoices(),
        store.list_payments(),
        template,
        settings,
    )
    for row in result["missing_contact"]:
        logger.warning("No Telegram contact for %s (%s)", row["username"], row["name"])

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        pd.DataFrame(
            result["deliveries"],
            columns=["representative_id", "name", "username", "link", "message_link", "message"],
        ).to_excel(writer, index=False, sheet_name="Telegram Links")
        pd.DataFrame(
            result["missing_contact"],
            columns=["representative_id", "name", "username", "phone"],
        ).to_excel(writer, index=False, sheet_name="Missing Contact")
    logger.info(
        "Wrote %d Telegram links and %d follow-ups to %s",
        len(result["deliveries"]),
        len(result["missing_contact"]),
        output_path,
    )
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build Telegram links and messages for manual delivery.")
    parser.add_argument(
        "--data-dir",
        default=str(DEFAULT_DATA_DIR),
        help="Billing data directory (or set VPN_BILLING_DATA_DIR).",
    )
    parser.add_argument(
        "--template",
        default="invoice_notification",
        choices=sorted(MESSAGE_TEMPLATES),
        help="Message template to pre-fill.",
    )
    parser.add_argument(
        "--output",
        default=str(Path("outputs") / "telegram_links.xlsx"),
        help="Workbook to write links and missing contacts to.",
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
    run_logger = logging.getLogger("contact_routing")

    data_dir = Path(args.data_dir).resolve()
    try:
        run_contact_export(
            store=BillingStore(data_dir),
            settings=load_settings(data_dir / DEFAULT_SETTINGS_FILE),
            template_name=args.template,
            output_path=Path(args.output).resolve(),
            logger=run_logger,
        )
    except BillingError as exc:
        run_logger.error("%s", exc)
        return 2
    except Exception:
        run_logger.exception("Unexpected failure while preparing Telegram links.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
