"""JSON-file storage for representatives, usage imports, invoices and payments.

Each collection lives in its own ``<name>.json`` file holding ``next_id`` and
``items``. Files are rewritten through a temp file and ``replace`` so a crash
never leaves half a ledger on disk. Invoices and payments are append-only;
the only in-place change allowed is an operator status transition on an
invoice. At most one non-cancelled invoice may exist per
``(representative_id, month)``. Every load-modify-replace cycle holds an
exclusive lock file in the data directory, so separate CLI processes sharing
one directory never overwrite each other.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from billing_models import (
    INVOICE_CANCELLED,
    INVOICE_SENT,
    BillingValidationError,
    Invoice,
    InvoiceConflictError,
    InvoiceDraft,
    Payment,
    RecordNotFoundError,
    Representative,
    StorageError,
    UsageRecord,
    canonical_form,
    check_numeric_fields,
    check_referral_chain,
    check_status_transition,
    key,
    money,
    now_utc,
    parse_decimal,
    validate_payment,
    validate_representative,
)

REPRESENTATIVES = "representatives"
USAGE_RECORDS = "usage_records"
INVOICES = "invoices"
PAYMENTS = "payments"
LOCK_FILE = ".billing.lock"

logger = logging.getLogger("billing_store")


class BillingStore:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()
        self._key_locks: Dict[Tuple[int, str], threading.Lock] = {}
        self._lock_depth = 0
        self._lock_handle: Any = None

    # ------------------------------------------------------------------
    # File plumbing
    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Thread lock plus an exclusive ``flock`` on the data directory; re-entrant per store."""
        with self._lock:
            if self._lock_depth == 0:
                try:
                    self.data_dir.mkdir(parents=True, exist_ok=True)
                    handle = (self.data_dir / LOCK_FILE).open("a+")
                except OSError as exc:
                    raise StorageError(LOCK_FILE, str(exc)) from exc
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._lock_handle = handle
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    handle, self._lock_handle = self._lock_handle, None
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                    handle.close()

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _load(self, collection: str) -> Dict[str, Any]:
        path = self._path(collection)
        if not path.exists():
            return {"next_id": 1, "items": []}
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            raise StorageError(path.name, str(exc)) from exc
        data.setdefault("next_id", 1)
        data.setdefault("items", [])
        return data

    def _save(self, collection: str, data: Dict[str, Any]) -> None:
        path = self._path(collection)
        tmp = path.with_name(f"{path.name}.{os.getpid()}-{uuid4().hex[:8]}.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            tmp.replace(path)
        except OSError as exc:
            raise StorageError(path.name, str(exc)) from exc

    def _append(self, collection: str, build: Callable[[int], Dict[str, Any]]) -> Dict[str, Any]:
        with self._locked():
            data = self._load(collection)
            record = build(int(data["next_id"]))
            data["items"].append(record)
            data["next_id"] = int(data["next_id"]) + 1
            self._save(collection, data)
            return record

    def _key_lock(self, representative_id: int, month: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault((representative_id, month), threading.Lock())

    # ------------------------------------------------------------------
    # Representatives
    # ------------------------------------------------------------------
    def list_representatives(self) -> List[Representative]:
        with self._locked():
            return [Representative.from_record(row) for row in self._load(REPRESENTATIVES)["items"]]

    def representative_directory(self) -> Dict[str, Representative]:
        """Representatives keyed by username, the join key of imported usage."""
        return {rep.username: rep for rep in self.list_representatives()}

    def get_representative(self, rep_id: int) -> Representative:
        for rep in self.list_representatives():
            if rep.id == rep_id:
                return rep
        raise RecordNotFoundError("representative", rep_id)

    def create_representative(self, values: Dict[str, Any]) -> Representative:
        with self._locked():
            check_numeric_fields(values)
            data = self._load(REPRESENTATIVES)
            rep = Representative.from_record({**canonical_form(values), "id": data["next_id"]})
            validate_representative(rep)
            existing = [Representative.from_record(row) for row in data["items"]]
            if any(other.username == rep.username for other in existing):
                raise BillingValidationError({"username": f"username '{rep.username}' is already taken"})
            check_referral_chain(rep.id, rep.parent_id, {other.id: other.parent_id for other in existing})

            data["items"].append(rep.to_record())
            data["next_id"] = rep.id + 1
            self._save(REPRESENTATIVES, data)
            logger.info("Created representative %s (%s)", rep.id, rep.username)
            return rep

    def update_representative(self, rep_id: int, changes: Dict[str, Any]) -> Representative:
        with self._locked():
            data = self._load(REPRESENTATIVES)
            index = next((i for i, row in enumerate(data["items"]) if int(row["id"]) == rep_id), None)
            if index is None:
                raise RecordNotFoundError("representative", rep_id)
            current = Representative.from_record(data["items"][index])
            check_numeric_fields(changes)
            merged = {**current.to_record(), **canonical_form(changes), "id": rep_id}
            updated = Representative.from_record(merged)
            validate_representative(updated)

            if updated.username != current.username:
                if self.list_invoices(representative_id=rep_id):
                    raise BillingValidationError({"username": "username cannot change once invoices reference it"})
                if any(row["username"] == updated.username for row in data["items"]):
                    raise BillingValidationError({"username": f"username '{updated.username}' is already taken"})

            parents = {
                int(row["id"]): row.get("parent_id")
                for row in data["items"]
                if int(row["id"]) != rep_id
            }
            parents[rep_id] = None
            check_referral_chain(rep_id, updated.parent_id, parents)

            data["items"][index] = updated.to_record()
            self._save(REPRESENTATIVES, data)
            return updated

    def delete_representative(self, rep_id: int) -> None:
        """Remove a representative that has no ledger history and no referrals."""
        with self._locked():
            data = self._load(REPRESENTATIVES)
            if not any(int(row["id"]) == rep_id for row in data["items"]):
                raise RecordNotFoundError("representative", rep_id)
            if self.list_invoices(representative_id=rep_id) or self.list_payments(representative_id=rep_id):
                raise BillingValidationError({"id": "representative has invoices or payments and cannot be deleted"})
            if any(row.get("parent_id") == rep_id for row in data["items"]):
                raise BillingValidationError({"id": "representative is the referrer of other representatives"})
            data["items"] = [row for row in data["items"] if int(row["id"]) != rep_id]
            self._save(REPRESENTATIVES, data)

    # ------------------------------------------------------------------
    # Usage imports
    # ------------------------------------------------------------------
    def add_usage_records(self, records: List[UsageRecord]) -> List[UsageRecord]:
        with self._locked():
            data = self._load(USAGE_RECORDS)
            saved: List[UsageRecord] = []
            for record in records:
                row = record.to_record()
                row["id"] = int(data["next_id"])
                data["next_id"] = row["id"] + 1
                data["items"].append(row)
                saved.append(UsageRecord.from_record(row))
            self._save(USAGE_RECORDS, data)
            return saved

    def list_usage_records(self, month: Optional[str] = None) -> List[UsageRecord]:
        with self._locked():
            rows = self._load(USAGE_RECORDS)["items"]
        records = [UsageRecord.from_record(row) for row in rows]
        if month is not None:
            records = [r for r in records if r.month == month]
        return records

    def usage_months(self) -> List[str]:
        """Months with imported usage, newest first."""
        return sorted({record.month for record in self.list_usage_records()}, reverse=True)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def list_invoices(self, representative_id: Optional[int] = None, month: Optional[str] = None) -> List[Invoice]:
        with self._locked():
            rows = self._load(INVOICES)["items"]
        invoices = [Invoice.from_record(row) for row in rows]
        if representative_id is not None:
            invoices = [inv for inv in invoices if inv.representative_id == representative_id]
        if month is not None:
            invoices = [inv for inv in invoices if inv.month == month]
        return invoices

    def get_invoice(self, invoice_id: int) -> Invoice:
        for invoice in self.list_invoices():
            if invoice.id == invoice_id:
                return invoice
        raise RecordNotFoundError("invoice", invoice_id)

    def find_active_invoice(self, representative_id: int, month: str) -> Optional[Invoice]:
        return next(
            (
                inv
                for inv in self.list_invoices(representative_id=representative_id, month=month)
                if inv.status != INVOICE_CANCELLED
            ),
            None,
        )

    def create_invoice(self, draft: InvoiceDraft, invoice_number: str, due_date: datetime) -> Invoice:
        """Persist one draft; a second active invoice for the same representative and month is a conflict."""
        with self._key_lock(draft.representative_id, draft.month), self._locked():
            if self.find_active_invoice(draft.representative_id, draft.month) is not None:
                raise InvoiceConflictError(draft.representative_id, draft.month)
            if any(inv.invoice_number == invoice_number for inv in self.list_invoices()):
                raise InvoiceConflictError(draft.representative_id, draft.month)

            def build(new_id: int) -> Dict[str, Any]:
                return Invoice(
                    id=new_id,
                    representative_id=draft.representative_id,
                    invoice_number=invoice_number,
                    month=draft.month,
                    total_amount=draft.total_amount,
                    discount_amount=draft.discount_amount,
                    final_amount=draft.final_amount,
                    due_date=due_date,
                    items=list(draft.items),
                    data_usage_gb=draft.data_usage_gb,
                ).to_record()

            return Invoice.from_record(self._append(INVOICES, build))

    def update_invoice_status(self, invoice_id: int, status: str, at: Optional[datetime] = None) -> Invoice:
        with self._locked():
            data = self._load(INVOICES)
            index = next((i for i, row in enumerate(data["items"]) if int(row["id"]) == invoice_id), None)
            if index is None:
                raise RecordNotFoundError("invoice", invoice_id)
            invoice = Invoice.from_record(data["items"][index])
            check_status_transition(invoice.status, status)
            invoice.status = status
            if status == INVOICE_SENT:
                invoice.sent_at = at or now_utc()
            data["items"][index] = invoice.to_record()
            self._save(INVOICES, data)
            logger.info("Invoice %s moved to %s", invoice.invoice_number, status)
            return invoice

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------
    def list_payments(self, representative_id: Optional[int] = None) -> List[Payment]:
        with self._locked():
            rows = self._load(PAYMENTS)["items"]
        payments = [Payment.from_record(row) for row in rows]
        if representative_id is not None:
            payments = [p for p in payments if p.representative_id == representative_id]
        return payments

    def add_payment(self, values: Dict[str, Any]) -> Payment:
        rep_id = int(values["representative_id"])
        self.get_representative(rep_id)
        invoice_id = values.get("invoice_id")
        if invoice_id is not None:
            invoice = self.get_invoice(int(invoice_id))
            if invoice.representative_id != rep_id:
                raise BillingValidationError(
                    {"invoice_id": f"invoice {invoice.invoice_number} belongs to another representative"}
                )
        raw_amount = values.get("amount")
        if parse_decimal(raw_amount) is None:
            raise BillingValidationError({"amount": f"expected a number, got {raw_amount!r}"})
        amount = money(raw_amount)
        payment = Payment.from_record({**values, "id": 0, "amount": str(amount)})
        validate_payment(payment)
        reference = key(values.get("reference_number"))
        if reference and any(p.reference_number == reference for p in self.list_payments()):
            logger.warning("Payment reference %s was already recorded once", reference)

        def build(new_id: int) -> Dict[str, Any]:
            return {**payment.to_record(), "id": new_id}

        return Payment.from_record(self._append(PAYMENTS, build))
