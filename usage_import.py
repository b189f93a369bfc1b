#!/usr/bin/env python3
"""Import a panel usage export and normalize it into per-representative usage records.

1. Read the first sheet of an operator-selected file (xlsx, xls, ods or csv).
2. Match the identity column (admin_username/username/admin/user) and the
   quantity column (data_usage/usage/data/gb/traffic) case-insensitively.
3. Convert the quantity to GB: explicit unit when configured, else the
   magnitude heuristic (> 1,000,000 is bytes, > 1,000 is MB, otherwise GB).
4. Report totals plus an itemized error list; persist accepted records unless
   --dry-run is given.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from billing_models import (
    BillingError,
    Diagnostic,
    UsageRecord,
    is_missing,
    key,
    parse_decimal,
    round_usage,
)
from billing_settings import DEFAULT_DATA_DIR, DEFAULT_SETTINGS_FILE, USAGE_UNITS, BillingSettings, load_settings
from billing_store import BillingStore

IDENTITY_ALIASES = ["admin_username", "username", "admin", "user"]
USAGE_ALIASES = ["data_usage", "usage", "data", "gb", "traffic"]

NO_ACTIVITY_MARKER = "null"

BYTES_THRESHOLD = Decimal(1_000_000)
MEGABYTES_THRESHOLD = Decimal(1_000)
BYTES_PER_GB = Decimal(1024 ** 3)
MB_PER_GB = Decimal(1024)

SUPPORTED_SUFFIXES = {".xlsx", ".xls", ".ods", ".csv"}

ERROR_IDENTITY = "identity field not found"
ERROR_USAGE_MISSING = "usage value not found"
ERROR_USAGE_INVALID = "usage value invalid"

logger = logging.getLogger("usage_import")


@dataclass(frozen=True)
class SkippedRow:
    """A row marked as "no activity this period"; accepted but never aggregated."""

    row_number: int
    admin_username: str
    reason: str


@dataclass
class ImportResult:
    total_records: int = 0
    records: List[UsageRecord] = field(default_factory=list)
    skipped: List[SkippedRow] = field(default_factory=list)
    errors: List[Diagnostic] = field(default_factory=list)

    @property
    def valid_records(self) -> int:
        return len(self.records)

    @property
    def invalid_records(self) -> int:
        return len(self.errors)

    @property
    def skipped_records(self) -> int:
        return len(self.skipped)

    @property
    def unique_users(self) -> int:
        return len({record.admin_username for record in self.records})

    @property
    def total_usage_gb(self) -> Decimal:
        return round_usage(sum((record.data_usage_gb for record in self.records), Decimal("0")))

    def summary(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "skipped_records": self.skipped_records,
            "unique_users": self.unique_users,
            "total_usage_gb": str(self.total_usage_gb),
        }


def current_month(today: Optional[date] = None) -> str:
    """Default billing month in YYYY-MM form."""
    today = today or date.today()
    return f"{today.year:04d}-{today.month:02d}"


def find_field_value(row: Dict[str, Any], aliases: Iterable[str]) -> Any:
    """Return the value of the first alias present, exact match before case-insensitive."""
    for alias in aliases:
        if alias in row and not is_missing(row[alias]):
            return row[alias]
        for column, value in row.items():
            if str(column).strip().lower() == alias.lower() and not is_missing(value):
                return value
    return None


def detect_unit(raw_value: Decimal) -> str:
    if raw_value > BYTES_THRESHOLD:
        return "bytes"
    if raw_value > MEGABYTES_THRESHOLD:
        return "mb"
    return "gb"


def to_gigabytes(raw_value: Decimal, unit: str) -> Decimal:
    if unit == "bytes":
        return round_usage(raw_value / BYTES_PER_GB)
    if unit == "mb":
        return round_usage(raw_value / MB_PER_GB)
    return round_usage(raw_value)


def normalize_row(
    row: Dict[str, Any],
    row_number: int,
    month: str,
    usage_unit: Optional[str] = None,
) -> Any:
    """Normalize one raw row into a UsageRecord, a SkippedRow or a Diagnostic."""
    identity_raw = find_field_value(row, IDENTITY_ALIASES)
    identity = key(identity_raw)
    if not identity:
        return Diagnostic("validation", f"row {row_number}", ERROR_IDENTITY)

    usage_raw = find_field_value(row, USAGE_ALIASES)
    if identity == NO_ACTIVITY_MARKER or (isinstance(usage_raw, str) and usage_raw.strip() == NO_ACTIVITY_MARKER):
        return SkippedRow(row_number, identity, "no activity this period")

    if usage_raw is None or key(usage_raw) == "":
        return Diagnostic("validation", f"row {row_number}", f"{ERROR_USAGE_MISSING} for {identity}")

    amount = parse_decimal(usage_raw)
    if amount is None or amount < 0:
        return Diagnostic("validation", f"row {row_number}", f"{ERROR_USAGE_INVALID} for {identity}: {usage_raw!r}")

    if usage_unit is not None:
        unit = usage_unit
    else:
        unit = detect_unit(amount)
        logger.debug("Row %d: treated usage %s for %s as %s", row_number, amount, identity, unit)

    return UsageRecord(
        admin_username=identity,
        data_usage_gb=to_gigabytes(amount, unit),
        month=month,
        raw_data=dict(row),
        row_number=row_number,
        unit=unit,
    )


def normalize_rows(
    rows: List[Dict[str, Any]],
    month: Optional[str] = None,
    usage_unit: Optional[str] = None,
) -> ImportResult:
    """Normalize every row; invalid rows land in ``errors`` with their 1-based row number."""
    if usage_unit is not None and usage_unit not in USAGE_UNITS:
        raise BillingError(f"Unknown usage unit '{usage_unit}', expected one of {list(USAGE_UNITS)}")
    billing_month = key(month) or current_month()
    result = ImportResult(total_records=len(rows))
    for index, row in enumerate(rows):
        outcome = normalize_row(row, index + 1, billing_month, usage_unit)
        if isinstance(outcome, UsageRecord):
            result.records.append(outcome)
        elif isinstance(outcome, SkippedRow):
            result.skipped.append(outcome)
        else:
            result.errors.append(outcome)
    return result


def read_usage_sheet(path: Path) -> List[Dict[str, Any]]:
    """Read the first sheet of a usage export into row dicts; blank rows are dropped."""
    if not path.exists():
        raise BillingError(f"Usage file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise BillingError(f"Unsupported usage file type '{suffix}'. Use one of {sorted(SUPPORTED_SUFFIXES)}")

    # Keep the literal "null" marker; only empty cells are missing.
    read_options = {"dtype": object, "keep_default_na": False, "na_values": [""]}
    try:
        if suffix == ".csv":
            df = pd.read_csv(path, **read_options)
        else:
            df = pd.read_excel(path, sheet_name=0, **read_options)
    except (ValueError, ImportError, OSError) as exc:
        raise BillingError(f"Failed to read usage file {path.name}: {exc}") from exc

    df = df.dropna(how="all")
    rows: List[Dict[str, Any]] = []
    for record in df.to_dict(orient="records"):
        rows.append({str(k).strip(): (None if is_missing(v) else v) for k, v in record.items()})
    return rows


def run_usage_import(
    usage_file: Path,
    month: Optional[str],
    settings: BillingSettings,
    logger: logging.Logger,
    store: Any = None,
) -> ImportResult:
    """Read, normalize and (when a store is given) persist one import batch."""
    rows = read_usage_sheet(usage_file)
    if not rows:
        raise BillingError(f"Usage file is empty: {usage_file}")
    logger.info("Loaded %d rows from %s", len(rows), usage_file.name)

    result = normalize_rows(rows, month=month, usage_unit=settings.usage_unit)
    for diagnostic in result.errors:
        logger.warning("%s: %s", diagnostic.subject, diagnostic.message)

    if store is not None and result.records:
        store.add_usage_records(result.records)
        logger.info("Saved %d usage records", len(result.records))

    summary = result.summary()
    logger.info(
        "Import summary: %d rows, %d valid, %d invalid, %d skipped, %d users, %s GB",
        summary["total_records"],
        summary["valid_records"],
        summary["invalid_records"],
        summary["skipped_records"],
        summary["unique_users"],
        summary["total_usage_gb"],
    )
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import a VPN panel usage export into billing usage records.")
    parser.add_argument("usage_file", help="Usage export (.xlsx, .xls, .ods or .csv).")
    parser.add_argument(
        "--month",
        default=None,
        help="Billing month stored on every record (default: current month, YYYY-MM).",
    )
    parser.add_argument(
        "--data-dir",
        default=str(DEFAULT_DATA_DIR),
        help="Billing data directory (or set VPN_BILLING_DATA_DIR).",
    )
    parser.add_argument(
        "--unit",
        choices=list(USAGE_UNITS),
        default=None,
        help="Unit of the usage column. Overrides the magnitude heuristic and the settings file.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and summarize without saving records.",
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
    run_logger = logging.getLogger("usage_import")

    data_dir = Path(args.data_dir).resolve()
    try:
        settings = load_settings(data_dir / DEFAULT_SETTINGS_FILE)
        if args.unit:
            settings = replace(settings, usage_unit=args.unit)
        store = None if args.dry_run else BillingStore(data_dir)
        run_usage_import(
            usage_file=Path(args.usage_file).resolve(),
            month=args.month,
            settings=settings,
            logger=run_logger,
            store=store,
        )
    except BillingError as exc:
        run_logger.error("%s", exc)
        return 2
    except Exception:
        run_logger.exception("Unexpected failure while importing usage.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
