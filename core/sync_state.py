"""
Persistence of the sync watermark and of the received invoice headers.

Two backends:
- files: JSON watermark next to an Excel workbook with one row per invoice;
- sqlite: ``ksef_state`` key/value table and ``ksef_invoices`` table.

Principles (important for maintenance)
1) reference_number is the invoice key. Upserting the same key twice overwrites the row,
   never duplicates it. Invoice headers are immutable once issued, so overwriting is safe.
2) The watermark is read once at cycle start and written once at cycle end.
3) Every write failure surfaces as PersistenceError so the caller never advances the
   watermark past invoices that were not stored.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sqlite3
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from core.exceptions import PersistenceError
from core.ksef_models import InvoiceHeader, format_timestamp, parse_timestamp, to_decimal, utc_now

LOGGER = logging.getLogger(__name__)

WATERMARK_KEY = "last_sync"


class WatermarkStore(ABC):
    @abstractmethod
    def get(self) -> Optional[dt.datetime]:
        """Last successful sync instant, or None when absent/unreadable."""

    @abstractmethod
    def set(self, value: dt.datetime) -> None:
        ...


class InvoiceStore(ABC):
    @abstractmethod
    def upsert(self, invoices: Iterable[InvoiceHeader]) -> int:
        """Insert or overwrite rows keyed by reference_number. Returns rows written."""

    @abstractmethod
    def all(self) -> List[InvoiceHeader]:
        ...


# =============================================================================
# File backend
# =============================================================================

def _atomic_write_json(path: Path, obj: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class JsonWatermarkStore(WatermarkStore):
    def __init__(self, path: Path, key: str = WATERMARK_KEY) -> None:
        self.path = Path(path)
        self.key = key

    def get(self) -> Optional[dt.datetime]:
        if not self.path.exists():
            return None
        try:
            state = json.loads(self.path.read_text(encoding="utf-8"))
            return parse_timestamp(state[self.key]["timestamp"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            # Corrupted (e.g. crash during write): treat as absent.
            LOGGER.warning("Watermark file %s unreadable (%s); ignoring.", self.path, exc)
            return None

    def set(self, value: dt.datetime) -> None:
        state: Dict[str, dict] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    state = loaded
            except (OSError, ValueError):
                state = {}
        state[self.key] = {"timestamp": format_timestamp(value)}
        try:
            _atomic_write_json(self.path, state)
        except OSError as exc:
            raise PersistenceError(f"Failed to write watermark {self.path}: {exc}") from exc


# Excel schema (column order is part of the contract)
COLUMNS = [
    "Reference Number",
    "Invoice Number",
    "Issuer Tax ID",
    "Gross Amount",
    "Currency",
    "Invoice Date",
    "Acquisition Timestamp",
    "last_updated",
]


def safe_save_workbook(wb: Workbook, path: Path) -> None:
    """Write to temp then replace for improved crash safety."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    wb.save(tmp)
    os.replace(tmp, path)


def _read_header(ws: Worksheet) -> List[str]:
    out = ["" if v is None else str(v).strip() for v in next(ws.iter_rows(min_row=1, max_row=1, values_only=True), ())]
    while out and out[-1] == "":
        out.pop()
    return out


class ExcelInvoiceStore(InvoiceStore):
    """One worksheet row per reference number."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _open(self):
        """Returns wb, ws, ref_row_map (reference number -> row index)."""
        ref_map: Dict[str, int] = {}
        if not self.path.exists():
            wb = Workbook()
            ws = wb.active
            ws.title = "ksef_invoices"
            for c, name in enumerate(COLUMNS, start=1):
                ws.cell(row=1, column=c, value=name)
            ws.freeze_panes = "A2"
            return wb, ws, ref_map

        wb = load_workbook(self.path)
        ws = wb.active
        header = _read_header(ws)
        if header != COLUMNS:
            raise PersistenceError(f"Excel header mismatch in {self.path}. Expected columns: {COLUMNS}, got: {header}")
        for r in range(2, ws.max_row + 1):
            ref = ws.cell(row=r, column=1).value
            if isinstance(ref, str) and ref.strip():
                ref_map[ref.strip()] = r
        return wb, ws, ref_map

    def upsert(self, invoices: Iterable[InvoiceHeader]) -> int:
        invoices = list(invoices)
        if not invoices:
            return 0
        try:
            wb, ws, ref_map = self._open()
            stamp = format_timestamp(utc_now())
            for inv in invoices:
                row = ref_map.get(inv.reference_number)
                if row is None:
                    row = ws.max_row + 1
                    ref_map[inv.reference_number] = row
                values = [
                    inv.reference_number,
                    inv.invoice_number,
                    inv.issuer_tax_id,
                    float(inv.gross_amount) if inv.gross_amount is not None else None,
                    inv.currency,
                    inv.invoice_date,
                    inv.acquisition_timestamp,
                    stamp,
                ]
                for c, v in enumerate(values, start=1):
                    ws.cell(row=row, column=c, value=v)
            safe_save_workbook(wb, self.path)
        except PersistenceError:
            raise
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise PersistenceError(f"Failed to upsert invoices into {self.path}: {exc}") from exc
        LOGGER.info("Excel saved: %s (%s invoices upserted)", self.path, len(invoices))
        return len(invoices)

    def all(self) -> List[InvoiceHeader]:
        if not self.path.exists():
            return []
        try:
            _, ws, ref_map = self._open()
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise PersistenceError(f"Failed to read {self.path}: {exc}") from exc
        out: List[InvoiceHeader] = []
        for ref, r in sorted(ref_map.items(), key=lambda kv: kv[1]):
            vals = [ws.cell(row=r, column=c).value for c in range(1, len(COLUMNS) + 1)]
            out.append(InvoiceHeader(
                reference_number=ref,
                invoice_number=vals[1] or "",
                issuer_tax_id=vals[2] or "",
                gross_amount=to_decimal(vals[3]),
                currency=vals[4] or "",
                invoice_date=vals[5] or "",
                acquisition_timestamp=vals[6] or "",
            ))
        return out


# =============================================================================
# SQLite backend
# =============================================================================

def init_sync_db(db_path: Path) -> None:
    """Create ksef_state and ksef_invoices if missing."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ksef_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ksef_invoices (
                reference_number TEXT PRIMARY KEY,
                invoice_number TEXT,
                issuer_tax_id TEXT,
                amount_gross TEXT,
                currency TEXT,
                invoice_date TEXT,
                acquisition_timestamp TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteWatermarkStore(WatermarkStore):
    def __init__(self, db_path: Path, key: str = WATERMARK_KEY) -> None:
        self.db_path = Path(db_path)
        self.key = key

    def get(self) -> Optional[dt.datetime]:
        try:
            init_sync_db(self.db_path)
            conn = sqlite3.connect(self.db_path)
            try:
                row = conn.execute("SELECT value FROM ksef_state WHERE key = ?", (self.key,)).fetchone()
            finally:
                conn.close()
            if row is None:
                return None
            return parse_timestamp(json.loads(row[0])["timestamp"])
        except (sqlite3.Error, OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Watermark %r in %s unreadable (%s); ignoring.", self.key, self.db_path, exc)
            return None

    def set(self, value: dt.datetime) -> None:
        payload = json.dumps({"timestamp": format_timestamp(value)})
        try:
            init_sync_db(self.db_path)
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute("""
                    INSERT INTO ksef_state (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """, (self.key, payload))
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Failed to write watermark to {self.db_path}: {exc}") from exc


class SqliteInvoiceStore(InvoiceStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def upsert(self, invoices: Iterable[InvoiceHeader]) -> int:
        now = format_timestamp(utc_now())
        rows = [
            (
                inv.reference_number,
                inv.invoice_number,
                inv.issuer_tax_id,
                str(inv.gross_amount) if inv.gross_amount is not None else None,
                inv.currency,
                inv.invoice_date,
                inv.acquisition_timestamp,
                now,
            )
            for inv in invoices
        ]
        if not rows:
            return 0
        try:
            init_sync_db(self.db_path)
            conn = sqlite3.connect(self.db_path)
            try:
                # Single transaction: either every row lands or none does.
                with conn:
                    conn.executemany("""
                        INSERT INTO ksef_invoices
                        (reference_number, invoice_number, issuer_tax_id, amount_gross,
                         currency, invoice_date, acquisition_timestamp, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(reference_number) DO UPDATE SET
                            invoice_number = excluded.invoice_number,
                            issuer_tax_id = excluded.issuer_tax_id,
                            amount_gross = excluded.amount_gross,
                            currency = excluded.currency,
                            invoice_date = excluded.invoice_date,
                            acquisition_timestamp = excluded.acquisition_timestamp,
                            updated_at = excluded.updated_at
                    """, rows)
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Failed to upsert invoices into {self.db_path}: {exc}") from exc
        LOGGER.info("SQLite %s: %s invoices upserted", self.db_path, len(rows))
        return len(rows)

    def all(self) -> List[InvoiceHeader]:
        try:
            init_sync_db(self.db_path)
            conn = sqlite3.connect(self.db_path)
            try:
                rows = conn.execute("""
                    SELECT reference_number, invoice_number, issuer_tax_id, amount_gross,
                           currency, invoice_date, acquisition_timestamp
                    FROM ksef_invoices ORDER BY rowid
                """).fetchall()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Failed to read invoices from {self.db_path}: {exc}") from exc
        return [
            InvoiceHeader(
                reference_number=r[0],
                invoice_number=r[1] or "",
                issuer_tax_id=r[2] or "",
                gross_amount=to_decimal(r[3]),
                currency=r[4] or "",
                invoice_date=r[5] or "",
                acquisition_timestamp=r[6] or "",
            )
            for r in rows
        ]
