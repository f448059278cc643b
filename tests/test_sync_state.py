import datetime as dt
import json
from decimal import Decimal

import pytest
from openpyxl import Workbook, load_workbook

from core.exceptions import PersistenceError
from core.ksef_models import InvoiceHeader
from core.sync_state import (
    COLUMNS,
    ExcelInvoiceStore,
    JsonWatermarkStore,
    SqliteInvoiceStore,
    SqliteWatermarkStore,
)

UTC = dt.timezone.utc
T1 = dt.datetime(2024, 1, 15, 10, 0, 0, 123000, tzinfo=UTC)


def invoice(ref, gross="100.00", number=None):
    return InvoiceHeader(
        reference_number=ref,
        invoice_number=number or f"FV/{ref}",
        issuer_tax_id="5260250274",
        gross_amount=Decimal(gross),
        currency="PLN",
        invoice_date="2024-01-15",
        acquisition_timestamp="2024-01-15T12:00:00.000Z",
    )


# -- watermark ------------------------------------------------------------

def test_json_watermark_absent_then_round_trip(tmp_path):
    store = JsonWatermarkStore(tmp_path / "state" / "ksef_state.json")
    assert store.get() is None

    store.set(T1)

    assert store.get() == T1
    saved = json.loads((tmp_path / "state" / "ksef_state.json").read_text(encoding="utf-8"))
    assert saved == {"last_sync": {"timestamp": "2024-01-15T10:00:00.123Z"}}


def test_json_watermark_keeps_other_keys(tmp_path):
    path = tmp_path / "ksef_state.json"
    path.write_text(json.dumps({"other": {"timestamp": "2020-01-01T00:00:00.000Z"}}), encoding="utf-8")

    JsonWatermarkStore(path).set(T1)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert set(saved) == {"other", "last_sync"}


@pytest.mark.parametrize("content", ["", "{not json", '{"last_sync": {}}', '{"last_sync": {"timestamp": "yesterday"}}'])
def test_json_watermark_corrupt_file_reads_as_absent(tmp_path, content):
    path = tmp_path / "ksef_state.json"
    path.write_text(content, encoding="utf-8")
    assert JsonWatermarkStore(path).get() is None


def test_json_watermark_write_failure_is_persistence_error(tmp_path):
    target = tmp_path / "state"
    target.mkdir()
    with pytest.raises(PersistenceError):
        JsonWatermarkStore(target).set(T1)


def test_sqlite_watermark_round_trip(tmp_path):
    store = SqliteWatermarkStore(tmp_path / "ksef.db")
    assert store.get() is None
    store.set(T1)
    store.set(T1 + dt.timedelta(hours=1))
    assert store.get() == T1 + dt.timedelta(hours=1)


# -- invoices -------------------------------------------------------------

@pytest.fixture(params=["excel", "sqlite"])
def invoice_store(request, tmp_path):
    if request.param == "excel":
        return ExcelInvoiceStore(tmp_path / "ksef_invoices.xlsx")
    return SqliteInvoiceStore(tmp_path / "ksef.db")


def test_upsert_is_idempotent(invoice_store):
    batch = [invoice("R1"), invoice("R2")]
    invoice_store.upsert(batch)
    invoice_store.upsert(batch)

    stored = invoice_store.all()
    assert [i.reference_number for i in stored] == ["R1", "R2"]


def test_upsert_overwrites_existing_row(invoice_store):
    invoice_store.upsert([invoice("R1", gross="100.00"), invoice("R2")])
    invoice_store.upsert([invoice("R1", gross="250.50", number="FV/R1/korekta"), invoice("R3")])

    stored = {i.reference_number: i for i in invoice_store.all()}
    assert sorted(stored) == ["R1", "R2", "R3"]
    assert stored["R1"].gross_amount == Decimal("250.50")
    assert stored["R1"].invoice_number == "FV/R1/korekta"


def test_upsert_of_nothing_writes_nothing(invoice_store):
    assert invoice_store.upsert([]) == 0
    assert invoice_store.all() == []


def test_excel_columns(tmp_path):
    path = tmp_path / "ksef_invoices.xlsx"
    ExcelInvoiceStore(path).upsert([invoice("R1")])

    ws = load_workbook(path).active
    assert [c.value for c in ws[1]] == COLUMNS
    assert ws.cell(row=2, column=1).value == "R1"
    assert ws.cell(row=2, column=4).value == 100.0
    assert not (tmp_path / "ksef_invoices.xlsx.tmp").exists()


def test_excel_with_foreign_header_is_refused(tmp_path):
    path = tmp_path / "ksef_invoices.xlsx"
    wb = Workbook()
    wb.active.append(["UID", "Número", "Total"])
    wb.save(path)

    with pytest.raises(PersistenceError, match="header mismatch"):
        ExcelInvoiceStore(path).upsert([invoice("R1")])


def test_excel_unreadable_file_is_persistence_error(tmp_path):
    path = tmp_path / "ksef_invoices.xlsx"
    path.write_bytes(b"definitely not a zip file")
    with pytest.raises(PersistenceError):
        ExcelInvoiceStore(path).upsert([invoice("R1")])
