from datetime import date, datetime, time
from decimal import Decimal

import pytest
from sqlalchemy import func, select

import services
from conftest import make_category
from models import ExpenseRecord
from services import (
    BulkImportService,
    ImportInsertError,
    ImportParseError,
    ImportValidationError,
)

HEADER = "expenseDate,amount,currency,category,subCategory,reason\n"


def _write(tmp_path, text: str, encoding: str = "utf-8"):
    path = tmp_path / "expenses_upload.csv"
    path.write_text(text, encoding=encoding)
    return path


def _count(session) -> int:
    return session.scalar(select(func.count()).select_from(ExpenseRecord))


def test_import_inserts_every_row_and_removes_file(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries", "Dining"))
    path = _write(
        tmp_path,
        HEADER
        + "01/05/2024,12.5,USD,Food,Groceries,weekly shop\n"
        + "2024-01-06,$8.00,USD,Food,Dining,\n"
        + "01/07/2024,3.456,USD,Food,Dining,coffee\n",
    )

    result = BulkImportService(session, alice.id).import_file(path)

    assert result.inserted_count == 3
    assert len({r["id"] for r in result.inserted_records}) == 3
    assert not path.exists()

    records = session.scalars(
        select(ExpenseRecord).order_by(ExpenseRecord.expense_date)
    ).all()
    assert [r.expense_date for r in records] == [
        date(2024, 1, 5),
        date(2024, 1, 6),
        date(2024, 1, 7),
    ]
    assert records[0].amount == Decimal("12.50")
    assert records[0].reason == "weekly shop"
    assert records[1].reason is None
    assert records[2].amount == Decimal("3.46")
    assert all(r.occurred_at.time() == time(12, 0) for r in records)
    assert all(r.user_id == alice.id for r in records)


def test_one_unknown_category_rejects_whole_file(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    path = _write(
        tmp_path,
        HEADER
        + "01/01/2024,1,USD,Food,Groceries,\n"
        + "01/02/2024,2,USD,Food,Groceries,\n"
        + "01/03/2024,3,USD,Travel,Groceries,\n"
        + "01/04/2024,4,USD,Food,Groceries,\n"
        + "01/05/2024,5,USD,Food,Groceries,\n",
    )

    with pytest.raises(ImportValidationError) as excinfo:
        BulkImportService(session, alice.id).import_file(path)

    assert "Line 4" in str(excinfo.value)
    assert "'Travel'" in str(excinfo.value)
    assert _count(session) == 0
    assert not path.exists()


def test_unknown_name_suggests_close_match(session, alice, tmp_path) -> None:
    make_category(session, alice, "Groceries", ("Supermarket",))
    path = _write(tmp_path, HEADER + "01/01/2024,1,USD,Grocerys,Supermarket,\n")

    with pytest.raises(ImportValidationError, match="did you mean 'Groceries'"):
        BulkImportService(session, alice.id).import_file(path)


def test_names_are_resolved_per_user(session, alice, bob, tmp_path) -> None:
    make_category(session, bob, "Food", ("Groceries",))
    path = _write(tmp_path, HEADER + "01/01/2024,1,USD,Food,Groceries,\n")

    with pytest.raises(ImportValidationError, match="category 'Food' was not found"):
        BulkImportService(session, alice.id).import_file(path)
    assert _count(session) == 0


def test_sub_category_must_belong_to_row_category(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    make_category(session, alice, "Travel", ("Flights",))
    path = _write(tmp_path, HEADER + "01/01/2024,1,USD,Food,Flights,\n")

    with pytest.raises(ImportValidationError, match="does not belong"):
        BulkImportService(session, alice.id).import_file(path)


def test_invalid_date_and_amount_are_reported_with_line(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    service = BulkImportService(session, alice.id)

    bad_date = _write(tmp_path, HEADER + "31/31/2024,1,USD,Food,Groceries,\n")
    with pytest.raises(ImportValidationError, match="Line 2: Invalid date"):
        service.import_file(bad_date)

    bad_amount = _write(tmp_path, HEADER + "01/01/2024,lots,USD,Food,Groceries,\n")
    with pytest.raises(ImportValidationError, match="Line 2: Invalid amount"):
        service.import_file(bad_amount)
    assert _count(session) == 0


def test_header_only_file_is_rejected(session, alice, tmp_path) -> None:
    path = _write(tmp_path, HEADER)

    with pytest.raises(ImportValidationError, match="no expense records"):
        BulkImportService(session, alice.id).import_file(path)


def test_byte_order_mark_and_padded_headers_are_accepted(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    path = _write(
        tmp_path,
        " expenseDate , amount ,currency,category,subCategory\n"
        "01/05/2024, 10 ,USD, Food ,Groceries\n",
        encoding="utf-8-sig",
    )

    result = BulkImportService(session, alice.id).import_file(path)

    assert result.inserted_count == 1
    assert result.inserted_records[0]["amount"] == Decimal("10.00")


def test_missing_column_is_a_parse_error(session, alice, tmp_path) -> None:
    path = _write(tmp_path, "expenseDate,amount,category\n01/01/2024,1,Food\n")

    with pytest.raises(ImportParseError, match="Failed to parse CSV"):
        BulkImportService(session, alice.id).import_file(path)
    assert not path.exists()


def test_insert_failure_leaves_no_rows(session, alice, tmp_path, monkeypatch) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    path = _write(
        tmp_path,
        HEADER
        + "01/01/2024,1,USD,Food,Groceries,\n"
        + "01/02/2024,2,USD,Food,Groceries,\n",
    )
    monkeypatch.setattr(services, "generate_id", lambda: "duplicate-id")

    with pytest.raises(ImportInsertError, match="Failed to insert expenses."):
        BulkImportService(session, alice.id).import_file(path)

    assert _count(session) == 0
    assert not path.exists()


def test_imported_records_get_timestamps(session, alice, tmp_path) -> None:
    make_category(session, alice, "Food", ("Groceries",))
    path = _write(tmp_path, HEADER + "01/01/2024,1,USD,Food,Groceries,\n")
    before = datetime.utcnow()

    BulkImportService(session, alice.id).import_file(path)

    record = session.scalars(select(ExpenseRecord)).one()
    assert record.created_at >= before.replace(microsecond=0)
    assert record.updated_at == record.created_at
