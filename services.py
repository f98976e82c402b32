from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from csv_utils import CSVFormatError, parse_amount, parse_date, parse_import_file
from mailer import Mailer
from models import (
    Category,
    ExpenseRecord,
    GroupBy,
    PendingVerification,
    PeriodType,
    SortBy,
    SubCategory,
    User,
    VerificationPurpose,
    generate_id,
)
from periods import bar_chart_window, bucket_label, pie_chart_window
from schemas import (
    CategoryIn,
    CategoryPatch,
    ExpenseRecordIn,
    ExpenseRecordPatch,
    SubCategoryIn,
    SubCategoryPatch,
)
from security import hash_password, issue_token, verify_password

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


class NotFoundError(LookupError):
    pass


class ForbiddenError(PermissionError):
    pass


class ConflictError(ValueError):
    pass


class InvalidRequestError(ValueError):
    pass


class AuthenticationError(Exception):
    pass


class ImportValidationError(InvalidRequestError):
    pass


class ImportParseError(InvalidRequestError):
    pass


class ImportInsertError(RuntimeError):
    pass


class NoDataError(LookupError):
    pass


def round_half_up(value: float) -> float:
    return float(Decimal(repr(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def format_amount(value: float) -> str:
    return str(Decimal(repr(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def _paginate(session: Session, stmt, page: int, page_size: int, options=()) -> dict:
    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)
    total = session.scalar(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    )
    total = int(total or 0)
    items = session.scalars(
        stmt.options(*options).offset((page - 1) * page_size).limit(page_size)
    ).all()
    return {
        "items": list(items),
        "current_page": page,
        "total_pages": math.ceil(total / page_size),
        "total_items": total,
        "page_size": page_size,
    }


def _get_owned(session: Session, model, object_id: str, user_id: str, label: str):
    obj = session.get(model, object_id)
    if obj is None:
        raise NotFoundError(f"{label} with the id of {object_id} was not found")
    if obj.user_id != user_id:
        raise ForbiddenError(
            f"{label} with the id of {object_id} belongs to another user"
        )
    return obj


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _commit_unique(session: Session, message: str) -> None:
    # concurrent writers can pass the name check; the unique constraint decides
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message) from exc


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, page: int = 1, page_size: int = 10, name: Optional[str] = None):
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at.desc(), Category.id)
        )
        if name and name.strip():
            like = f"%{name.strip().lower()}%"
            stmt = stmt.where(func.lower(Category.name).like(like))
        return _paginate(self.session, stmt, page, page_size)

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .options(selectinload(Category.sub_categories))
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.id == category_id
            )
        )
        if not category:
            raise NotFoundError(f"Category with the id of {category_id} was not found")
        return category

    def _ensure_unique(self, name: str) -> None:
        existing = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise ConflictError(f"Category '{name}' already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise InvalidRequestError("Category name cannot be empty")
        self._ensure_unique(name)
        category = Category(
            user_id=self.user_id,
            name=name,
            description=_clean_text(data.description),
        )
        self.session.add(category)
        _commit_unique(self.session, f"Category '{name}' already exists")
        self.session.refresh(category)
        return category

    def update(self, category_id: str, data: CategoryPatch) -> Category:
        category = _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )
        fields = data.model_fields_set
        if "name" in fields:
            name = (data.name or "").strip()
            if not name:
                raise InvalidRequestError("Category name cannot be empty")
            if name.lower() != category.name.lower():
                self._ensure_unique(name)
            category.name = name
        if "description" in fields:
            category.description = _clean_text(data.description)
        _commit_unique(self.session, f"Category '{category.name}' already exists")
        self.session.refresh(category)
        return category

    def delete(self, category_id: str) -> None:
        category = _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )
        self.session.delete(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                f"Category with the id of {category_id} is still in use"
            ) from exc


class SubCategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, page: int = 1, page_size: int = 10, name: Optional[str] = None):
        stmt = (
            select(SubCategory)
            .where(SubCategory.user_id == self.user_id)
            .order_by(SubCategory.created_at.desc(), SubCategory.id)
        )
        if name and name.strip():
            like = f"%{name.strip().lower()}%"
            stmt = stmt.where(func.lower(SubCategory.name).like(like))
        return _paginate(
            self.session,
            stmt,
            page,
            page_size,
            options=(selectinload(SubCategory.category),),
        )

    def get(self, sub_category_id: str) -> SubCategory:
        sub_category = self.session.scalar(
            select(SubCategory)
            .options(selectinload(SubCategory.category))
            .where(
                SubCategory.user_id == self.user_id,
                SubCategory.id == sub_category_id,
            )
        )
        if not sub_category:
            raise NotFoundError(
                f"Subcategory with the id of {sub_category_id} was not found"
            )
        return sub_category

    def _ensure_unique(self, name: str) -> None:
        existing = self.session.scalar(
            select(SubCategory.id).where(
                SubCategory.user_id == self.user_id,
                func.lower(SubCategory.name) == name.lower(),
            )
        )
        if existing:
            raise ConflictError(f"Subcategory '{name}' already exists")

    def create(self, data: SubCategoryIn) -> SubCategory:
        name = data.name.strip()
        if not name:
            raise InvalidRequestError("Subcategory name cannot be empty")
        _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        self._ensure_unique(name)
        sub_category = SubCategory(
            user_id=self.user_id,
            category_id=data.category_id,
            name=name,
            description=_clean_text(data.description),
        )
        self.session.add(sub_category)
        _commit_unique(self.session, f"Subcategory '{name}' already exists")
        self.session.refresh(sub_category)
        return sub_category

    def update(self, sub_category_id: str, data: SubCategoryPatch) -> SubCategory:
        sub_category = _get_owned(
            self.session, SubCategory, sub_category_id, self.user_id, "Subcategory"
        )
        fields = data.model_fields_set
        if "name" in fields:
            name = (data.name or "").strip()
            if not name:
                raise InvalidRequestError("Subcategory name cannot be empty")
            if name.lower() != sub_category.name.lower():
                self._ensure_unique(name)
            sub_category.name = name
        if "description" in fields:
            sub_category.description = _clean_text(data.description)
        if "category_id" in fields:
            if not data.category_id:
                raise InvalidRequestError("Subcategory must belong to a category")
            _get_owned(
                self.session, Category, data.category_id, self.user_id, "Category"
            )
            if data.category_id != sub_category.category_id:
                # records follow their sub-category into the new category
                moved = self.session.execute(
                    update(ExpenseRecord)
                    .where(
                        ExpenseRecord.user_id == self.user_id,
                        ExpenseRecord.sub_category_id == sub_category.id,
                    )
                    .values(category_id=data.category_id)
                    .execution_options(synchronize_session="fetch")
                )
                logger.info(
                    f"sub_category_moved: id={sub_category.id} "
                    f"category={data.category_id} records={moved.rowcount}"
                )
            sub_category.category_id = data.category_id
        _commit_unique(
            self.session, f"Subcategory '{sub_category.name}' already exists"
        )
        self.session.refresh(sub_category)
        return sub_category

    def delete(self, sub_category_id: str) -> None:
        sub_category = _get_owned(
            self.session, SubCategory, sub_category_id, self.user_id, "Subcategory"
        )
        self.session.delete(sub_category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                f"Subcategory with the id of {sub_category_id} is still in use"
            ) from exc


@dataclass
class ExpenseRecordFilters:
    reason: Optional[str] = None
    category_id: Optional[str] = None
    sub_category_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sort_by: SortBy = SortBy.newest


_SORT_ORDER = {
    SortBy.newest: (ExpenseRecord.expense_date.desc(), ExpenseRecord.id.desc()),
    SortBy.oldest: (ExpenseRecord.expense_date.asc(), ExpenseRecord.id.asc()),
    SortBy.highest: (ExpenseRecord.amount.desc(), ExpenseRecord.id.desc()),
    SortBy.lowest: (ExpenseRecord.amount.asc(), ExpenseRecord.id.asc()),
}


class ExpenseRecordService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()

    def list(
        self,
        filters: Optional[ExpenseRecordFilters] = None,
        page: int = 1,
        page_size: int = 10,
    ):
        filters = filters or ExpenseRecordFilters()
        stmt = select(ExpenseRecord).where(ExpenseRecord.user_id == self.user_id)
        if filters.reason and filters.reason.strip():
            like = f"%{filters.reason.strip().lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(ExpenseRecord.reason, "")).like(like)
            )
        if filters.category_id:
            stmt = stmt.where(ExpenseRecord.category_id == filters.category_id)
        if filters.sub_category_id:
            stmt = stmt.where(ExpenseRecord.sub_category_id == filters.sub_category_id)
        if filters.start_date:
            stmt = stmt.where(ExpenseRecord.expense_date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(ExpenseRecord.expense_date <= filters.end_date)
        stmt = stmt.order_by(*_SORT_ORDER[filters.sort_by])
        return _paginate(self.session, stmt, page, page_size)

    def get(self, record_id: str) -> ExpenseRecord:
        record = self.session.scalar(
            select(ExpenseRecord).where(
                ExpenseRecord.user_id == self.user_id, ExpenseRecord.id == record_id
            )
        )
        if not record:
            raise NotFoundError(
                f"Expense record with the id of {record_id} was not found"
            )
        return record

    def _check_references(self, category_id: str, sub_category_id: str) -> None:
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        sub_category = _get_owned(
            self.session, SubCategory, sub_category_id, self.user_id, "Subcategory"
        )
        if sub_category.category_id != category_id:
            raise InvalidRequestError(
                f"Subcategory '{sub_category.name}' does not belong to the selected category"
            )

    def create(self, data: ExpenseRecordIn) -> ExpenseRecord:
        self._check_references(data.category_id, data.sub_category_id)
        occurred_at = data.occurred_at or datetime.combine(
            data.expense_date, time(self.settings.import_time_of_day_hour)
        )
        record = ExpenseRecord(
            user_id=self.user_id,
            expense_date=data.expense_date,
            occurred_at=occurred_at,
            amount=data.amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
            currency=data.currency.strip(),
            reason=_clean_text(data.reason),
            category_id=data.category_id,
            sub_category_id=data.sub_category_id,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def update(self, record_id: str, data: ExpenseRecordPatch) -> ExpenseRecord:
        record = _get_owned(
            self.session, ExpenseRecord, record_id, self.user_id, "Expense record"
        )
        fields = data.model_fields_set
        required_fields = (
            "expense_date",
            "amount",
            "currency",
            "category_id",
            "sub_category_id",
        )
        for required in required_fields:
            if required in fields and getattr(data, required) is None:
                raise InvalidRequestError(f"{required} cannot be empty")

        if "category_id" in fields or "sub_category_id" in fields:
            self._check_references(
                data.category_id or record.category_id,
                data.sub_category_id or record.sub_category_id,
            )
            record.category_id = data.category_id or record.category_id
            record.sub_category_id = data.sub_category_id or record.sub_category_id
        if "expense_date" in fields:
            record.expense_date = data.expense_date
            record.occurred_at = datetime.combine(
                data.expense_date, record.occurred_at.time()
            )
        if "amount" in fields:
            record.amount = data.amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        if "currency" in fields:
            currency = data.currency.strip()
            if not currency:
                raise InvalidRequestError("currency cannot be empty")
            record.currency = currency
        if "reason" in fields:
            record.reason = _clean_text(data.reason)
        self.session.commit()
        self.session.refresh(record)
        return record

    def delete(self, record_id: str) -> None:
        record = _get_owned(
            self.session, ExpenseRecord, record_id, self.user_id, "Expense record"
        )
        self.session.delete(record)
        self.session.commit()


class DashboardService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        *,
        high_expense_threshold: Optional[Decimal] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()
        self.threshold = (
            high_expense_threshold
            if high_expense_threshold is not None
            else self.settings.high_expense_threshold
        )

    def card_summary(self, now: Optional[datetime] = None) -> dict[str, object]:
        row = self.session.execute(
            select(
                func.sum(ExpenseRecord.amount).label("total"),
                func.min(ExpenseRecord.expense_date).label("earliest"),
            ).where(ExpenseRecord.user_id == self.user_id)
        ).one()
        if row.earliest is None:
            return {"total_expense": 0.0, "total_days": 0, "average_per_day": 0.0}

        now = now or local_now()
        total = float(row.total or 0)
        elapsed = now - datetime.combine(row.earliest, time.min)
        total_days = max(math.ceil(elapsed / timedelta(days=1)), 1)
        return {
            "total_expense": round_half_up(total),
            "total_days": total_days,
            "average_per_day": round_half_up(total / total_days),
        }

    def bar_chart(
        self,
        category_id: Optional[str] = None,
        sub_category_id: Optional[str] = None,
        period_type: PeriodType = PeriodType.monthly,
        include_high: bool = False,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        today = today or local_now().date()
        window = bar_chart_window(
            period_type, start_hour=self.settings.period_start_hour, today=today
        )
        stmt = (
            select(ExpenseRecord.expense_date, ExpenseRecord.amount)
            .where(
                ExpenseRecord.user_id == self.user_id,
                ExpenseRecord.expense_date >= window.start_date,
            )
            .order_by(ExpenseRecord.expense_date, ExpenseRecord.id)
        )
        if category_id:
            stmt = stmt.where(ExpenseRecord.category_id == category_id)
        if sub_category_id:
            stmt = stmt.where(ExpenseRecord.sub_category_id == sub_category_id)
        if not include_high:
            stmt = stmt.where(ExpenseRecord.amount < self.threshold)

        rows = self.session.execute(stmt).all()
        logger.info(
            f"bar_chart: user={self.user_id} window={window.slug} rows={len(rows)}"
        )
        if not rows:
            raise NoDataError("No data")

        grouped: dict[str, float] = {}
        total = 0.0
        for row in rows:
            key = bucket_label(row.expense_date, period_type)
            amount = float(row.amount)
            grouped[key] = grouped.get(key, 0.0) + amount
            total += amount

        periods_with_data = len(grouped)
        average = total / periods_with_data if periods_with_data else 0.0
        return {
            "total_expense": round_half_up(total),
            "average_expense": round_half_up(average),
            "periods_with_data": periods_with_data,
            "data_points": [
                {"period": label, "amount": round_half_up(value)}
                for label, value in grouped.items()
            ],
        }

    def pie_chart(
        self,
        year: int,
        month: Optional[int] = None,
        group_by: GroupBy = GroupBy.category,
        include_high: bool = False,
    ) -> dict[str, object]:
        try:
            window = pie_chart_window(
                year, month, start_hour=self.settings.period_start_hour
            )
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc

        stmt = (
            select(
                ExpenseRecord.amount,
                Category.name.label("category_name"),
                SubCategory.name.label("sub_category_name"),
            )
            .select_from(ExpenseRecord)
            .outerjoin(Category, Category.id == ExpenseRecord.category_id)
            .outerjoin(SubCategory, SubCategory.id == ExpenseRecord.sub_category_id)
            .where(
                ExpenseRecord.user_id == self.user_id,
                ExpenseRecord.expense_date >= window.start_date,
                ExpenseRecord.expense_date <= window.end_date,
            )
            .order_by(ExpenseRecord.expense_date, ExpenseRecord.id)
        )
        if not include_high:
            stmt = stmt.where(ExpenseRecord.amount < self.threshold)

        rows = self.session.execute(stmt).all()
        logger.info(
            f"pie_chart: user={self.user_id} window={window.slug} rows={len(rows)}"
        )
        if not rows:
            raise NoDataError("No data")

        groups: dict[str, list] = {}
        total = 0.0
        for row in rows:
            if group_by == GroupBy.sub_category:
                key = row.sub_category_name or ""
            else:
                key = row.category_name or ""
            amount = float(row.amount)
            bucket = groups.setdefault(key, [0.0, 0])
            bucket[0] += amount
            bucket[1] += 1
            total += amount

        ordered = sorted(groups.items(), key=lambda item: item[1][0], reverse=True)
        slices = []
        for label, (amount, count) in ordered:
            percentage = round_half_up(amount / total * 100) if total > 0 else 0.0
            slices.append(
                {
                    "label": label,
                    "amount": format_amount(amount),
                    "percentage": percentage,
                    "count": count,
                }
            )
        return {"total_expense": round_half_up(total), "pie_chart_data": slices}


@dataclass
class ImportResult:
    inserted_count: int
    inserted_records: list[dict[str, object]]


def _suggestion(name: str, candidates) -> str:
    best: Optional[str] = None
    best_distance: Optional[int] = None
    for candidate in candidates:
        dist = int(Levenshtein.distance(name.lower(), candidate.lower()))
        if best_distance is None or dist < best_distance:
            best, best_distance = candidate, dist
    if best is not None and best_distance is not None and best_distance <= 2:
        return f" (did you mean '{best}'?)"
    return ""


class BulkImportService:
    """Imports a delimited expense file: parse all rows, validate all, insert once."""

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()

    def _category_lookup(self) -> dict[str, str]:
        stmt = select(Category.id, Category.name).where(
            Category.user_id == self.user_id
        )
        return {row.name: row.id for row in self.session.execute(stmt)}

    def _sub_category_lookup(self) -> dict[str, tuple[str, str]]:
        stmt = select(
            SubCategory.id, SubCategory.name, SubCategory.category_id
        ).where(SubCategory.user_id == self.user_id)
        return {
            row.name: (row.id, row.category_id) for row in self.session.execute(stmt)
        }

    def import_file(self, path: Path) -> ImportResult:
        try:
            categories = self._category_lookup()
            sub_categories = self._sub_category_lookup()
            try:
                rows = parse_import_file(path.read_bytes())
            except OSError as exc:
                raise ImportParseError("Unable to read uploaded file") from exc
            except CSVFormatError as exc:
                raise ImportParseError(f"Failed to parse CSV: {exc}") from exc

            records = self._build_records(rows, categories, sub_categories)
            self._insert(records)
            logger.info(f"bulk_import: user={self.user_id} rows={len(records)}")
            return ImportResult(inserted_count=len(records), inserted_records=records)
        finally:
            path.unlink(missing_ok=True)

    def _build_records(
        self,
        rows: list[tuple[int, dict[str, str]]],
        categories: dict[str, str],
        sub_categories: dict[str, tuple[str, str]],
    ) -> list[dict[str, object]]:
        if not rows:
            raise ImportValidationError("File contains no expense records")

        now = datetime.utcnow()
        import_time = time(self.settings.import_time_of_day_hour)
        records: list[dict[str, object]] = []
        for line, row in rows:
            category_name = row["category"]
            category_id = categories.get(category_name)
            if category_id is None:
                raise ImportValidationError(
                    f"Line {line}: expense record with category '{category_name}' "
                    f"was not found{_suggestion(category_name, categories)}"
                )
            sub_category_name = row["subCategory"]
            sub_category = sub_categories.get(sub_category_name)
            if sub_category is None:
                raise ImportValidationError(
                    f"Line {line}: expense record with sub-category "
                    f"'{sub_category_name}' was not found"
                    f"{_suggestion(sub_category_name, sub_categories)}"
                )
            sub_category_id, parent_id = sub_category
            if parent_id != category_id:
                raise ImportValidationError(
                    f"Line {line}: sub-category '{sub_category_name}' does not "
                    f"belong to category '{category_name}'"
                )
            if not row["currency"]:
                raise ImportValidationError(f"Line {line}: currency is required")
            try:
                expense_date = parse_date(row["expenseDate"])
                amount = parse_amount(row["amount"])
            except ValueError as exc:
                raise ImportValidationError(f"Line {line}: {exc}") from exc

            records.append(
                {
                    "id": generate_id(),
                    "user_id": self.user_id,
                    "expense_date": expense_date,
                    "occurred_at": datetime.combine(expense_date, import_time),
                    "amount": amount,
                    "currency": row["currency"],
                    "reason": row["reason"] or None,
                    "category_id": category_id,
                    "sub_category_id": sub_category_id,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        return records

    def _insert(self, records: list[dict[str, object]]) -> None:
        try:
            self.session.execute(insert(ExpenseRecord), records)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"bulk_import_failed: user={self.user_id} rows={len(records)}"
            )
            raise ImportInsertError("Failed to insert expenses.") from exc


class AuthService:
    def __init__(self, session: Session, mailer: Optional[Mailer] = None) -> None:
        self.session = session
        self.settings = get_settings()
        self.mailer = mailer or Mailer()

    def _user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email.lower()))

    def _issue_code(
        self,
        email: str,
        purpose: VerificationPurpose,
        password_hash: Optional[str] = None,
    ) -> str:
        code = f"{secrets.randbelow(900000) + 100000}"
        self.session.execute(
            delete(PendingVerification).where(
                PendingVerification.email == email,
                PendingVerification.purpose == purpose,
            )
        )
        self.session.add(
            PendingVerification(
                email=email,
                purpose=purpose,
                code=code,
                password_hash=password_hash,
                expires_at=datetime.utcnow()
                + timedelta(minutes=self.settings.verification_code_ttl_minutes),
            )
        )
        self.session.commit()
        return code

    def _consume_code(
        self, email: str, purpose: VerificationPurpose, code: str
    ) -> PendingVerification:
        pending = self.session.scalar(
            select(PendingVerification).where(
                PendingVerification.email == email,
                PendingVerification.purpose == purpose,
            )
        )
        if not pending:
            raise InvalidRequestError("No pending verification found")
        if datetime.utcnow() > pending.expires_at:
            self.session.delete(pending)
            self.session.commit()
            raise InvalidRequestError("Verification code expired")
        if not secrets.compare_digest(pending.code, code.strip()):
            pending.attempts += 1
            if pending.attempts >= self.settings.verification_max_attempts:
                self.session.delete(pending)
                self.session.commit()
                logger.info(
                    f"verification_locked: email={email} purpose={purpose.value}"
                )
                raise InvalidRequestError(
                    "Too many failed attempts, request a new verification code"
                )
            self.session.commit()
            raise InvalidRequestError("Invalid verification code")
        return pending

    def start_registration(self, email: str, password: str) -> None:
        email = email.lower()
        if self._user_by_email(email):
            raise ConflictError(f"User with the email of {email} already exists")
        code = self._issue_code(
            email, VerificationPurpose.register, hash_password(password)
        )
        self.mailer.send_code(email, f"Register code for user {email}", code)
        logger.info(f"registration_started: email={email}")

    def verify_registration(self, email: str, code: str) -> User:
        email = email.lower()
        pending = self._consume_code(email, VerificationPurpose.register, code)
        if self._user_by_email(email):
            raise ConflictError(f"User with the email of {email} already exists")
        user = User(email=email, password_hash=pending.password_hash)
        self.session.add(user)
        self.session.delete(pending)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user={user.id}")
        return user

    def login(self, email: str, password: str) -> tuple[User, str]:
        user = self._user_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user, issue_token(user.id, user.email)

    def get_user(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def request_password_reset(self, email: str) -> None:
        email = email.lower()
        if not self._user_by_email(email):
            raise NotFoundError(f"User with the email of {email} does not exist")
        code = self._issue_code(email, VerificationPurpose.reset_password)
        self.mailer.send_code(email, f"Reset Password code for user {email}", code)

    def reset_password(self, email: str, code: str, password: str) -> None:
        email = email.lower()
        pending = self._consume_code(email, VerificationPurpose.reset_password, code)
        user = self._user_by_email(email)
        if not user:
            raise NotFoundError(f"User with the email of {email} does not exist")
        user.password_hash = hash_password(password)
        self.session.delete(pending)
        self.session.commit()
        logger.info(f"password_reset: user={user.id}")

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        result = self.session.execute(
            delete(PendingVerification).where(PendingVerification.expires_at < now)
        )
        self.session.commit()
        return int(result.rowcount or 0)
