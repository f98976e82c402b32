import os
import tempfile
from datetime import date, datetime, time
from decimal import Decimal

os.environ.setdefault("EXPENSES_DATA_DIR", tempfile.mkdtemp(prefix="expenses-test-"))
os.environ.setdefault("EXPENSES_SCHEDULER_ENABLED", "false")

import pytest  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from database import create_db_engine, init_db  # noqa: E402
from models import Category, ExpenseRecord, SubCategory, User  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_db_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


def make_user(session: Session, email: str) -> User:
    user = User(email=email, password_hash="unused")
    session.add(user)
    session.commit()
    return user


def make_category(
    session: Session, user: User, name: str, sub_names: tuple[str, ...] = ()
) -> tuple[Category, list[SubCategory]]:
    category = Category(user_id=user.id, name=name)
    session.add(category)
    session.flush()
    subs = []
    for sub_name in sub_names:
        sub = SubCategory(user_id=user.id, category_id=category.id, name=sub_name)
        session.add(sub)
        subs.append(sub)
    session.commit()
    return category, subs


def add_record(
    session: Session,
    user: User,
    category: Category,
    sub_category: SubCategory,
    expense_date: date,
    amount: str,
    reason: str = "",
) -> ExpenseRecord:
    record = ExpenseRecord(
        user_id=user.id,
        expense_date=expense_date,
        occurred_at=datetime.combine(expense_date, time(12, 0)),
        amount=Decimal(amount),
        currency="USD",
        reason=reason or None,
        category_id=category.id,
        sub_category_id=sub_category.id,
    )
    session.add(record)
    session.commit()
    return record


@pytest.fixture()
def alice(session) -> User:
    return make_user(session, "alice@example.com")


@pytest.fixture()
def bob(session) -> User:
    return make_user(session, "bob@example.com")
