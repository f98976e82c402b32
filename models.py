import base64
import secrets
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def generate_id(size: int = 10) -> str:
    """Random id with ``size`` bytes of entropy, base32 lowercase, unpadded."""
    raw = secrets.token_bytes(size)
    return base64.b32encode(raw).decode("ascii").lower().rstrip("=")


class PeriodType(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class GroupBy(str, Enum):
    category = "category"
    sub_category = "subCategory"


class SortBy(str, Enum):
    newest = "newest"
    oldest = "oldest"
    highest = "highest"
    lowest = "lowest"


class VerificationPurpose(str, Enum):
    register = "register"
    reset_password = "reset_password"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    sub_categories: Mapped[list["SubCategory"]] = relationship(
        "SubCategory",
        back_populates="category",
        order_by="SubCategory.name",
        passive_deletes="all",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class SubCategory(Base, TimestampMixin):
    __tablename__ = "sub_categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="sub_categories"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_sub_category_user_name"),
    )


class ExpenseRecord(Base, TimestampMixin):
    __tablename__ = "expense_records"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    sub_category_id: Mapped[str] = mapped_column(
        ForeignKey("sub_categories.id"), nullable=False
    )

    __table_args__ = (
        Index("ix_expense_records_user_date", "user_id", "expense_date"),
        Index(
            "ix_expense_records_user_category_date",
            "user_id",
            "category_id",
            "expense_date",
        ),
    )


class PendingVerification(Base):
    __tablename__ = "pending_verifications"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    purpose: Mapped[VerificationPurpose] = mapped_column(
        SAEnum(VerificationPurpose), nullable=False
    )
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("email", "purpose", name="uq_pending_email_purpose"),
    )
