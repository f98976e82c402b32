from datetime import date, datetime
from decimal import Decimal
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class APIModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class Page(APIModel, Generic[T]):
    items: list[T]
    current_page: int
    total_pages: int
    total_items: int
    page_size: int


class MessageOut(APIModel):
    message: str


# Auth


class RegisterIn(APIModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class VerifyCodeIn(APIModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=12)


class LoginIn(APIModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class LoginOut(APIModel):
    message: str
    access_token: str


class EmailIn(APIModel):
    email: EmailStr


class ResetPasswordIn(APIModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=12)
    password: str = Field(..., min_length=6, max_length=128)


class UserOut(APIModel):
    id: str
    email: str
    name: str


# Category graph


class CategoryIn(APIModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryPatch(APIModel):
    """Fields left out of the request body are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


class SubCategoryIn(APIModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: str = Field(..., min_length=1)


class SubCategoryPatch(APIModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: Optional[str] = Field(default=None, min_length=1)


class CategoryRef(APIModel):
    id: str
    name: str


class SubCategoryBrief(APIModel):
    id: str
    name: str
    description: Optional[str] = None


class CategoryOut(APIModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CategoryTreeOut(CategoryOut):
    sub_categories: list[SubCategoryBrief] = Field(default_factory=list)


class SubCategoryOut(APIModel):
    id: str
    name: str
    description: Optional[str] = None
    category_id: str
    category: Optional[CategoryRef] = None
    created_at: datetime
    updated_at: datetime


# Expense records


class ExpenseRecordIn(APIModel):
    expense_date: date
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    currency: str = Field(..., min_length=1, max_length=10)
    reason: Optional[str] = Field(default=None, max_length=500)
    category_id: str = Field(..., min_length=1)
    sub_category_id: str = Field(..., min_length=1)
    occurred_at: Optional[datetime] = None


class ExpenseRecordPatch(APIModel):
    expense_date: Optional[date] = None
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    reason: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[str] = Field(default=None, min_length=1)
    sub_category_id: Optional[str] = Field(default=None, min_length=1)


class ExpenseRecordOut(APIModel):
    id: str
    expense_date: date
    amount: Decimal
    currency: str
    reason: Optional[str] = None
    category_id: str
    sub_category_id: str
    created_at: datetime
    updated_at: datetime


class BulkImportOut(APIModel):
    inserted_count: int
    inserted_records: list[ExpenseRecordOut]


# Dashboard


class CardSummaryOut(APIModel):
    total_expense: float
    total_days: int
    average_per_day: float


class BarChartPoint(APIModel):
    period: str = Field(..., alias="date")
    amount: float


class BarChartOut(APIModel):
    total_expense: float
    average_expense: float
    periods_with_data: int
    data_points: list[BarChartPoint]


class PieSliceOut(APIModel):
    label: str
    amount: str
    percentage: float
    count: int


class PieChartOut(APIModel):
    total_expense: float
    pie_chart_data: list[PieSliceOut]
