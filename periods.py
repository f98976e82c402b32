import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from models import PeriodType


@dataclass(frozen=True)
class Window:
    """Date window for a chart query; ``end`` is None for open-ended windows."""

    slug: str
    start: datetime
    end: Optional[datetime]

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> Optional[date]:
        return self.end.date() if self.end else None


def _shift_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def bar_chart_window(
    period_type: PeriodType, *, start_hour: int, today: Optional[date] = None
) -> Window:
    today = today or date.today()
    if period_type == PeriodType.yearly:
        # current year plus the six before it
        start = datetime(today.year - 6, 1, 1, start_hour)
        return Window("last_7_years", start, None)

    year, month = _shift_months(today.year, today.month, -11)
    start = datetime(year, month, 1, start_hour)
    return Window("last_12_months", start, None)


def pie_chart_window(year: int, month: Optional[int], *, start_hour: int) -> Window:
    if month is not None:
        if not 1 <= month <= 12:
            raise ValueError("Month must be between 1 and 12")
        last_day = calendar.monthrange(year, month)[1]
        start = datetime(year, month, 1, start_hour)
        end = datetime(year, month, last_day, 23, 59, 59, 999999)
        return Window("month", start, end)

    start = datetime(year, 1, 1, start_hour)
    end = datetime(year, 12, 31, 23, 59, 59, 999999)
    return Window("year", start, end)


def bucket_label(value: date, period_type: PeriodType) -> str:
    if period_type == PeriodType.yearly:
        return f"{value.year}"
    return f"{value.year}-{value.month}"
