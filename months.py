import re
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def year_month_for(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def is_year_month(value: str) -> bool:
    return bool(YEAR_MONTH_RE.match(value or ""))


def parse_year_month(value: str) -> tuple[int, int]:
    if not is_year_month(value):
        raise ValueError("Invalid year-month format. Use YYYY-MM")
    year, month = value.split("-")
    return int(year), int(month)


def current_year_month(*, today: Optional[date] = None) -> str:
    if today is None:
        today = datetime.now(ZoneInfo(get_settings().timezone)).date()
    return year_month_for(today)
