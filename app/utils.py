import re
from datetime import date

def today():
    return date.today()

def month_bounds(d: date):
    """First day of d's month and first day of the next month."""
    start = date(d.year, d.month, 1)
    end = date(d.year + 1, 1, 1) if d.month == 12 else date(d.year, d.month + 1, 1)
    return start, end

def parse_month(month: str | None, default: date | None = None) -> date:
    """'2024-03' -> date(2024, 3, 1). Anything unparseable falls back to the current month."""
    base = default or today()
    m = re.fullmatch(r"(\d{4})-(\d{1,2})", (month or "").strip())
    if m:
        try:
            start = date(int(m.group(1)), int(m.group(2)), 1)
            month_bounds(start)
            return start
        except ValueError:
            pass
    return date(base.year, base.month, 1)
