from datetime import date

import pytest

from app.utils import month_bounds, parse_month


@pytest.mark.parametrize("d, expected", [
    (date(2024, 3, 15), (date(2024, 3, 1), date(2024, 4, 1))),
    (date(2024, 12, 31), (date(2024, 12, 1), date(2025, 1, 1))),
    (date(2024, 2, 1), (date(2024, 2, 1), date(2024, 3, 1))),
])
def test_month_bounds(d, expected):
    assert month_bounds(d) == expected


@pytest.mark.parametrize("raw, expected", [
    ("2024-03", date(2024, 3, 1)),
    ("2024-3", date(2024, 3, 1)),
    (" 2023-12 ", date(2023, 12, 1)),
    ("2024-13", date(2025, 6, 1)),
    ("garbage", date(2025, 6, 1)),
    ("0000-03", date(2025, 6, 1)),
    ("9999-12", date(2025, 6, 1)),
    ("9999-11", date(9999, 11, 1)),
    (None, date(2025, 6, 1)),
])
def test_parse_month(raw, expected):
    assert parse_month(raw, default=date(2025, 6, 18)) == expected
