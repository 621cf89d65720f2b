"""National minimum wage history and claim-value arithmetic.

The value of the claim for a maternity benefit is four monthly minimum
wages of the year of the triggering event (birth, adoption, custody).
"""

import re

MINIMUM_WAGE_BY_YEAR: dict[int, float] = {
    2010: 510.00,
    2011: 545.00,
    2012: 622.00,
    2013: 678.00,
    2014: 724.00,
    2015: 788.00,
    2016: 880.00,
    2017: 937.00,
    2018: 954.00,
    2019: 998.00,
    2020: 1045.00,
    2021: 1100.00,
    2022: 1212.00,
    2023: 1320.00,
    2024: 1412.00,
    2025: 1518.00,
}

DEFAULT_MINIMUM_WAGE = 1412.00
BENEFIT_MONTHS = 4

_ISO_YEAR = re.compile(r"^(\d{4})-\d{2}-\d{2}")
_BR_YEAR = re.compile(r"^\d{1,2}/\d{1,2}/(\d{4})")


def minimum_wage_for(year: int) -> float:
    return MINIMUM_WAGE_BY_YEAR.get(year, DEFAULT_MINIMUM_WAGE)


def event_year(date_text: str | None) -> int | None:
    """Year of a YYYY-MM-DD or DD/MM/YYYY date; None when unparseable."""
    text = (date_text or "").strip()
    match = _ISO_YEAR.match(text) or _BR_YEAR.match(text)
    return int(match.group(1)) if match else None


def claim_value(year: int) -> float:
    return round(minimum_wage_for(year) * BENEFIT_MONTHS, 2)


def format_brl(value: float) -> str:
    """1234.5 -> '1.234,50'"""
    whole, cents = f"{value:,.2f}".split(".")
    return f"{whole.replace(',', '.')},{cents}"


def parse_brl(text: str) -> float | None:
    cleaned = text.strip().replace(".", "").replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None
