from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any


class Currency(str, Enum):
    USD = "USD"
    INR = "INR"


DEFAULT_CURRENCY = Currency.INR

CURRENCY_SYMBOLS = {
    Currency.USD: "$",
    Currency.INR: "₹",
}

CURRENCY_ALIASES = {
    "$": Currency.USD,
    "usd": Currency.USD,
    "dollar": Currency.USD,
    "dollars": Currency.USD,
    "us dollar": Currency.USD,
    "inr": Currency.INR,
    "rs": Currency.INR,
    "rupee": Currency.INR,
    "rupees": Currency.INR,
    "indian rupee": Currency.INR,
    "₹": Currency.INR,
}

CENTS = Decimal("0.01")


def normalize_currency(value: Any, fallback: Currency = DEFAULT_CURRENCY) -> Currency:
    if isinstance(value, Currency):
        return value
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed.upper() in Currency.__members__:
            return Currency(trimmed.upper())
        mapped = CURRENCY_ALIASES.get(trimmed.lower())
        if mapped:
            return mapped
    return fallback


def currency_for_employee_type(employee_type: Any) -> Currency:
    # *_usa employees are paid in dollars; everyone else in rupees
    raw = getattr(employee_type, "value", employee_type)
    normalized = str(raw or "").strip().lower()
    if "usa" in normalized:
        return Currency.USD
    return Currency.INR


def _group_western(digits: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return ",".join(groups)


def _group_indian(digits: str) -> str:
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_amount(amount: Any, currency: Any = DEFAULT_CURRENCY) -> str:
    """Render an amount the way the en-US / en-IN locales do, e.g. $1,234.50 or ₹1,23,456.00."""
    safe_currency = normalize_currency(currency)
    try:
        value = Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        value = Decimal("0.00")
    if not value.is_finite():
        value = Decimal("0.00")

    sign = "-" if value < 0 else ""
    whole, _, fraction = f"{abs(value):.2f}".partition(".")
    grouped = _group_indian(whole) if safe_currency == Currency.INR else _group_western(whole)
    return f"{sign}{CURRENCY_SYMBOLS[safe_currency]}{grouped}.{fraction}"


def sum_by_currency(items, amount_of, currency_of) -> dict[Currency, Decimal]:
    totals: dict[Currency, Decimal] = {}
    for item in items:
        currency = normalize_currency(currency_of(item))
        totals[currency] = totals.get(currency, Decimal("0")) + Decimal(amount_of(item))
    return totals
