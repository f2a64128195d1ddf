"""Core utility functions for the application"""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Union


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.
    SQLite returns naive datetimes, so everything is stored naive in UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_business_date(business_date: date, days: int = 1) -> date:
    """
    Calculate the next business date.

    Args:
        business_date: The current business date
        days: Number of days to add (default: 1)

    Returns:
        date: The following business date
    """
    return business_date + timedelta(days=days)


def new_id() -> str:
    """Generate a new UUID string identifier."""
    return str(uuid.uuid4())


def to_money(amount: Union[Decimal, float, int, str]) -> Decimal:
    """
    Normalize an amount to a Decimal rounded to 2 places.
    """
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))

    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
