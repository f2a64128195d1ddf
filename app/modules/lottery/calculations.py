"""
Ticket math for lottery closings.

Serials are 3-digit positions within a pack ("000" - "999"). The ending serial
is the next ticket position to sell, so tickets sold is ending - starting.
"""

import re
from decimal import Decimal
from typing import Optional, Tuple, Union

from app.core.utils import to_money


MIN_SERIAL_NUMBER = 0
MAX_SERIAL_NUMBER = 999

_SERIAL_RE = re.compile(r"^\d{1,3}$")


def parse_serial(serial: Union[str, int, None]) -> Optional[int]:
    """
    Parse a serial into an integer position.

    Returns None for anything that is not a whole number in 0-999. Leading
    zeros are decimal ("010" is 10).
    """
    if serial is None or isinstance(serial, bool):
        return None

    if isinstance(serial, int):
        num = serial
    elif isinstance(serial, str):
        if not _SERIAL_RE.match(serial):
            return None
        num = int(serial, 10)
    else:
        return None

    if num < MIN_SERIAL_NUMBER or num > MAX_SERIAL_NUMBER:
        return None

    return num


def calculate_tickets_sold(starting: int, ending: int) -> Tuple[int, bool]:
    """
    Tickets sold between two serial positions.

    A negative delta clamps to zero instead of failing; it is treated as a
    scanning correction. Returns (tickets_sold, clamped).
    """
    delta = ending - starting
    if delta < 0:
        return 0, True
    return delta, False


def calculate_sales_amount(tickets_sold: int, unit_price: Union[Decimal, float, str]) -> Decimal:
    """sales_amount = tickets_sold x unit_price, rounded to cents."""
    return to_money(Decimal(tickets_sold) * to_money(unit_price))
