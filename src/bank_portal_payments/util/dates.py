from __future__ import annotations

import re
from datetime import date, datetime
from typing import Union

from dateutil import parser as date_parser


_DMY_RE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})$")
_YMD_RE = re.compile(r"^(\d{4})[/.-](\d{1,2})[/.-](\d{1,2})$")


def normalize_payment_date(value: Union[str, date, datetime]) -> date:
    """
    Single date policy shared by batch import and the portal form filler.

    - "5/3/2026"   -> 2026-03-05 (day/month first)
    - "3/25/2026"  -> 2026-03-25 (middle number > 12 forces month/day)
    - "2026-03-05" -> 2026-03-05
    Anything else goes through dateutil with dayfirst=True.
    """
    if value is None:
        raise ValueError("normalize_payment_date: value is None")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s:
        raise ValueError("normalize_payment_date: empty string")

    m = _DMY_RE.match(s)
    if m:
        a, b, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        month_first = b > 12 and 1 <= a <= 12
        day, month = (b, a) if month_first else (a, b)
        return date(year, month, day)

    m = _YMD_RE.match(s)
    if m:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    return date_parser.parse(s, dayfirst=True).date()


def format_portal_date(d: date) -> str:
    # The portal's text date inputs use DD/MM/YYYY.
    return d.strftime("%d/%m/%Y")


def format_iso_date(d: date) -> str:
    return d.isoformat()
