from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union


_JUNK_RE = re.compile(r"[^\d.,-]")


@dataclass(frozen=True)
class MoneyCandidates:
    """The same amount in decimal-point and decimal-comma notation."""

    dot: str
    comma: str

    def __iter__(self):
        yield self.dot
        yield self.comma


def normalize_money(raw: Union[str, int, float, Decimal]) -> MoneyCandidates:
    """
    Accept values like:
    - "1.234,56" / "1234,56"  (comma decimal)
    - "1,234.56" / "1234.56"  (point decimal)
    - "$ 1234"

    Whichever separator appears last is treated as the decimal separator.
    """
    if raw is None:
        raise ValueError("normalize_money: value is None")

    s = str(raw).strip()
    s = _JUNK_RE.sub("", s.replace(" ", ""))
    if not s:
        raise ValueError("normalize_money: no digits in value")

    last_comma = s.rfind(",")
    last_dot = s.rfind(".")
    if last_comma != -1 and last_dot != -1:
        if last_comma > last_dot:
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif last_comma != -1:
        s = s.replace(",", ".")

    return MoneyCandidates(dot=s, comma=s.replace(".", ","))


def parse_money(raw: Union[str, int, float, Decimal]) -> Optional[Decimal]:
    try:
        return Decimal(normalize_money(raw).dot)
    except (ValueError, InvalidOperation):
        return None


# A single separator before groups of exactly three digits: "1.500", "12,345,678".
_GROUPED_INT_RE = re.compile(r"^\d{1,3}([.,])\d{3}(?:\1\d{3})*$")


def money_equals(raw: str, target: Decimal) -> bool:
    """
    True when a value shown by an input mask means `target`.

    `normalize_money` reads "1.500" as 1.5, but masks that group thousands without decimals
    render 1500 that way, so the grouped-integer reading is accepted as well.
    """
    got = parse_money(raw)
    if got is not None and got == target:
        return True
    s = _JUNK_RE.sub("", str(raw or "").replace(" ", ""))
    if _GROUPED_INT_RE.match(s):
        return Decimal(re.sub(r"\D", "", s)) == target
    return False


def quantize_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    return dec.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def amount_to_str(value: Decimal) -> str:
    # "1500.00" -> "1500", "1234.50" -> "1234.5" (the portal masks add zeros back)
    s = format(value.normalize(), "f")
    return s
