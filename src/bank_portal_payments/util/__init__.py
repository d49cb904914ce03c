from .dates import format_iso_date, format_portal_date, normalize_payment_date
from .money import MoneyCandidates, normalize_money, parse_money

__all__ = [
    "format_iso_date",
    "format_portal_date",
    "normalize_payment_date",
    "MoneyCandidates",
    "normalize_money",
    "parse_money",
]
