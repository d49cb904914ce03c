from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from playwright.sync_api import Error as PlaywrightError

from ..util.dates import format_iso_date, format_portal_date
from ..util.money import amount_to_str, money_equals, normalize_money, parse_money
from .errors import CommitMismatch
from .locator import CLICK_JS, ElementRef
from .session import Session


logger = logging.getLogger(__name__)

MatchMode = Literal["exact", "prefix", "amount"]

# React/Angular keep their own copy of the value; assigning `el.value` is ignored unless it goes
# through the prototype setter and is followed by the events the framework listens to.
COMMIT_VALUE_JS = """
(el, value) => {
  const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
  const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
  el.focus();
  setter.call(el, value);
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  el.blur();
  return el.value;
}
"""


def value_matches(actual: str, expected: str, match: MatchMode = "exact") -> bool:
    a = (actual or "").strip()
    e = (expected or "").strip()
    if not a:
        return not e
    if match == "prefix":
        return a.startswith(e)
    if match == "amount":
        want = parse_money(e)
        return want is not None and money_equals(a, want)
    return a == e


class FormFiller:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.config = session.config
        self.log = session.log

    def read(self, ref: ElementRef) -> str:
        try:
            return ref.locator.input_value() or ""
        except PlaywrightError:
            return ""

    def set_value(self, ref: ElementRef, value: str, *, match: MatchMode = "exact", field: str = "") -> bool:
        """
        Commit `value` into a framework-managed input and verify it stuck.

        Native setter + synthetic events first; keyboard entry (select-all, type, Enter,
        Escape) when the portal's mask rejected or rewrote the value.
        """
        name = field or ref.text or ref.selector
        loc = ref.locator
        try:
            loc.evaluate(COMMIT_VALUE_JS, value)
        except PlaywrightError:
            logger.debug("Native setter failed for %s.", name, exc_info=True)
        self.session.sleep(self.config.delay_ms("post_field_delay"))

        actual = self.read(ref)
        if value_matches(actual, value, match):
            self.log.debug(f"[fill] {name} = {actual!r}")
            return True

        self.log.debug(f"[fill] {name}: setter left {actual!r}; retrying with the keyboard")
        kb = self.session.keyboard
        try:
            loc.focus()
            kb.press("Control+A")
            kb.type(value, delay=self.config.delay_ms("key_delay"))
            kb.press("Enter")
            kb.press("Escape")
        except PlaywrightError:
            logger.debug("Keyboard fallback failed for %s.", name, exc_info=True)
        self.session.sleep(self.config.delay_ms("post_field_delay"))

        actual = self.read(ref)
        ok = value_matches(actual, value, match)
        if ok:
            self.log.debug(f"[fill] {name} = {actual!r} (keyboard)")
        return ok

    def require_value(self, ref: ElementRef, value: str, *, match: MatchMode = "exact", field: str = "") -> None:
        if not self.set_value(ref, value, match=match, field=field):
            raise CommitMismatch(field or ref.text or ref.selector, value, self.read(ref))

    def set_amount(self, ref: ElementRef, amount: Decimal, *, field: str = "Monto") -> bool:
        # Masks differ per page: some only take "1234.56", others only "1234,56".
        for candidate in normalize_money(amount_to_str(amount)):
            if self.set_value(ref, candidate, match="amount", field=field):
                return True
        return False

    def require_amount(self, ref: ElementRef, amount: Decimal, *, field: str = "Monto") -> None:
        if not self.set_amount(ref, amount, field=field):
            raise CommitMismatch(field, amount_to_str(amount), self.read(ref))

    def set_date(
        self,
        ref: ElementRef,
        value: date,
        *,
        neutral: Optional[ElementRef] = None,
        field: str = "Fecha",
    ) -> bool:
        try:
            input_type = (ref.locator.get_attribute("type") or "").lower()
        except PlaywrightError:
            input_type = ""
        text = format_iso_date(value) if input_type == "date" else format_portal_date(value)
        self.log.debug(f"[date] {field} <- {text} (type={input_type or 'text'})")
        ok = self.set_value(ref, text, match="prefix", field=field)
        # The date picker popover stays open and covers the add/continue buttons.
        self.dismiss_popover(ref.scope, neutral=neutral, click_corner=self.config.date_corner_click)
        return ok

    def require_date(self, ref: ElementRef, value: date, *, neutral: Optional[ElementRef] = None, field: str = "Fecha") -> None:
        if not self.set_date(ref, value, neutral=neutral, field=field):
            raise CommitMismatch(field, format_portal_date(value), self.read(ref))

    def dismiss_popover(self, scope: object = None, *, neutral: Optional[ElementRef] = None, click_corner: bool = False) -> None:
        session = self.session
        session.press("Escape")
        session.sleep(self.config.delay_ms("key_delay"))
        session.press("Escape")

        if neutral is not None:
            try:
                neutral.locator.focus()
            except PlaywrightError:
                logger.debug("Could not focus neutral field.", exc_info=True)

        body_scope = scope if scope is not None else session.page
        try:
            body_scope.locator("body").evaluate(CLICK_JS)
        except PlaywrightError:
            logger.debug("Could not click body to close popovers.", exc_info=True)

        if click_corner:
            try:
                session.page.mouse.click(5, 5)
            except PlaywrightError:
                logger.debug("Could not click neutral coordinate.", exc_info=True)

        session.press("Tab")
