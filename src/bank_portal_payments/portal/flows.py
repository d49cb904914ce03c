from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional

from playwright.sync_api import Error as PlaywrightError

from ..models import CheckInstruction, PaymentInstruction, TransferInstruction
from .errors import LocatorMiss
from .filler import FormFiller
from .locator import ElementRef, Target
from .navigation import NavigationStateMachine, NavState
from .page_facts import poll, read_facts
from .selectors import DEFAULT_SELECTORS, PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


class PaymentFlow:
    """
    Shared shape of a portal payment flow: open the form, enter items one by one, then
    Continue -> terms -> "Preparar y autorizar". Subclasses supply the menus and fields.
    """

    kind = ""
    noun = "instruction"
    profile_name = ""

    def __init__(
        self,
        session: Session,
        nav: NavigationStateMachine,
        filler: FormFiller,
        selectors: Optional[PortalSelectors] = None,
    ) -> None:
        self.session = session
        self.nav = nav
        self.locator = nav.locator
        self.filler = filler
        self.config = session.config
        self.log = session.log
        self.selectors = selectors or DEFAULT_SELECTORS
        self.form: Any = None

    def section_targets(self) -> list[Target]:
        raise NotImplementedError

    def subsection_targets(self) -> list[Target]:
        raise NotImplementedError

    def scope_has_form(self, scope: Any) -> bool:
        raise NotImplementedError

    def enter_item(self, form: Any, instruction: PaymentInstruction, index: int) -> ElementRef:
        """Fill one item's fields. Returns the key field used to confirm the add."""
        raise NotImplementedError

    def needs_add(self, index: int, total: int) -> bool:
        return True

    def add_target(self) -> Target:
        raise NotImplementedError

    @property
    def pending_rows_selector(self) -> str:
        raise NotImplementedError

    def date_target(self) -> Target:
        sel = self.selectors
        return Target(
            label="Fecha",
            css=(sel.date_placeholder_input, sel.date_typed_input),
            attributes=(("labeltext", "fecha"), ("name", "fecha")),
            pattern=sel.date_label,
        )

    def open_form(self) -> Any:
        cfg = self.config
        self.log.info("Waiting for the dashboard to load...")
        self.session.sleep(cfg.delay_ms("dashboard_settle"))

        self.nav.click_transition(self.section_targets(), NavState.SECTION_OPEN, settle_ms=cfg.delay_ms("login_settle"))
        self.nav.click_transition(
            self.subsection_targets(), NavState.SUBSECTION_OPEN, settle_ms=cfg.delay_ms("menu_settle")
        )

        form = poll(
            self.find_form_frame,
            now=self.session.now,
            sleep=self.session.sleep,
            timeout_ms=10 * cfg.timing.poll_interval_ms,
            interval_ms=cfg.timing.poll_interval_ms,
        )
        if form is None:
            self.session.capture("form-not-found")
            raise LocatorMiss(f"the {self.noun} form in any frame", stage="open_form")
        self.form = form
        self.nav.advance(NavState.FORM_READY)
        self.log.info(f"{self.noun.capitalize()} form ready.")
        return form

    def find_form_frame(self) -> Optional[Any]:
        # Child frames first: the form is normally embedded and the main page also carries
        # menu texts that look like form keywords.
        scopes = self.session.scopes()
        for scope in scopes[1:] + scopes[:1]:
            try:
                if self.scope_has_form(scope):
                    return scope
            except PlaywrightError:
                continue
        return None

    def current_form(self) -> Any:
        # The portal re-renders its iframe after each add; re-resolve it every time.
        return self.find_form_frame() or self.form

    def process_item(self, instruction: PaymentInstruction, index: int, total: int) -> None:
        cfg = self.config
        form = self.current_form()
        self.log.info(f"--- {self.noun.capitalize()} {index + 1}: {instruction.describe()} ---")

        key_ref = self.enter_item(form, instruction, index)
        self.session.sleep(cfg.delay_ms("after_filled_delay"))
        self.session.capture(f"{self.noun}-{index + 1}-filled")

        if self.needs_add(index, total):
            before = self._pending_snapshot(form, key_ref)
            self.click_add(form, index)
            self.session.sleep(cfg.delay_ms("after_add_delay"))
            if not self._wait_add_confirmed(key_ref, before):
                self.log.warning(
                    f"Could not confirm that {self.noun} {index + 1} ({instruction.payee_name}, id={instruction.id}) was added"
                )
            self.session.sleep(cfg.delay_ms("add_settle"))
            self.session.capture(f"{self.noun}-{index + 1}-added")

        self.log.info(f"{self.noun.capitalize()} {index + 1} for {instruction.payee_name} entered.")

    def click_add(self, form: Any, index: int) -> None:
        target = self.add_target()
        ref = self.locator.find(form, target)
        if ref is None:
            self.session.capture(f"{self.noun}-{index + 1}-add-missing")
            raise LocatorMiss(f"the '{target.label}' button", stage=f"{self.noun} {index + 1}")
        ref.click_nearest_button()
        self.log.info(f"Clicked '{target.label}'.")

    def _pending_count(self, form: Any) -> int:
        try:
            return form.locator(self.pending_rows_selector).count()
        except PlaywrightError:
            return 0

    def _pending_snapshot(self, form: Any, key_ref: ElementRef) -> tuple[str, int]:
        return self.filler.read(key_ref), self._pending_count(form)

    def _key_cleared(self, key_ref: ElementRef) -> bool:
        # A detached or re-rendered frame reads as "" too; only a present, empty field counts.
        try:
            if key_ref.scope.locator(key_ref.selector).count() <= key_ref.index:
                return False
        except PlaywrightError:
            return False
        return self.filler.read(key_ref) == ""

    def _wait_add_confirmed(self, key_ref: ElementRef, before: tuple[str, int]) -> bool:
        before_key, before_rows = before

        def _added() -> bool:
            form = self.current_form()
            key = key_ref if form is key_ref.scope else replace(key_ref, scope=form)
            if before_key and self._key_cleared(key):
                return True
            return self._pending_count(form) > before_rows

        return bool(
            poll(
                _added,
                now=self.session.now,
                sleep=self.session.sleep,
                timeout_ms=self.config.timing.add_confirm_timeout_ms,
                interval_ms=self.config.timing.poll_interval_ms,
            )
        )

    def continue_(self) -> None:
        sel = self.selectors
        cfg = self.config
        self.log.info("All items entered. Clicking 'Continuar'...")
        # date pickers left open can cover the button
        self.session.press("Escape")
        self.session.sleep(cfg.delay_ms("key_delay"))

        targets = [
            Target(label=sel.continue_text, exact=(sel.continue_text,)),
            Target(label=f"{sel.continue_text} (any)", pattern=sel.continue_pattern),
        ]
        self.nav.click_transition(
            targets,
            NavState.CONTINUED,
            scope=self.current_form(),
            settle_ms=cfg.delay_ms("after_add_delay"),
            ready=lambda: self.nav.wait_for_text(sel.continue_progress, cfg.timing.continue_progress_timeout_ms),
            nearest_button=True,
        )

    def accept_terms(self) -> bool:
        """
        Tick the terms-and-conditions box when the portal shows one. Optional step: the
        flow moves on either way.
        """
        sel = self.selectors
        page = self.session.page
        accepted = False

        checkbox = self.locator.find_field(
            page,
            Target(label="Terms checkbox", pattern=sel.terms_pattern, input_selector=sel.terms_checkbox),
        )
        if checkbox is not None:
            try:
                if not checkbox.locator.is_checked():
                    checkbox.click()
                accepted = True
            except PlaywrightError:
                logger.debug("Could not tick the terms checkbox.", exc_info=True)

        if not accepted:
            text = self.locator.find(page, Target(label="Terms text", pattern=sel.terms_pattern))
            if text is not None:
                text.click()
                accepted = True

        if accepted:
            self.log.info("[terms] Terms and conditions accepted.")
            self.session.sleep(self.config.delay_ms("after_add_delay"))
            ack = self.locator.find(page, Target(label="Aceptar", exact=sel.terms_ack_texts))
            if ack is not None and not ack.is_disabled():
                ack.click_nearest_button()
                self.log.info("[terms] Clicked the acknowledgement button.")
        else:
            self.log.info("[terms] No terms to accept (fine if this flow does not ask for them).")

        self.nav.advance(NavState.TERMS_ACCEPTED)
        return accepted

    def request_authorization(self) -> ElementRef:
        sel = self.selectors
        pause = self.config.delay_ms("after_filled_delay")
        targets = [
            Target(label="Preparar y autorizar", pattern=sel.authorize_pattern),
            Target(label="Autorizar", pattern=sel.authorize_fallback_pattern),
        ]
        # The button renders a moment after the summary; give each retry the same pause.
        return self.nav.click_transition(
            targets,
            NavState.AUTHORIZATION_REQUESTED,
            settle_ms=pause,
            retry_delay_ms=pause,
            nearest_button=True,
        )


class CheckFlow(PaymentFlow):
    kind = "checks"
    noun = "check"
    profile_name = ".chrome-checks"

    def section_targets(self) -> list[Target]:
        sel = self.selectors
        return [Target(label=sel.checks_section_text, exact=(sel.checks_section_text,))]

    def subsection_targets(self) -> list[Target]:
        sel = self.selectors
        primary = Target(
            label=sel.checks_subsection_text,
            exact=(sel.checks_subsection_text,),
            pattern=sel.checks_subsection_pattern,
        )
        fallbacks = [Target(label=p.pattern, pattern=p) for p in sel.checks_subsection_fallbacks]
        return [primary, *fallbacks]

    def scope_has_form(self, scope: Any) -> bool:
        sel = self.selectors
        if scope.locator(sel.check_tax_id_input).count() > 0:
            return True
        return scope.locator(f'input[name*="{sel.check_form_name_fragment}" i]').count() > 0

    def add_target(self) -> Target:
        sel = self.selectors
        return Target(label="Agregar cheque", css=sel.check_add_buttons, pattern=sel.check_add_pattern)

    @property
    def pending_rows_selector(self) -> str:
        return self.selectors.check_pending_rows

    def enter_item(self, form: Any, instruction: CheckInstruction, index: int) -> ElementRef:  # type: ignore[override]
        sel = self.selectors
        stage = f"check {index + 1}"

        tax_id = self.locator.require(
            form,
            Target(label="CUIT", css=(sel.check_tax_id_input,), attributes=(("name", "cuit"), ("labeltext", "cuit"))),
            field=True,
            stage=stage,
        )
        self.filler.require_value(tax_id, instruction.tax_id, field="CUIT")

        # Email is informative only; a miss is logged and the check still goes in.
        email = self.locator.find_field(
            form,
            Target(label="Email", attributes=(("name", "mail"), ("labeltext", "mail"), ("autocomplete", "mail"))),
        )
        if instruction.email:
            if email is None:
                self.log.warning(f"Email field not found for check {index + 1}; skipping it")
            elif not self.filler.set_value(email, instruction.email, field="Email"):
                self.log.warning(f"Email did not stick for check {index + 1} ({instruction.email})")

        amount = self.locator.require(
            form,
            Target(
                label="Monto",
                attributes=(("name", "monto"), ("name", "importe"), ("labeltext", "monto")),
                pattern=sel.amount_label,
            ),
            field=True,
            stage=stage,
        )
        self.filler.require_amount(amount, instruction.amount)

        when = self.locator.require(form, self.date_target(), field=True, stage=stage)
        neutral = self.locator.find_field(form, Target(label="Descripción", css=(sel.check_description_input,)))
        self.filler.require_date(when, instruction.payment_date, neutral=neutral, field="Fecha de pago")
        return tax_id


class TransferFlow(PaymentFlow):
    kind = "transfers"
    noun = "transfer"
    profile_name = ".chrome-transfers"

    def section_targets(self) -> list[Target]:
        sel = self.selectors
        return [Target(label=sel.transfers_section_text, exact=(sel.transfers_section_text,))]

    def subsection_targets(self) -> list[Target]:
        sel = self.selectors
        primary = Target(
            label=sel.transfers_subsection_text,
            exact=(sel.transfers_subsection_text,),
            pattern=sel.transfers_subsection_pattern,
        )
        fallbacks = [Target(label=p.pattern, pattern=p) for p in sel.transfers_subsection_fallbacks]
        return [primary, *fallbacks]

    def scope_has_form(self, scope: Any) -> bool:
        sel = self.selectors
        for fragment in sel.transfer_form_fragments:
            if scope.locator(f'input[name*="{fragment}" i], input[labeltext*="{fragment}" i]').count() > 0:
                return True
        facts = read_facts(scope)
        return facts is not None and facts.mentions_any(sel.transfer_form_keywords)

    def needs_add(self, index: int, total: int) -> bool:
        # "Agregar otra transferencia" opens a new row; nothing to click after the last one.
        return index < total - 1

    def add_target(self) -> Target:
        return Target(label="Agregar otra transferencia", pattern=self.selectors.transfer_add_pattern)

    @property
    def pending_rows_selector(self) -> str:
        return self.selectors.transfer_pending_rows

    def enter_item(self, form: Any, instruction: TransferInstruction, index: int) -> ElementRef:  # type: ignore[override]
        sel = self.selectors
        stage = f"transfer {index + 1}"

        # Label-based first: the portal header has a global search input that also matches "cbu".
        account = self.locator.find_field(
            form, Target(label="Cuenta destino", pattern=sel.transfer_account_label), last=True
        ) or self.locator.find_field(
            form,
            Target(
                label="Cuenta destino / CBU",
                pattern=sel.transfer_account_fallback_label,
                attributes=(("name", "destino"), ("name", "cbu"), ("labeltext", "destino"), ("labeltext", "cbu")),
            ),
            last=True,
        )
        if account is None:
            raise LocatorMiss("the 'Cuenta destino' field", stage=stage)
        self.filler.require_value(account, instruction.destination_account, match="prefix", field="Cuenta destino")

        # The bank resolves the CBU/alias and may fill in the holder's name.
        self.session.sleep(self.config.delay_ms("account_resolve"))

        amount = self.locator.require(
            form,
            Target(
                label="Monto",
                exact=("Monto",),
                pattern=sel.amount_label,
                attributes=(("name", "monto"), ("labeltext", "monto")),
            ),
            field=True,
            last=True,
            stage=stage,
        )
        self.filler.require_amount(amount, instruction.amount)

        # Date last: its picker covers the other fields.
        when = self.locator.require(form, self.date_target(), field=True, last=True, stage=stage)
        self.filler.require_date(when, instruction.payment_date, field="Fecha de envío")
        return account


FLOWS: dict[str, type[PaymentFlow]] = {
    CheckFlow.kind: CheckFlow,
    TransferFlow.kind: TransferFlow,
}
