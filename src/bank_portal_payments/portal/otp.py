from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from playwright.sync_api import Error as PlaywrightError

from .filler import FormFiller
from .locator import ElementRef
from .page_facts import PageFacts, collect_facts, looks_like_challenge, poll
from .selectors import DEFAULT_SELECTORS, PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeScreen:
    scope: Any
    facts: PageFacts

    @property
    def in_frame(self) -> bool:
        page = getattr(self.scope, "page", None)
        return page is not None and self.scope is not page.main_frame


class OtpHandshake:
    """
    Detects the bank's one-time-code screen and, in automated mode, submits the code.

    Manual mode never touches the challenge input: a human types the code in the live
    browser and the session is kept open for them.
    """

    def __init__(self, session: Session, filler: FormFiller, selectors: Optional[PortalSelectors] = None) -> None:
        self.session = session
        self.filler = filler
        self.config = session.config
        self.log = session.log
        self.selectors = selectors or DEFAULT_SELECTORS

    def detect(self) -> Optional[ChallengeScreen]:
        for facts in collect_facts(self.session.scopes()):
            if looks_like_challenge(facts, self.selectors):
                return ChallengeScreen(scope=facts.scope, facts=facts)
        return None

    def wait_for_challenge(self, timeout_ms: Optional[int] = None) -> Optional[ChallengeScreen]:
        timeout = self.config.timing.otp_detect_timeout_ms if timeout_ms is None else timeout_ms
        screen = poll(
            self.detect,
            now=self.session.now,
            sleep=self.session.sleep,
            timeout_ms=timeout,
            interval_ms=self.config.timing.poll_interval_ms,
        )
        if screen is None:
            self.log.info("[otp] Timed out waiting for the security code screen.")
            return None
        self.log.info(f"[otp] Security code screen detected ({'frame' if screen.in_frame else 'page'}).")
        return screen

    def _code_input(self, screen: ChallengeScreen) -> Optional[ElementRef]:
        for selector in self.selectors.otp_inputs:
            try:
                if screen.scope.locator(selector).count() > 0:
                    return ElementRef(screen.scope, selector, 0, strategy="otp")
            except PlaywrightError:
                return None
        return None

    def _confirm_button(self, screen: ChallengeScreen) -> Optional[ElementRef]:
        buttons = screen.scope.locator("button")
        for i, text in enumerate(buttons.all_inner_texts()):
            if not self.selectors.otp_confirm_pattern.search(text or ""):
                continue
            ref = ElementRef(screen.scope, "button", i, text=(text or "").strip(), strategy="otp")
            if not ref.is_disabled():
                return ref
        return None

    def submit_code(self, screen: ChallengeScreen, code: str) -> bool:
        """
        Fill the code through the form filler and click a plausible confirm button.
        Returns False when the code input could not be found or did not take the value.
        """
        self.log.info("[otp] Code supplied out-of-band; entering it automatically...")
        ref = self._code_input(screen)
        if ref is None:
            self.log.warning("Could not find the security code input.")
            return False
        if not self.filler.set_value(ref, code, field="security code"):
            self.log.warning("The security code input did not accept the value.")
            return False

        self.session.sleep(self.config.delay_ms("after_add_delay"))
        try:
            button = self._confirm_button(screen)
        except PlaywrightError:
            logger.debug("Could not list confirm buttons on the challenge screen.", exc_info=True)
            button = None
        if button is None:
            self.log.debug("[otp] No confirm button found; pressing Enter")
            self.session.press("Enter")
        else:
            button.click()
            self.log.info(f"[otp] Clicked '{button.text}'.")
        return True
