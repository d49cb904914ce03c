from __future__ import annotations

import logging
from typing import Optional

from .page_facts import PageFacts, collect_facts, looks_like_confirmation, poll
from .selectors import DEFAULT_SELECTORS, PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


class ConfirmationDetector:
    """
    The only component allowed to say an operation went through: it waits for the portal's
    own success wording (receipt, operation number) on the page or any frame.
    """

    def __init__(self, selectors: Optional[PortalSelectors] = None) -> None:
        self.selectors = selectors or DEFAULT_SELECTORS

    def check(self, session: Session, *, require_challenge_gone: bool) -> Optional[PageFacts]:
        for facts in collect_facts(session.scopes()):
            if looks_like_confirmation(facts, require_challenge_gone=require_challenge_gone, selectors=self.selectors):
                return facts
        return None

    def wait(self, session: Session, timeout_ms: int, *, require_challenge_gone: bool = True) -> bool:
        cfg = session.config
        session.log.info(f"Waiting up to {timeout_ms / 1000:.0f}s for the portal to confirm the operation...")
        hit = poll(
            lambda: self.check(session, require_challenge_gone=require_challenge_gone),
            now=session.now,
            sleep=session.sleep,
            timeout_ms=timeout_ms,
            interval_ms=cfg.timing.confirmation_poll_ms,
        )
        if hit is None:
            logger.info("No confirmation observed within %.0fs.", timeout_ms / 1000)
            return False
        session.capture("confirmed")
        return True
