from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .errors import InvalidTransitionError, TransitionTimeout
from .locator import ElementLocator, ElementRef, Target
from .page_facts import collect_facts, first_match, poll
from .session import Session


logger = logging.getLogger(__name__)


class NavState(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATED = "authenticated"
    SECTION_OPEN = "section_open"
    SUBSECTION_OPEN = "subsection_open"
    FORM_READY = "form_ready"
    ALL_ITEMS_ENTERED = "all_items_entered"
    CONTINUED = "continued"
    TERMS_ACCEPTED = "terms_accepted"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AWAITING_CHALLENGE = "awaiting_challenge"
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"


_FORWARD: dict[NavState, NavState] = {
    NavState.LOGGED_OUT: NavState.AUTHENTICATED,
    NavState.AUTHENTICATED: NavState.SECTION_OPEN,
    NavState.SECTION_OPEN: NavState.SUBSECTION_OPEN,
    NavState.SUBSECTION_OPEN: NavState.FORM_READY,
    NavState.FORM_READY: NavState.ALL_ITEMS_ENTERED,
    NavState.ALL_ITEMS_ENTERED: NavState.CONTINUED,
    NavState.CONTINUED: NavState.TERMS_ACCEPTED,
    NavState.TERMS_ACCEPTED: NavState.AUTHORIZATION_REQUESTED,
    NavState.AUTHORIZATION_REQUESTED: NavState.AWAITING_CHALLENGE,
    NavState.AWAITING_CHALLENGE: NavState.CONFIRMED,
}

TERMINAL_STATES = frozenset({NavState.CONFIRMED, NavState.UNCONFIRMED})


def allowed_transitions(state: NavState) -> frozenset[NavState]:
    allowed = set()
    if state in _FORWARD:
        allowed.add(_FORWARD[state])
    # Any post-login stage can end the run without a confirmation.
    if state not in TERMINAL_STATES and state is not NavState.LOGGED_OUT:
        allowed.add(NavState.UNCONFIRMED)
    return frozenset(allowed)


class NavigationStateMachine:
    """
    Explicit portal navigation states with validated transitions.

    The portal has no programmatic "ready" signal, so each click is followed by a settle
    delay tuned per transition and, where there is a marker to look for, a bounded poll.
    """

    def __init__(self, session: Session, locator: ElementLocator, *, state: NavState = NavState.LOGGED_OUT) -> None:
        self.session = session
        self.locator = locator
        self.config = session.config
        self.log = session.log
        self.history: list[NavState] = [state]

    @property
    def state(self) -> NavState:
        return self.history[-1]

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_advance(self, next_state: NavState) -> bool:
        return next_state in allowed_transitions(self.state)

    def advance(self, next_state: NavState) -> None:
        if not self.can_advance(next_state):
            raise InvalidTransitionError(f"Navigation cannot move from {self.state.value} to {next_state.value}")
        self.history.append(next_state)
        self.log.debug(f"[nav] {self.history[-2].value} -> {next_state.value}")

    def give_up(self) -> None:
        """Move to UNCONFIRMED when that is still a legal move; no-op otherwise."""
        if self.can_advance(NavState.UNCONFIRMED):
            self.advance(NavState.UNCONFIRMED)

    def click_transition(
        self,
        targets: Sequence[Target],
        next_state: NavState,
        *,
        settle_ms: int,
        scope: Any = None,
        ready: Optional[Callable[[], bool]] = None,
        attempts: int = 3,
        retry_delay_ms: Optional[int] = None,
        nearest_button: bool = False,
    ) -> ElementRef:
        """
        Click the first target that resolves (primary, then same-intent fallbacks), settle,
        then run the optional readiness check. Up to `attempts` rounds, then TransitionTimeout.
        """
        if not self.can_advance(next_state):
            raise InvalidTransitionError(f"Navigation cannot move from {self.state.value} to {next_state.value}")

        where = scope if scope is not None else self.session.page
        labels = ", ".join(t.label for t in targets)
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self.log.info(f"[retry] Retrying '{targets[0].label}' (attempt {attempt}/{attempts})...")
                # A leftover popover is the usual reason a click did nothing.
                self.session.press("Escape")
                self.session.sleep(self.config.timing.poll_interval_ms if retry_delay_ms is None else retry_delay_ms)

            for target in targets:
                ref = self.locator.find(where, target)
                if ref is None:
                    continue
                if ref.is_disabled():
                    self.log.debug(f"[click] '{target.label}' is disabled; trying the next option")
                    continue
                if nearest_button:
                    ref.click_nearest_button()
                else:
                    ref.click()
                self.log.info(f"Clicked '{target.label}'.")
                self.log.debug(f"[click] {ref.describe()}")
                self.session.sleep(settle_ms)
                if ready is None or ready():
                    self.advance(next_state)
                    self.session.capture(next_state.value)
                    return ref
                self.log.debug(f"[click] '{target.label}' clicked but the next screen did not show up")

        self.session.capture(f"{next_state.value}-timeout")
        raise TransitionTimeout(f"Could not reach {next_state.value} after {attempts} attempts (tried: {labels})")

    def wait_for_text(self, pattern: re.Pattern, timeout_ms: int) -> bool:
        hit = poll(
            lambda: first_match(collect_facts(self.session.scopes()), pattern),
            now=self.session.now,
            sleep=self.session.sleep,
            timeout_ms=timeout_ms,
            interval_ms=self.config.timing.poll_interval_ms,
        )
        return hit is not None
