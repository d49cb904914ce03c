from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from playwright.sync_api import Error as PlaywrightError

from .selectors import DEFAULT_SELECTORS, PortalSelectors


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Visible text plus a descriptor per input; the predicates below only look at this snapshot.
PAGE_FACTS_JS = """
() => ({
  text: (document.body && document.body.innerText) || "",
  inputs: Array.from(document.querySelectorAll("input")).map((i) => ({
    type: (i.type || "text").toLowerCase(),
    inputmode: (i.getAttribute("inputmode") || "").toLowerCase(),
    autocomplete: (i.getAttribute("autocomplete") || "").toLowerCase(),
    maxlength: Number(i.getAttribute("maxlength") || 0),
  })),
})
"""

_CODE_TYPES = frozenset({"tel", "password"})


@dataclass(frozen=True)
class InputFacts:
    type: str = "text"
    inputmode: str = ""
    autocomplete: str = ""
    maxlength: int = 0

    @property
    def is_one_time_code(self) -> bool:
        return self.autocomplete == "one-time-code"

    @property
    def is_short_code(self) -> bool:
        # numeric/tel/password with a 4-8 char limit: the usual shape of a token input
        numeric = self.inputmode == "numeric" or self.type in _CODE_TYPES
        return numeric and 4 <= self.maxlength <= 8

    @property
    def is_code_shaped(self) -> bool:
        return (
            self.is_one_time_code
            or self.inputmode == "numeric"
            or self.type in _CODE_TYPES
            or self.type == "number"
        )


@dataclass(frozen=True)
class PageFacts:
    text: str
    inputs: tuple[InputFacts, ...] = ()
    scope: Any = field(default=None, compare=False)

    @classmethod
    def from_raw(cls, raw: Any, *, scope: Any = None) -> "PageFacts":
        raw = raw or {}
        inputs = []
        for item in raw.get("inputs") or []:
            try:
                maxlength = int(item.get("maxlength") or 0)
            except (TypeError, ValueError):
                maxlength = 0
            inputs.append(
                InputFacts(
                    type=str(item.get("type") or "text").lower(),
                    inputmode=str(item.get("inputmode") or "").lower(),
                    autocomplete=str(item.get("autocomplete") or "").lower(),
                    maxlength=maxlength,
                )
            )
        return cls(text=str(raw.get("text") or ""), inputs=tuple(inputs), scope=scope)

    @property
    def lowered(self) -> str:
        return self.text.lower()

    def mentions_any(self, words: tuple[str, ...]) -> bool:
        t = self.lowered
        return any(w in t for w in words)


def read_facts(scope: Any) -> Optional[PageFacts]:
    """
    Snapshot one page/frame. Detached or cross-origin frames raise inside Playwright; those
    are reported as None and the caller moves on to the next frame.
    """
    try:
        raw = scope.evaluate(PAGE_FACTS_JS)
    except PlaywrightError:
        logger.debug("Could not read facts from scope=%r", scope, exc_info=True)
        return None
    return PageFacts.from_raw(raw, scope=scope)


def collect_facts(scopes: list[Any]) -> list[PageFacts]:
    out: list[PageFacts] = []
    for scope in scopes:
        facts = read_facts(scope)
        if facts is not None:
            out.append(facts)
    return out


def looks_like_challenge(facts: PageFacts, selectors: PortalSelectors = DEFAULT_SELECTORS) -> bool:
    if any(i.is_one_time_code for i in facts.inputs):
        return True
    if any(i.is_short_code for i in facts.inputs):
        return facts.mentions_any(selectors.challenge_vocabulary)
    return False


def challenge_still_visible(facts: PageFacts, selectors: PortalSelectors = DEFAULT_SELECTORS) -> bool:
    if facts.mentions_any(selectors.challenge_gone_vocabulary):
        return True
    return any(i.is_code_shaped for i in facts.inputs)


def looks_like_confirmation(
    facts: PageFacts,
    *,
    require_challenge_gone: bool,
    selectors: PortalSelectors = DEFAULT_SELECTORS,
) -> bool:
    if not facts.mentions_any(selectors.success_vocabulary):
        return False
    if require_challenge_gone and challenge_still_visible(facts, selectors):
        # "comprobante" can appear in the OTP screen's own help text
        return False
    return True


def first_match(facts_list: list[PageFacts], pattern: re.Pattern) -> Optional[PageFacts]:
    for facts in facts_list:
        if pattern.search(facts.text):
            return facts
    return None


def poll(
    check: Callable[[], Optional[T]],
    *,
    now: Callable[[], float],
    sleep: Callable[[int], None],
    timeout_ms: int,
    interval_ms: int,
) -> Optional[T]:
    """
    Call `check` until it returns something truthy or `timeout_ms` elapses.
    `check` always runs at least once, even with a zero timeout.
    """
    deadline = now() + max(0, int(timeout_ms))
    while True:
        hit = check()
        if hit:
            return hit
        if now() >= deadline:
            return None
        sleep(max(1, int(interval_ms)))
