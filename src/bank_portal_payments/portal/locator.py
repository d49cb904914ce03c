from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from playwright.sync_api import Error as PlaywrightError

from .errors import LocatorMiss


logger = logging.getLogger(__name__)

CLICK_JS = "(el) => { el.scrollIntoView({ block: 'center', inline: 'center' }); el.click(); }"

# Text often sits in a <span>/<div> inside the real button; clicking that node does not
# always reach the button's handler.
CLICK_NEAREST_BUTTON_JS = """
(el) => {
  const target = el.closest('button, [role="button"], a') || el;
  target.scrollIntoView({ block: 'center', inline: 'center' });
  target.click();
}
"""

DISABLED_JS = """
(el) => {
  const target = el.closest('button, [role="button"]') || el;
  return !!target.disabled || target.getAttribute('aria-disabled') === 'true';
}
"""

@dataclass(frozen=True)
class Target:
    """
    Semantic description of one element: what a human would look for, not where it is.

    `attributes` holds `(attribute, fragment)` pairs, e.g. `("name", "monto")`.
    """

    label: str
    exact: tuple[str, ...] = ()
    pattern: Optional[re.Pattern] = None
    attributes: tuple[tuple[str, str], ...] = ()
    css: tuple[str, ...] = ()
    input_selector: str = "input"

    def matches_text(self, text: str) -> bool:
        t = (text or "").strip()
        if not t:
            return False
        if any(t.casefold() == e.casefold() for e in self.exact):
            return True
        return bool(self.pattern and self.pattern.search(t))


@dataclass(frozen=True)
class ElementRef:
    """
    A resolved element: `scope.locator(selector).nth(index)`.

    Two refs to the same element compare equal regardless of which strategy found them.
    """

    scope: Any
    selector: str
    index: int = 0
    text: str = field(default="", compare=False)
    strategy: str = field(default="", compare=False)

    @property
    def locator(self) -> Any:
        return self.scope.locator(self.selector).nth(self.index)

    def click(self) -> None:
        self.locator.evaluate(CLICK_JS)

    def click_nearest_button(self) -> None:
        self.locator.evaluate(CLICK_NEAREST_BUTTON_JS)

    def is_disabled(self) -> bool:
        try:
            return bool(self.locator.evaluate(DISABLED_JS))
        except PlaywrightError:
            return False

    def describe(self) -> str:
        text = f" {self.text!r}" if self.text else ""
        return f"{self.strategy or 'ref'}:{self.selector}#{self.index}{text}"


def _inner_texts(scope: Any, selector: str) -> list[str]:
    return [t or "" for t in scope.locator(selector).all_inner_texts()]


def _first_resolving(scope: Any, chains: list[str]) -> Optional[str]:
    for chain in chains:
        if scope.locator(chain).count() > 0:
            return chain
    return None


class LocatorStrategy:
    name = "strategy"

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        raise NotImplementedError


class CssSelectorStrategy(LocatorStrategy):
    """Known selectors first: they are the most specific hooks the portal gives us."""

    name = "css"

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        for selector in target.css:
            n = scope.locator(selector).count()
            for i in range(n):
                yield ElementRef(scope, selector, i, strategy=self.name)
            if n:
                return


class ExactTextStrategy(LocatorStrategy):
    name = "exact-text"

    def __init__(self, selector: str = "span, button") -> None:
        self.selector = selector

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        if not target.exact:
            return
        wanted = {e.strip().casefold() for e in target.exact}
        for i, text in enumerate(_inner_texts(scope, self.selector)):
            t = text.strip()
            if t.casefold() in wanted:
                yield ElementRef(scope, self.selector, i, text=t, strategy=self.name)


class PatternTextStrategy(LocatorStrategy):
    name = "pattern-text"

    def __init__(self, selector: str = "span, a, button, div, h5, h4, h3, li, p", max_len: int = 60) -> None:
        self.selector = selector
        self.max_len = max_len

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        if target.pattern is None:
            return
        for i, text in enumerate(_inner_texts(scope, self.selector)):
            t = text.strip()
            # long texts are containers wrapping the whole menu, not the item
            if not t or len(t) > self.max_len:
                continue
            if target.pattern.search(t):
                yield ElementRef(scope, self.selector, i, text=t, strategy=self.name)


class AttributeFragmentStrategy(LocatorStrategy):
    name = "attribute"

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        # Only the first fragment that matches anything is used, so `last=True` picks the
        # last element of one homogeneous group (e.g. the newest "monto" row).
        for attr, fragment in target.attributes:
            selector = f'{target.input_selector}[{attr}*="{fragment}" i]'
            n = scope.locator(selector).count()
            if n <= 0:
                continue
            for i in range(n):
                yield ElementRef(scope, selector, i, text=f"{attr}~{fragment}", strategy=self.name)
            return


class LabelAssociationStrategy(LocatorStrategy):
    """
    `<label>` text -> input, trying the `for` association, a nested input, the nearest
    `div` container's input and finally the parent's input.
    """

    name = "label"

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        if target.pattern is None and not target.exact:
            return
        labels = scope.locator("label")
        texts = _inner_texts(scope, "label")
        inp = target.input_selector
        for i, text in enumerate(texts):
            if not target.matches_text(text):
                continue
            for_id = labels.nth(i).get_attribute("for")
            if for_id:
                by_id = f'{inp}[id="{for_id}"]'
                if scope.locator(by_id).count() > 0:
                    yield ElementRef(scope, by_id, 0, text=text.strip(), strategy=self.name)
                    continue
            base = f"label >> nth={i}"
            chain = _first_resolving(
                scope,
                [
                    f"{base} >> {inp}",
                    f"{base} >> xpath=ancestor::div[1] >> {inp}",
                    f"{base} >> xpath=.. >> {inp}",
                ],
            )
            if chain:
                yield ElementRef(scope, chain, 0, text=text.strip(), strategy=self.name)


class TextContainerStrategy(LocatorStrategy):
    """Short free text (`span, div, p`) sitting next to an unlabeled input."""

    name = "text-container"

    def __init__(self, selector: str = "span, div, p", max_len: int = 50) -> None:
        self.selector = selector
        self.max_len = max_len

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        if target.pattern is None and not target.exact:
            return
        inp = target.input_selector
        seen: set[str] = set()
        for i, text in enumerate(_inner_texts(scope, self.selector)):
            t = text.strip()
            if not t or len(t) > self.max_len or not target.matches_text(t):
                continue
            base = f"{self.selector} >> nth={i}"
            chain = _first_resolving(
                scope,
                [
                    f"{base} >> xpath=ancestor::div[1] >> {inp}",
                    f"{base} >> xpath=.. >> {inp}",
                    f"{base} >> xpath=following-sibling::input[1]",
                ],
            )
            if chain and chain not in seen:
                seen.add(chain)
                yield ElementRef(scope, chain, 0, text=t, strategy=self.name)


class CrossFrameStrategy(LocatorStrategy):
    """Runs the inner strategies inside every given frame, skipping inaccessible ones."""

    name = "cross-frame"

    def __init__(self, inner: list[LocatorStrategy]) -> None:
        self.inner = inner

    def candidates_in(self, frames: list[Any], target: Target) -> Iterator[ElementRef]:
        for frame in frames:
            for strategy in self.inner:
                try:
                    found = list(strategy.candidates(frame, target))
                except PlaywrightError:
                    logger.debug("Frame not accessible while locating %s; skipping.", target.label, exc_info=True)
                    break
                if found:
                    yield from found
                    return

    def candidates(self, scope: Any, target: Target) -> Iterator[ElementRef]:
        yield from self.candidates_in(list(getattr(scope, "child_frames", []) or []), target)


CLICK_STRATEGIES: tuple[LocatorStrategy, ...] = (
    CssSelectorStrategy(),
    ExactTextStrategy(),
    PatternTextStrategy(),
)

FIELD_STRATEGIES: tuple[LocatorStrategy, ...] = (
    CssSelectorStrategy(),
    AttributeFragmentStrategy(),
    LabelAssociationStrategy(),
    TextContainerStrategy(),
)


class ElementLocator:
    """
    Finds one element from a `Target` by trying ranked strategies; first success wins.

    `find`/`find_field` never raise for a miss. Use `require` for essential steps.
    """

    def __init__(
        self,
        frames_provider: Any,
        *,
        click_strategies: tuple[LocatorStrategy, ...] = CLICK_STRATEGIES,
        field_strategies: tuple[LocatorStrategy, ...] = FIELD_STRATEGIES,
    ) -> None:
        # frames_provider: anything with `scopes()` (main frame first), normally the Session
        self.frames_provider = frames_provider
        self.click_strategies = click_strategies
        self.field_strategies = field_strategies
        self._cross_click = CrossFrameStrategy(list(click_strategies))

    def _other_scopes(self, scope: Any) -> list[Any]:
        main = getattr(scope, "main_frame", None)
        return [f for f in self.frames_provider.scopes() if f is not scope and f is not main]

    def _first(self, scope: Any, strategies: tuple[LocatorStrategy, ...], target: Target, *, last: bool) -> Optional[ElementRef]:
        for strategy in strategies:
            try:
                if last:
                    found = list(strategy.candidates(scope, target))
                    ref = found[-1] if found else None
                else:
                    ref = next(iter(strategy.candidates(scope, target)), None)
            except PlaywrightError:
                logger.debug("Strategy %s failed for %s.", strategy.name, target.label, exc_info=True)
                return None
            if ref is not None:
                return ref
        return None

    def find(self, scope: Any, target: Target) -> Optional[ElementRef]:
        ref = self._first(scope, self.click_strategies, target, last=False)
        if ref is not None:
            return ref
        frames = self._other_scopes(scope)
        return next(iter(self._cross_click.candidates_in(frames, target)), None)

    def find_field(self, scope: Any, target: Target, *, last: bool = False) -> Optional[ElementRef]:
        # The given scope (usually the form frame) is searched completely before any other
        # frame, so a global search box elsewhere never wins over the form's own field.
        for s in [scope, *self._other_scopes(scope)]:
            ref = self._first(s, self.field_strategies, target, last=last)
            if ref is not None:
                return ref
        return None

    def require(self, scope: Any, target: Target, *, field: bool = False, last: bool = False, stage: Optional[str] = None) -> ElementRef:
        ref = self.find_field(scope, target, last=last) if field else self.find(scope, target)
        if ref is None:
            raise LocatorMiss(target.label, stage=stage)
        return ref
