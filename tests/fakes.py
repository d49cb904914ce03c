"""
In-memory stand-ins for the Playwright objects the portal layer touches.

Only the selector grammar the automation actually emits is understood:
CSS groups (`a, b`), descendant combinators, attribute filters (`[x]`, `[x="v"]`,
`[x*="v" i]`), `>>` chains, `nth=N` and a few `xpath=` steps.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from playwright.sync_api import Error as PlaywrightError

from bank_portal_payments.config import AutomationConfig
from bank_portal_payments.portal.filler import COMMIT_VALUE_JS
from bank_portal_payments.portal.locator import CLICK_JS, CLICK_NEAREST_BUTTON_JS, DISABLED_JS
from bank_portal_payments.portal.page_facts import PAGE_FACTS_JS
from bank_portal_payments.portal.session import Session, SessionController
from bank_portal_payments.runlog import RunLog


class FakeNode:
    def __init__(
        self,
        tag: str,
        text: str = "",
        children: Optional[list["FakeNode"]] = None,
        attrs: Optional[dict[str, str]] = None,
        on_click: Optional[Callable[["FakeNode"], None]] = None,
        filter: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.tag = tag
        self.text = text
        self.attrs = dict(attrs or {})
        self.parent: Optional[FakeNode] = None
        self.children: list[FakeNode] = []
        self.on_click = on_click
        self.filter = filter
        self.value = self.attrs.get("value", "")
        self.checked = False
        for c in children or []:
            self.append(c)

    def __repr__(self) -> str:
        return f"<{self.tag} {self.attrs} {self.text!r}>"

    def append(self, child: "FakeNode") -> "FakeNode":
        child.parent = self
        self.children.append(child)
        return child

    def insert_before(self, child: "FakeNode", ref: "FakeNode") -> None:
        child.parent = self
        self.children.insert(self.children.index(ref), child)

    def replace_children(self, *children: "FakeNode") -> None:
        for c in self.children:
            c.parent = None
        self.children = []
        for c in children:
            self.append(c)

    def descendants(self) -> Iterator["FakeNode"]:
        for c in self.children:
            yield c
            yield from c.descendants()

    def ancestors(self) -> Iterator["FakeNode"]:
        p = self.parent
        while p is not None:
            yield p
            p = p.parent

    def following_siblings(self) -> list["FakeNode"]:
        if self.parent is None:
            return []
        sibs = self.parent.children
        return sibs[sibs.index(self) + 1 :]

    def closest_button(self) -> Optional["FakeNode"]:
        for n in [self, *self.ancestors()]:
            if n.tag in ("button", "a") or n.attrs.get("role") == "button":
                return n
        return None

    def inner_text(self) -> str:
        if self.tag == "input":
            return ""
        parts = [self.text.strip()] + [c.inner_text() for c in self.children]
        return "\n".join(p for p in parts if p)

    def html(self) -> str:
        inner = self.text + "".join(c.html() for c in self.children)
        if self.tag == "#document":
            return inner
        attrs = "".join(f' {k}="{v}"' for k, v in self.attrs.items())
        return f"<{self.tag}{attrs}>{inner}</{self.tag}>"

    def set_value(self, value: str) -> None:
        self.value = self.filter(value) if self.filter else value

    def click(self) -> None:
        if self.tag == "input" and self.attrs.get("type") == "checkbox":
            self.checked = not self.checked
        if self.on_click is not None:
            self.on_click(self)

    @property
    def disabled(self) -> bool:
        return "disabled" in self.attrs or self.attrs.get("aria-disabled") == "true"


def el(tag: str, *content: Any, on_click=None, filter=None, **attrs: str) -> FakeNode:
    """`el("label", "Monto", for_="m")`: strings become text, nodes become children."""
    text = " ".join(c for c in content if isinstance(c, str))
    children = [c for c in content if isinstance(c, FakeNode)]
    clean = {k.rstrip("_").replace("_", "-"): str(v) for k, v in attrs.items()}
    return FakeNode(tag, text, children, clean, on_click=on_click, filter=filter)


# --- selector engine ---

_ATTR_RE = re.compile(r'\[([\w-]+)(?:([*^]?=)"([^"]*)"(\s+i)?)?\]')
_TAG_RE = re.compile(r"^([\w*-]*)")


def _split_outside(s: str, sep: str) -> list[str]:
    parts, buf, depth, quote = [], [], 0, False
    for ch in s:
        if ch == '"':
            quote = not quote
        elif not quote and ch == "[":
            depth += 1
        elif not quote and ch == "]":
            depth -= 1
        if ch == sep and depth == 0 and not quote:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def _matches_simple(node: FakeNode, simple: str) -> bool:
    tag = _TAG_RE.match(simple).group(1)
    if tag and tag != "*" and node.tag != tag:
        return False
    for name, op, wanted, flag in _ATTR_RE.findall(simple):
        actual = node.attrs.get(name)
        if actual is None:
            return False
        if not op:
            continue
        a, w = (actual.lower(), wanted.lower()) if flag else (actual, wanted)
        if op == "=" and a != w:
            return False
        if op == "*=" and w not in a:
            return False
        if op == "^=" and not a.startswith(w):
            return False
    return True


def _matches_compound(node: FakeNode, compound: str) -> bool:
    parts = _split_outside(compound, " ")
    if not _matches_simple(node, parts[-1]):
        return False
    rest = parts[:-1]
    for anc in node.ancestors():
        if not rest:
            break
        if _matches_simple(anc, rest[-1]):
            rest = rest[:-1]
    return not rest


def _css(contexts: list[FakeNode], selector: str) -> list[FakeNode]:
    group = _split_outside(selector, ",")
    out: list[FakeNode] = []
    seen: set[int] = set()
    for ctx in contexts:
        for n in ctx.descendants():
            if id(n) in seen:
                continue
            if any(_matches_compound(n, c) for c in group):
                seen.add(id(n))
                out.append(n)
    return out


def _dedupe(nodes: list[Optional[FakeNode]]) -> list[FakeNode]:
    out, seen = [], set()
    for n in nodes:
        if n is not None and id(n) not in seen:
            seen.add(id(n))
            out.append(n)
    return out


def _step(nodes: list[FakeNode], step: str) -> list[FakeNode]:
    if step.startswith("nth="):
        i = int(step[4:])
        if i < 0:
            i += len(nodes)
        return [nodes[i]] if 0 <= i < len(nodes) else []
    if step == "xpath=..":
        return _dedupe([n.parent for n in nodes])
    if step == "xpath=ancestor::div[1]":
        return _dedupe([next((a for a in n.ancestors() if a.tag == "div"), None) for n in nodes])
    if step == "xpath=following-sibling::input[1]":
        return _dedupe([next((s for s in n.following_siblings() if s.tag == "input"), None) for n in nodes])
    if step.startswith("xpath="):
        raise PlaywrightError(f"unsupported xpath in fake DOM: {step}")
    return _css(nodes, step)


# --- Playwright-shaped objects ---


class FakeLocator:
    def __init__(self, frame: "FakeFrame", steps: list[str]) -> None:
        self.frame = frame
        self.steps = steps

    def _resolve(self) -> list[FakeNode]:
        self.frame.check_access()
        nodes = [self.frame.document]
        for step in self.steps:
            nodes = _step(nodes, step)
        return nodes

    def _one(self) -> FakeNode:
        nodes = self._resolve()
        if not nodes:
            raise PlaywrightError(f"waiting for locator({' >> '.join(self.steps)}): no element")
        return nodes[0]

    def locator(self, selector: str) -> "FakeLocator":
        return FakeLocator(self.frame, self.steps + selector.split(" >> "))

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.frame, self.steps + [f"nth={index}"])

    def count(self) -> int:
        return len(self._resolve())

    def all_inner_texts(self) -> list[str]:
        return [n.inner_text() for n in self._resolve()]

    def get_attribute(self, name: str) -> Optional[str]:
        return self._one().attrs.get(name)

    def input_value(self) -> str:
        node = self._one()
        if node.tag not in ("input", "textarea"):
            raise PlaywrightError("Node is not an <input>")
        return node.value

    def is_checked(self) -> bool:
        return self._one().checked

    def focus(self) -> None:
        self.frame.page.focused = self._one()

    def click(self) -> None:
        self.frame.page.record_click(self._one())

    def evaluate(self, js: str, arg: Any = None) -> Any:
        node = self._one()
        page = self.frame.page
        if js is CLICK_JS:
            page.record_click(node)
            return None
        if js is CLICK_NEAREST_BUTTON_JS:
            page.record_click(node.closest_button() or node)
            return None
        if js is DISABLED_JS:
            return (node.closest_button() or node).disabled
        if js is COMMIT_VALUE_JS:
            page.focused = node
            node.set_value(str(arg))
            return node.value
        raise PlaywrightError("unexpected script in fake DOM")


class FakeFrame:
    def __init__(self, page: "FakePage", name: str = "main") -> None:
        self.page = page
        self.name = name
        self.document = FakeNode("#document")
        self.body = self.document.append(FakeNode("body"))
        self.inaccessible = False
        self.child_frames: list[FakeFrame] = []

    def __repr__(self) -> str:
        return f"<FakeFrame {self.name}>"

    def check_access(self) -> None:
        if self.inaccessible:
            raise PlaywrightError("Frame was detached")

    def set_body(self, *children: FakeNode) -> None:
        self.body.replace_children(*children)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector.split(" >> "))

    def content(self) -> str:
        self.check_access()
        return self.document.html()

    def evaluate(self, js: str, arg: Any = None) -> Any:
        self.check_access()
        if js is not PAGE_FACTS_JS:
            raise PlaywrightError("unexpected script in fake DOM")
        inputs = []
        for n in self.body.descendants():
            if n.tag != "input":
                continue
            inputs.append(
                {
                    "type": n.attrs.get("type", "text").lower(),
                    "inputmode": n.attrs.get("inputmode", "").lower(),
                    "autocomplete": n.attrs.get("autocomplete", "").lower(),
                    "maxlength": int(n.attrs.get("maxlength", "0") or 0),
                }
            )
        return {"text": self.body.inner_text(), "inputs": inputs}


class FakeKeyboard:
    def __init__(self, page: "FakePage") -> None:
        self.page = page
        self.pressed: list[str] = []
        self._select_all = False

    def press(self, key: str) -> None:
        self.pressed.append(key)
        if key == "Control+A":
            self._select_all = True

    def type(self, text: str, delay: int = 0) -> None:
        node = self.page.focused
        if node is None or node.tag != "input":
            return
        base = "" if self._select_all else node.value
        self._select_all = False
        node.set_value(base + text)


class FakeMouse:
    def __init__(self) -> None:
        self.clicks: list[tuple[int, int]] = []

    def click(self, x: int, y: int) -> None:
        self.clicks.append((x, y))


class FakePage:
    def __init__(self) -> None:
        self.main_frame = FakeFrame(self)
        self._children: list[FakeFrame] = []
        self.keyboard = FakeKeyboard(self)
        self.mouse = FakeMouse()
        self.focused: Optional[FakeNode] = None
        self.time_ms = 0.0
        self.url = ""
        self.clicked: list[str] = []
        self.screenshots: list[str] = []
        self.tick_hooks: list[Callable[[], None]] = []

    @property
    def frames(self) -> list[FakeFrame]:
        return [self.main_frame, *self._children]

    def add_frame(self, name: str) -> FakeFrame:
        frame = FakeFrame(self, name)
        self._children.append(frame)
        self.main_frame.child_frames.append(frame)
        return frame

    def detach_frame(self, frame: FakeFrame) -> None:
        frame.inaccessible = True
        self._children.remove(frame)
        self.main_frame.child_frames.remove(frame)

    def locator(self, selector: str) -> FakeLocator:
        return self.main_frame.locator(selector)

    def record_click(self, node: FakeNode) -> None:
        self.clicked.append(node.inner_text() or node.attrs.get("name", node.tag))
        node.click()

    def now(self) -> float:
        return self.time_ms

    def wait_for_timeout(self, ms: float) -> None:
        self.time_ms += ms
        for hook in list(self.tick_hooks):
            hook()

    def goto(self, url: str, wait_until: str = "load") -> None:
        self.url = url

    def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(path)


def make_session(page: FakePage, config: Optional[AutomationConfig] = None, *, verbose: bool = False) -> Session:
    return Session(page=page, config=config or AutomationConfig(), log=RunLog(verbose=verbose), clock=page.now)


class FakeController(SessionController):
    """Logs into a FakePage instead of launching Chromium."""

    def __init__(self, page: FakePage, config: AutomationConfig, log: RunLog, **kwargs: Any) -> None:
        super().__init__(config, log, **kwargs)
        self.page = page
        self.launched = 0

    def _launch(self) -> Session:
        self.launched += 1
        return Session(page=self.page, config=self.config, log=self.log, clock=self.page.now)


# --- scripted portal ---


def comma_decimal_only(value: str) -> str:
    """Amount mask that rejects a decimal point."""
    return "" if "." in value else value


class PortalSim:
    """
    A scripted bank portal: login -> dashboard -> entry form -> summary with terms ->
    security code -> receipt.

    `human_code_after_ms` simulates a person typing the code into the browser that long
    after the challenge appeared.
    """

    def __init__(
        self,
        kind: str = "checks",
        *,
        username: str = "acme",
        password: str = "s3cret",
        otp_code: str = "123456",
        add_button: bool = True,
        add_limit: Optional[int] = None,
        add_works: bool = True,
        confirm: bool = True,
        show_challenge: bool = True,
        human_code_after_ms: Optional[float] = None,
        amount_filter: Optional[Callable[[str], str]] = None,
        authorize_after_ms: Optional[float] = 0,
        rerender_on_add: bool = False,
    ) -> None:
        self.kind = kind
        self.username = username
        self.password = password
        self.otp_code = otp_code
        self.add_button = add_button
        self.add_limit = add_limit
        self.add_works = add_works
        self.confirm = confirm
        self.show_challenge = show_challenge
        self.human_code_after_ms = human_code_after_ms
        self.amount_filter = amount_filter
        self.authorize_after_ms = authorize_after_ms
        self.rerender_on_add = rerender_on_add

        self.page = FakePage()
        self.form_frame: Optional[FakeFrame] = None
        self.otp_frame: Optional[FakeFrame] = None
        self.entered: list[dict[str, str]] = []
        self.continued = False
        self.terms_checkbox: Optional[FakeNode] = None
        self.challenge_at: Optional[float] = None
        self.confirmed = False
        self.continued_at: Optional[float] = None
        self.authorized = False
        self.page.tick_hooks.append(self._human)
        self.page.tick_hooks.append(self._reveal_authorize)
        self._show_login()

    # login + dashboard

    def _show_login(self) -> None:
        self.page.main_frame.set_body(
            el("h1", "Banca empresas"),
            el("label", "Usuario", for_="user"),
            el("input", id="user", name="usuario"),
            el("label", "Contraseña", for_="pass"),
            el("input", id="pass", name="clave", type="password"),
            el("button", "Ingresar", type="submit", on_click=self._submit_login),
        )

    def _submit_login(self, _node: FakeNode) -> None:
        body = self.page.main_frame.body
        values = [n.value for n in body.descendants() if n.tag == "input"]
        if values[:2] != [self.username, self.password]:
            body.append(el("p", "Usuario o clave incorrectos"))
            return
        self.page.main_frame.set_body(
            el("input", name="q", placeholder="Buscar"),
            el("span", "Cuentas", on_click=self._open_accounts),
            el("span", "Transferencias", on_click=self._open_transfers),
            el("h2", "Mis cuentas"),
        )

    def _open_accounts(self, _node: FakeNode) -> None:
        self.page.main_frame.body.append(el("span", "Emitir cheques", on_click=self._open_check_form))

    def _open_transfers(self, _node: FakeNode) -> None:
        self.page.main_frame.body.append(el("span", "Nueva transferencia", on_click=self._open_transfer_form))

    # checks

    def _open_check_form(self, _node: FakeNode) -> None:
        frame = self.page.add_frame("cheques")
        self.form_frame = frame
        nodes = [
            el("h3", "Emisión de cheques"),
            el("label", "CUIT"),
            el("input", name="cheques_emitir_cuit"),
            el("label", "Email"),
            el("input", name="cheques_emitir_mail"),
            el("label", "Monto"),
            el("input", name="cheques_emitir_monto", filter=self.amount_filter),
            el("label", "Fecha de pago"),
            el("input", name="cheques_emitir_fecha", placeholder="Fecha de pago"),
            el("input", name="cheques_emitir_descripcion"),
        ]
        if self.add_button:
            nodes.append(el("button", "Agregar cheque", data_tour="add_check", on_click=self._add_check))
        nodes += [
            el("table", el("tbody")),
            el("button", "Continuar", on_click=self._continue),
        ]
        frame.set_body(*nodes)

    def _inputs(self, frame: FakeFrame) -> dict[str, FakeNode]:
        return {n.attrs.get("name", ""): n for n in frame.body.descendants() if n.tag == "input"}

    def _rerender_check_form(self) -> None:
        # the portal swaps in a fresh iframe: values and rows survive, the old frame detaches
        old = self.form_frame
        values = {k: n.value for k, n in self._inputs(old).items()}
        rows = list(old.locator("tbody")._one().children)
        self.page.detach_frame(old)
        self._open_check_form(old.body)
        for k, n in self._inputs(self.form_frame).items():
            n.value = values.get(k, "")
        tbody = self.form_frame.locator("tbody")._one()
        for row in rows:
            tbody.append(row)

    def _add_check(self, node: FakeNode) -> None:
        if self.rerender_on_add:
            self._rerender_check_form()
        frame = self.form_frame
        inputs = self._inputs(frame)
        if not self.add_works or not inputs["cheques_emitir_cuit"].value:
            return
        if self.add_limit is not None and len(self.entered) + 1 >= self.add_limit:
            # the portal stops offering the button
            node.parent.children.remove(node)
        row = {k.replace("cheques_emitir_", ""): n.value for k, n in inputs.items()}
        self.entered.append(row)
        tbody = frame.locator("tbody")._one()
        tbody.append(el("tr", el("td", f"{row['cuit']} {row['monto']}")))
        for n in inputs.values():
            n.value = ""

    # transfers

    def _transfer_row(self, i: int) -> FakeNode:
        return el(
            "div",
            el("div", el("label", "Cuenta destino"), el("input", name=f"destino_{i}", filter=lambda v: f"{v} - ACME SA")),
            el("div", el("label", "Monto"), el("input", name=f"monto_{i}", filter=self.amount_filter)),
            el("div", el("label", "Fecha de envío"), el("input", name=f"fecha_{i}", placeholder="Fecha de envío")),
            class_="transfer-row",
        )

    def _open_transfer_form(self, _node: FakeNode) -> None:
        main = self.page.main_frame
        self.form_frame = main
        self._form = el(
            "div",
            el("h4", "Datos de la transferencia"),
            self._transfer_row(0),
            el("button", "Agregar otra transferencia", on_click=self._add_transfer),
            el("button", "Continuar", on_click=self._continue),
            id="transfer-form",
        )
        main.body.append(self._form)

    def _add_transfer(self, node: FakeNode) -> None:
        rows = [n for n in self._form.children if n.attrs.get("class") == "transfer-row"]
        self._form.insert_before(self._transfer_row(len(rows)), node)

    def _collect_transfers(self) -> None:
        inputs = self._inputs(self.page.main_frame)
        i = 0
        while f"destino_{i}" in inputs:
            self.entered.append(
                {
                    "destino": inputs[f"destino_{i}"].value,
                    "monto": inputs[f"monto_{i}"].value,
                    "fecha": inputs[f"fecha_{i}"].value,
                }
            )
            i += 1

    # after items

    def _continue(self, _node: FakeNode) -> None:
        if self.kind == "transfers":
            self._collect_transfers()
        self.continued = True
        self.continued_at = self.page.now()
        self.terms_checkbox = el("input", type="checkbox", id="tyc")
        self.form_frame.set_body(
            el("h3", "Resumen de la operación"),
            self.terms_checkbox,
            el("label", "Acepto los términos y condiciones", for_="tyc"),
        )
        self._reveal_authorize()

    def _reveal_authorize(self) -> None:
        # `authorize_after_ms=None`: the button never renders
        if self.continued_at is None or self.authorize_after_ms is None or self.authorized:
            return
        body = self.form_frame.body
        if any(n.tag == "button" for n in body.descendants()):
            return
        if self.page.now() - self.continued_at >= self.authorize_after_ms:
            body.append(el("button", "Preparar y autorizar", on_click=self._authorize))

    def _authorize(self, _node: FakeNode) -> None:
        if self.terms_checkbox is None or not self.terms_checkbox.checked:
            return
        self.authorized = True
        if not self.show_challenge:
            self.form_frame.set_body(el("p", "Procesando..."))
            return
        self.form_frame.set_body(el("p", "Procesando..."))
        self.otp_frame = self.page.add_frame("token")
        self.otp_frame.set_body(
            el("p", "Ingresá el código de seguridad generado por tu token"),
            el("input", name="otp", autocomplete="one-time-code", inputmode="numeric", maxlength="6"),
            el("button", "Confirmar", on_click=self._confirm_code),
        )
        self.challenge_at = self.page.now()

    def _confirm_code(self, _node: FakeNode) -> None:
        code = self._inputs(self.otp_frame)["otp"].value
        if code == self.otp_code:
            self._receipt()
        else:
            self.otp_frame.body.append(el("p", "Código incorrecto"))

    def _human(self) -> None:
        if self.challenge_at is None or self.human_code_after_ms is None or self.otp_frame is None:
            return
        if self.page.now() - self.challenge_at >= self.human_code_after_ms and not self.confirmed:
            self._inputs(self.otp_frame)["otp"].value = self.otp_code
            self._confirm_code(self.otp_frame.body)

    def _receipt(self) -> None:
        self.confirmed = True
        if self.confirm:
            self.otp_frame.set_body(
                el("h3", "Operación realizada"),
                el("p", "Número de operación 4711"),
                el("a", "Descargar comprobante"),
            )
        else:
            self.otp_frame.set_body(el("p", "La operación quedó pendiente de firma"))

    # wiring

    def controller_factory(self) -> Callable[..., FakeController]:
        def _factory(config: AutomationConfig, log: RunLog, **kwargs: Any) -> FakeController:
            self.controller = FakeController(self.page, config, log, **kwargs)
            return self.controller

        return _factory
