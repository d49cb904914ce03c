from __future__ import annotations

import re

from bank_portal_payments.portal.page_facts import (
    PageFacts,
    challenge_still_visible,
    collect_facts,
    first_match,
    looks_like_challenge,
    looks_like_confirmation,
    poll,
)

from fakes import FakePage, el


def _facts(text: str, *inputs: dict) -> PageFacts:
    return PageFacts.from_raw({"text": text, "inputs": list(inputs)})


def test_one_time_code_input_is_a_challenge_on_its_own() -> None:
    assert looks_like_challenge(_facts("", {"type": "text", "autocomplete": "one-time-code"}))


def test_short_numeric_input_needs_challenge_words() -> None:
    pin = {"type": "tel", "maxlength": 6}
    assert looks_like_challenge(_facts("Ingresá el código de seguridad", pin))
    assert not looks_like_challenge(_facts("Teléfono de contacto", pin))
    # too long for a token
    assert not looks_like_challenge(_facts("código", {"type": "tel", "maxlength": 20}))


def test_plain_form_is_not_a_challenge() -> None:
    assert not looks_like_challenge(_facts("Token de seguridad", {"type": "text"}))


def test_confirmation_rejected_while_challenge_words_remain() -> None:
    facts = _facts("Descargá el comprobante cuando ingreses el código")
    assert looks_like_confirmation(facts, require_challenge_gone=False)
    assert not looks_like_confirmation(facts, require_challenge_gone=True)


def test_confirmation_rejected_while_a_code_input_remains() -> None:
    facts = _facts("Operación realizada", {"type": "password"})
    assert challenge_still_visible(facts)
    assert not looks_like_confirmation(facts, require_challenge_gone=True)


def test_confirmation_accepted_once_challenge_is_gone() -> None:
    facts = _facts("Operación realizada. Número de operación 4711", {"type": "text"})
    assert looks_like_confirmation(facts, require_challenge_gone=True)


def test_collect_facts_skips_detached_frames() -> None:
    page = FakePage()
    page.main_frame.set_body(el("p", "Mis cuentas"))
    gone = page.add_frame("gone")
    gone.inaccessible = True
    facts = collect_facts([page.main_frame, gone])
    assert [f.scope for f in facts] == [page.main_frame]
    assert first_match(facts, re.compile("cuentas", re.I)) is facts[0]
    assert first_match(facts, re.compile("nada")) is None


def test_poll_runs_at_least_once_and_respects_timeout() -> None:
    page = FakePage()
    calls = []

    def never_ready():
        calls.append(page.now())
        return None

    assert poll(never_ready, now=page.now, sleep=page.wait_for_timeout, timeout_ms=0, interval_ms=500) is None
    assert len(calls) == 1

    calls.clear()
    assert poll(never_ready, now=page.now, sleep=page.wait_for_timeout, timeout_ms=2000, interval_ms=500) is None
    assert len(calls) == 5


def test_poll_returns_first_hit() -> None:
    page = FakePage()
    hits = iter([None, None, "ok"])
    assert poll(lambda: next(hits), now=page.now, sleep=page.wait_for_timeout, timeout_ms=10_000, interval_ms=100) == "ok"
    assert page.now() == 200
