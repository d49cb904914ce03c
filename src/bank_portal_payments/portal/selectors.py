from __future__ import annotations

import re
from dataclasses import dataclass


_I = re.IGNORECASE


@dataclass(frozen=True)
class PortalSelectors:
    """
    The bank portal is a Spanish-language SPA whose markup changes without notice.
    Keep every UI text hook, selector and vocabulary list here for easy maintenance.
    """

    # Login
    auth_frame_keywords: tuple[str, ...] = ("usuario", "contraseña")
    login_input: str = "input"
    login_submit: str = 'button[type="submit"]'
    login_any_button: str = "button"
    landing_marker: re.Pattern = re.compile(r"cuentas", _I)

    # Menus (checks)
    checks_section_text: str = "Cuentas"
    checks_subsection_text: str = "Emitir cheques"
    checks_subsection_pattern: re.Pattern = re.compile(r"emitir cheques", _I)
    checks_subsection_fallbacks: tuple[re.Pattern, ...] = (
        re.compile(r"emitir echeq", _I),
        re.compile(r"emisi.n.*cheque", _I),
    )

    # Menus (transfers)
    transfers_section_text: str = "Transferencias"
    transfers_subsection_text: str = "Nueva transferencia"
    transfers_subsection_pattern: re.Pattern = re.compile(r"nueva transferencia", _I)
    transfers_subsection_fallbacks: tuple[re.Pattern, ...] = (
        re.compile(r"nueva\s+transf", _I),
        re.compile(r"crear\s+transferencia", _I),
    )

    # Check form
    check_tax_id_input: str = 'input[name="cheques_emitir_cuit"]'
    check_description_input: str = 'input[name="cheques_emitir_descripcion"]'
    check_form_name_fragment: str = "cheque"
    check_add_buttons: tuple[str, ...] = (
        'button[data-tour="add_check"]',
        'button[aria-label="Agregar cheque"]',
        'button[aria-label*="Agregar" i]',
    )
    check_add_pattern: re.Pattern = re.compile(r"agregar\s+cheque", _I)
    check_pending_rows: str = "table tbody tr"

    # Transfer form
    transfer_form_keywords: tuple[str, ...] = ("cuenta destino", "transferencia")
    transfer_form_fragments: tuple[str, ...] = ("destino", "cbu", "monto")
    transfer_account_label: re.Pattern = re.compile(r"cuenta\s*destino", _I)
    transfer_account_fallback_label: re.Pattern = re.compile(r"destino|cbu|alias", _I)
    amount_label: re.Pattern = re.compile(r"^\s*monto\b", _I)
    transfer_add_pattern: re.Pattern = re.compile(r"agregar\s+(otra\s+)?transferencia", _I)
    transfer_pending_rows: str = 'input[name*="monto" i], input[labeltext*="monto" i]'

    # Shared date field
    date_placeholder_input: str = 'input[placeholder*="fecha" i]'
    date_typed_input: str = 'input[type="date"]'
    date_label: re.Pattern = re.compile(r"fecha", _I)

    # After all items are entered
    continue_text: str = "Continuar"
    continue_pattern: re.Pattern = re.compile(r"continuar", _I)
    continue_progress: re.Pattern = re.compile(r"confirmar|resumen|firmar|validar|preparar", _I)
    terms_pattern: re.Pattern = re.compile(r"t[eé]rminos|condiciones|acepto|declaro|he le[ií]do", _I)
    terms_checkbox: str = 'input[type="checkbox"]'
    terms_ack_texts: tuple[str, ...] = ("Aceptar", "Acepto")
    authorize_pattern: re.Pattern = re.compile(r"preparar\s+y\s+autorizar", _I)
    authorize_fallback_pattern: re.Pattern = re.compile(r"^\s*autorizar\s*$", _I)

    # OTP challenge
    challenge_vocabulary: tuple[str, ...] = ("código", "codigo", "seguridad", "token", "autoriz", "firma")
    challenge_gone_vocabulary: tuple[str, ...] = ("código", "codigo", "token")
    otp_inputs: tuple[str, ...] = (
        'input[autocomplete="one-time-code"]',
        'input[inputmode="numeric"]',
        'input[type="tel"]',
        'input[type="password"]',
        'input[type="number"]',
    )
    otp_confirm_pattern: re.Pattern = re.compile(r"confirmar|autorizar|firmar|continuar|enviar", _I)

    # Confirmation
    success_vocabulary: tuple[str, ...] = (
        "operación realizada",
        "operacion realizada",
        "emitidos correctamente",
        "cheques emitidos",
        "comprobante",
        "número de operación",
        "numero de operacion",
    )


DEFAULT_SELECTORS = PortalSelectors()
