from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Sequence

from ..config import AutomationConfig
from ..models import BatchAutomationResult, InstructionResult, PaymentInstruction
from ..runlog import RunLog
from .confirmation import ConfirmationDetector
from .errors import ChallengeTimeout, ConfirmationTimeout, MissingCredentialsError
from .filler import FormFiller
from .flows import PaymentFlow
from .locator import ElementLocator
from .navigation import NavigationStateMachine, NavState
from .otp import OtpHandshake
from .selectors import DEFAULT_SELECTORS, PortalSelectors
from .session import Session, SessionController


logger = logging.getLogger(__name__)

OtpCodeProvider = Callable[[], str]
StatusCallback = Callable[[str], None]
ControllerFactory = Callable[..., SessionController]

NOT_SUBMITTED = "Not submitted: another instruction in this batch could not be entered"
NOT_CONFIRMED = "The portal did not confirm the operation"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_EXTERNAL_ACTION = "waiting_for_external_action"
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


class AutomationRun:
    """
    One engine invocation over a list of instructions.

    Owns the browser session, the run log and the per-instruction results. Always returns
    exactly one result per submitted instruction; a result is only successful when the
    portal showed its confirmation.
    """

    def __init__(
        self,
        config: AutomationConfig,
        flow: type[PaymentFlow],
        *,
        controller_factory: ControllerFactory = SessionController,
        otp_code_provider: Optional[OtpCodeProvider] = None,
        on_status: Optional[StatusCallback] = None,
        selectors: Optional[PortalSelectors] = None,
    ) -> None:
        self.config = config
        self.flow_cls = flow
        self.selectors = selectors or DEFAULT_SELECTORS
        self.otp_code_provider = otp_code_provider
        self.on_status = on_status
        self.log = RunLog(verbose=config.debug, name=f"{__name__}.{flow.kind or 'run'}")
        self.controller = controller_factory(
            config, self.log, profile_name=flow.profile_name, selectors=self.selectors
        )
        self.session: Optional[Session] = None
        self.nav: Optional[NavigationStateMachine] = None
        self.status = RunStatus.IDLE

    def _set_status(self, status: RunStatus) -> None:
        self.status = status
        logger.debug("Run status -> %s", status.value)
        if self.on_status is not None:
            self.on_status(status.value)

    def _resolve_otp_code(self) -> str:
        if self.config.manual_otp:
            return ""
        code = (self.config.otp_code or "").strip()
        if not code and self.otp_code_provider is not None:
            code = (self.otp_code_provider() or "").strip()
        return code

    def execute(self, instructions: Sequence[PaymentInstruction]) -> BatchAutomationResult:
        log = self.log
        results: dict[str, InstructionResult] = {}
        confirmed = False
        keep_open = False
        reason = NOT_CONFIRMED

        self._set_status(RunStatus.RUNNING)
        try:
            session = self.controller.open()
            self.session = session

            locator = ElementLocator(session)
            nav = NavigationStateMachine(session, locator)
            self.nav = nav
            nav.advance(NavState.AUTHENTICATED)

            filler = FormFiller(session)
            flow = self.flow_cls(session, nav, filler, self.selectors)
            flow.open_form()

            total = len(instructions)
            for index, instruction in enumerate(instructions):
                try:
                    flow.process_item(instruction, index, total)
                    results[instruction.id] = InstructionResult(id=instruction.id, success=True)
                except Exception as e:
                    msg = str(e) or type(e).__name__
                    log.error(f"{flow.noun} {instruction.payee_name}: {msg}")
                    results[instruction.id] = InstructionResult(id=instruction.id, success=False, error=msg)
                    session.capture(f"error-{flow.noun}-{index + 1}")

            failed = [i.id for i in instructions if not results[i.id].success]
            if failed:
                # All-or-nothing: never hand the bank an incomplete set.
                pending = [i.id for i in instructions if results[i.id].success]
                for rid in pending:
                    results[rid].fail(NOT_SUBMITTED)
                log.warning(
                    f"Errors while entering {flow.noun}s (failed: {', '.join(failed)}); "
                    f"not clicking 'Continuar' so nothing is issued (also not submitted: {', '.join(pending) or 'none'})"
                )
                session.capture("errors-before-continue")
                self._set_status(RunStatus.UNCONFIRMED)
                return self._finish(instructions, results, reason=NOT_SUBMITTED, keep_open=False)

            nav.advance(NavState.ALL_ITEMS_ENTERED)
            flow.continue_()
            flow.accept_terms()
            flow.request_authorization()

            otp = OtpHandshake(session, filler, self.selectors)
            screen = otp.wait_for_challenge()
            if screen is None:
                session.capture("otp-not-detected")
                # A human may still be looking at something we did not recognise.
                keep_open = self.config.manual_otp
                raise ChallengeTimeout("The security code screen never appeared")

            session.capture("otp-screen")
            nav.advance(NavState.AWAITING_CHALLENGE)
            self._set_status(RunStatus.WAITING_FOR_EXTERNAL_ACTION)

            code = self._resolve_otp_code()
            automated = bool(code) and otp.submit_code(screen, code)
            if not automated:
                keep_open = True
                log.info("[otp] Waiting for a human to type the code in the browser. The window will stay open.")

            timeout = self.config.success_timeout_for(manual=not automated)
            confirmed = ConfirmationDetector(self.selectors).wait(session, timeout, require_challenge_gone=True)
            if not confirmed:
                raise ConfirmationTimeout(f"No confirmation observed within {timeout / 1000:.0f}s")

            nav.advance(NavState.CONFIRMED)
            self._set_status(RunStatus.CONFIRMED)
            log.info("[done] The portal confirmed the operation.")
        except (ChallengeTimeout, ConfirmationTimeout) as e:
            reason = f"{NOT_CONFIRMED}: {e}"
            log.warning(f"{e}; nothing is marked as sent (check the portal).")
            self._set_status(RunStatus.UNCONFIRMED)
        except MissingCredentialsError as e:
            reason = str(e)
            log.error(reason)
            self._set_status(RunStatus.FAILED)
        except Exception as e:
            reason = str(e) or type(e).__name__
            log.error(f"Run failed: {reason}")
            logger.debug("Run failed.", exc_info=True)
            if self.session is not None:
                self.session.capture("run-failure")
            self._set_status(RunStatus.FAILED)

        return self._finish(instructions, results, reason=reason, keep_open=keep_open, confirmed=confirmed)

    def _finish(
        self,
        instructions: Sequence[PaymentInstruction],
        results: dict[str, InstructionResult],
        *,
        reason: str,
        keep_open: bool,
        confirmed: bool = False,
    ) -> BatchAutomationResult:
        if self.nav is not None and not self.nav.finished:
            self.nav.give_up()
        for instruction in instructions:
            r = results.get(instruction.id)
            if r is None:
                results[instruction.id] = InstructionResult(id=instruction.id, success=False, error=reason)
            elif r.success and not confirmed:
                r.fail(reason)

        session_open = False
        if self.session is not None:
            if keep_open:
                session_open = True
                self.log.info("Browser left open for manual verification.")
            else:
                self.session.close()
                self.log.info("Browser closed.")

        ok = sum(1 for i in instructions if results[i.id].success)
        self.log.info(
            "Finished: operation confirmed by the portal."
            if confirmed
            else f"Finished without confirmation ({ok}/{len(instructions)} confirmed); check the portal."
        )
        return BatchAutomationResult(
            results=[results[i.id] for i in instructions],
            logs=self.log.lines,
            session_open=session_open,
        )

    def preflight(self) -> bool:
        """
        Log in and open the entry form, then close. Nothing is typed into the form, so no
        operation can be issued.
        """
        self._set_status(RunStatus.RUNNING)
        try:
            session = self.controller.open()
            self.session = session
            nav = NavigationStateMachine(session, ElementLocator(session))
            self.nav = nav
            nav.advance(NavState.AUTHENTICATED)
            self.flow_cls(session, nav, FormFiller(session), self.selectors).open_form()
            self.log.info(f"[preflight] Logged in and reached the {self.flow_cls.noun} form.")
            self._set_status(RunStatus.IDLE)
            return True
        except Exception as e:
            self.log.error(f"[preflight] {str(e) or type(e).__name__}")
            if self.session is not None:
                self.session.capture("preflight-failure")
            self._set_status(RunStatus.FAILED)
            return False
        finally:
            self.close_session()

    def close_session(self) -> None:
        """Close a session that was left open for a human to finish the challenge."""
        if self.session is not None and not self.session.closed:
            self.session.close()
