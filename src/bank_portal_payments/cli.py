from __future__ import annotations

import argparse
import json
import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .config import load_config
from .dispatch import NothingToSendError, send_batch
from .logging_config import configure_logging
from .models import Batch
from .portal.engine import AutomationRun, RunStatus
from .portal.flows import FLOWS
from .store import BatchNotFoundError, BatchStore
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("bank_portal_payments")

KINDS = ("checks", "transfers")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bank_portal_payments")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Optional YAML config (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    imp = sub.add_parser("import-batch", help="Load instructions from a JSON/YAML file into the batch store")
    imp.add_argument("--kind", choices=KINDS, required=True)
    imp.add_argument("--batch-id", default="", help="Batch id (default: random)")
    imp.add_argument("file", help="JSON or YAML file with a list of instructions")

    ls = sub.add_parser("list-batches", help="List stored batches and their instruction statuses")
    ls.add_argument("--kind", choices=KINDS, required=True)

    send = sub.add_parser("send", help="Submit a batch's pending instructions through the bank portal")
    send.add_argument("--kind", choices=KINDS, required=True)
    send.add_argument("batch_id")
    send.add_argument("--ids", default="", help="Comma-separated instruction ids (default: all pending)")
    send.add_argument("--headful", action="store_true", help="Force a visible browser window")
    send.add_argument(
        "--auto-otp",
        action="store_true",
        help="Type the security code automatically (OTP_CODE env var, or prompt in this terminal).",
    )
    send.add_argument("--debug", action="store_true", help="Verbose run log")
    send.add_argument("--screenshots", action="store_true", help="Save stage screenshots (requires --debug)")
    send.add_argument("--slow", action="store_true", help="Full human-paced delays (disable fast mode)")

    preflight = sub.add_parser(
        "preflight",
        help="Validate configuration; with --login, also log into the portal and open the entry form (nothing is typed).",
    )
    preflight.add_argument("--kind", choices=KINDS, required=True)
    preflight.add_argument("--login", action="store_true", help="Also drive the browser up to the entry form")
    preflight.add_argument("--headful", action="store_true", help="Force a visible browser window")

    reset = sub.add_parser("reset", help="Delete every stored batch of a kind")
    reset.add_argument("--kind", choices=KINDS, required=True)

    return p


def _load_rows(path: Path) -> list:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))  # YAML is a superset of JSON
    if isinstance(raw, dict):
        for key in ("instructions", "checks", "transfers"):
            if isinstance(raw.get(key), list):
                return raw[key]
        raise SystemExit(f"{path}: expected a list of instructions")
    if not isinstance(raw, list):
        raise SystemExit(f"{path}: expected a list of instructions")
    return raw


def _import_batch(store: BatchStore, *, kind: str, file: str, batch_id: str) -> Batch:
    path = Path(file)
    if not path.exists():
        raise SystemExit(f"File not found: {path}")
    rows = _load_rows(path)
    for i, row in enumerate(rows):
        if isinstance(row, dict) and not row.get("id"):
            row["id"] = f"{kind[:-1]}-{i + 1}"
    batch = Batch.model_validate(
        {
            "id": batch_id or uuid.uuid4().hex[:12],
            "kind": kind,
            "file_name": path.name,
            "instructions": rows,
        }
    )
    store.add(batch)
    return batch


def _print_batches(store: BatchStore) -> None:
    batches = store.list_batches()
    if not batches:
        print("(no batches)")
        return
    for b in batches:
        counts: dict[str, int] = {}
        for ins in b.instructions:
            counts[ins.status] = counts.get(ins.status, 0) + 1
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        print(f"{b.id}\t{b.file_name}\t{len(b.instructions)} items\ttotal={b.total_amount}\t{summary}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        secrets=(cfg.automation.password, cfg.automation.otp_code),
    )
    store = BatchStore.for_kind(cfg.store.data_dir, args.kind)

    if args.cmd == "import-batch":
        batch = _import_batch(store, kind=args.kind, file=args.file, batch_id=args.batch_id)
        logger.info("Imported batch %s (%d instructions, total=%s)", batch.id, len(batch.instructions), batch.total_amount)
        print(batch.id)
        return 0

    if args.cmd == "list-batches":
        _print_batches(store)
        return 0

    if args.cmd == "reset":
        n = store.clear()
        logger.info("Deleted %d %s batch(es)", n, args.kind)
        return 0

    if args.cmd == "preflight":
        logger.info("Starting preflight checks")
        if not cfg.automation.credentials.is_complete():
            raise SystemExit("Missing PORTAL_USERNAME/PORTAL_PASSWORD.")
        if args.login:
            automation = cfg.automation.model_copy(update={"headless": False} if args.headful else {})
            run = AutomationRun(automation, FLOWS[args.kind])
            ok = run.preflight()
            for line in run.log.lines:
                print(line)
            if not ok:
                _write_debug_bundle(cfg, args.kind, run_log=run.log.lines)
                return 1
        logger.info("Preflight OK")
        return 0

    if args.cmd == "send":
        if args.screenshots and not args.debug:
            raise SystemExit("--screenshots requires --debug (screenshots may contain account data).")

        updates: dict = {}
        if args.headful:
            updates["headless"] = False
        if args.auto_otp:
            updates["manual_otp"] = False
        if args.debug:
            updates["debug"] = True
        if args.screenshots:
            updates["screenshots"] = True
        if args.slow:
            updates["fast_mode"] = False
        automation = cfg.automation.model_copy(update=updates)

        if automation.headless and automation.manual_otp:
            raise SystemExit("Manual OTP needs a visible browser; unset PORTAL_HEADLESS or pass --auto-otp.")

        def _otp_from_terminal() -> str:
            return input("Security code shown by the bank: ").strip()

        def _on_status(status: str) -> None:
            if status == RunStatus.WAITING_FOR_EXTERNAL_ACTION.value:
                logger.info("Waiting for the security code to be entered...")

        ids = [s.strip() for s in args.ids.split(",") if s.strip()] or None
        run = AutomationRun(automation, FLOWS[args.kind], otp_code_provider=_otp_from_terminal, on_status=_on_status)
        try:
            result = send_batch(store, args.batch_id, ids, runner=run.execute)
        except (NothingToSendError, BatchNotFoundError) as e:
            raise SystemExit(str(e))
        except Exception:
            _write_debug_bundle(cfg, args.kind, run_log=run.log.lines)
            raise

        summary = {k: v for k, v in result.to_dict().items() if k != "logs"}
        if run.status == RunStatus.FAILED:
            _write_debug_bundle(cfg, args.kind, run_log=result.logs, summary=summary)

        for line in result.logs:
            print(line)
        print(json.dumps(summary, indent=2))
        n_warn, n_err = len(run.log.warnings()), len(run.log.errors())
        if n_warn or n_err:
            logger.warning("Run finished with %d warning(s) and %d error(s); see the log above.", n_warn, n_err)

        if result.session_open:
            try:
                input("The browser was left open. Finish in the portal, then press Enter to close it... ")
            except EOFError:
                pass
            run.close_session()

        return 0 if result.total_failed == 0 else 1

    raise AssertionError("Unhandled command")


def _write_debug_bundle(cfg, kind: str, *, run_log: Optional[List[str]] = None, summary: Optional[dict] = None) -> None:
    # Screenshots, log file and run log in one zip for sharing.
    try:
        bundle = create_debug_bundle(
            screenshot_dir=cfg.automation.screenshot_dir,
            log_file=cfg.logging.file_path or ".data/automation.log",
            out_dir=cfg.store.data_dir,
            flow=kind,
            run_log=run_log,
            summary=summary,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)


if __name__ == "__main__":
    raise SystemExit(main())
