from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from bank_portal_payments.dispatch import NothingToSendError, select_pending, send_batch
from bank_portal_payments.models import Batch, BatchAutomationResult, InstructionResult, PaymentInstruction
from bank_portal_payments.store import BatchStore


def _store(tmp_path: Path) -> BatchStore:
    store = BatchStore(tmp_path / "transfer-batches.json")
    store.add(
        Batch.model_validate(
            {
                "id": "b1",
                "kind": "transfers",
                "instructions": [
                    {"id": f"t{i}", "payeeName": f"P{i}", "cbu": f"00{i}", "amount": 10, "paymentDate": "2026-03-05"}
                    for i in range(1, 4)
                ],
            }
        )
    )
    return store


def _runner(ok: set[str]):
    seen: list[list[str]] = []

    def run(instructions: Sequence[PaymentInstruction]) -> BatchAutomationResult:
        seen.append([i.id for i in instructions])
        # the engine only ever sees in-flight copies
        assert all(i.status == "processing" for i in instructions)
        return BatchAutomationResult(
            results=[
                InstructionResult(id=i.id, success=i.id in ok, error=None if i.id in ok else "nope")
                for i in instructions
            ]
        )

    run.seen = seen  # type: ignore[attr-defined]
    return run


def test_select_pending_filters_by_id_and_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.update_instruction("b1", "t1", "processing")
    batch = store.require("b1")
    assert [i.id for i in select_pending(batch)] == ["t2", "t3"]
    assert [i.id for i in select_pending(batch, ["t3", " ", "t1"])] == ["t3"]


def test_send_applies_results_with_shared_sent_at(tmp_path: Path) -> None:
    store = _store(tmp_path)
    runner = _runner(ok={"t1", "t3"})
    result = send_batch(store, "b1", runner=runner)

    assert runner.seen == [["t1", "t2", "t3"]]
    assert result.total_sent + result.total_failed == 3

    batch = store.require("b1")
    t1, t2, t3 = batch.instructions
    assert (t1.status, t2.status, t3.status) == ("sent", "failed", "sent")
    assert t1.sent_at == t3.sent_at
    assert t2.sent_at is None and t2.last_error == "nope"


def test_send_only_selected_ids(tmp_path: Path) -> None:
    store = _store(tmp_path)
    send_batch(store, "b1", ["t2"], runner=_runner(ok={"t2"}))
    statuses = [i.status for i in store.require("b1").instructions]
    assert statuses == ["pending", "sent", "pending"]


def test_nothing_to_send(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(NothingToSendError):
        send_batch(store, "b1", ["zz"], runner=_runner(ok=set()))


def test_crashing_runner_leaves_nothing_processing(tmp_path: Path) -> None:
    store = _store(tmp_path)

    def boom(_instructions: Sequence[PaymentInstruction]) -> BatchAutomationResult:
        raise RuntimeError("browser died")

    with pytest.raises(RuntimeError):
        send_batch(store, "b1", runner=boom)
    batch = store.require("b1")
    assert {i.status for i in batch.instructions} == {"failed"}
    assert "browser died" in (batch.instructions[0].last_error or "")


def test_missing_result_counts_as_failure(tmp_path: Path) -> None:
    store = _store(tmp_path)
    send_batch(store, "b1", runner=lambda _ins: BatchAutomationResult())
    assert {i.status for i in store.require("b1").instructions} == {"failed"}
