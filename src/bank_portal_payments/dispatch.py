from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from .models import AnyInstruction, Batch, BatchAutomationResult, utc_now
from .store import BatchStore


logger = logging.getLogger(__name__)

Runner = Callable[[list[AnyInstruction]], BatchAutomationResult]


class NothingToSendError(ValueError):
    pass


def select_pending(batch: Batch, ids: Optional[Iterable[str]] = None) -> list[AnyInstruction]:
    wanted = {i.strip() for i in ids if i and i.strip()} if ids is not None else None
    out = []
    for instruction in batch.instructions:
        if instruction.status != "pending":
            continue
        if wanted is not None and instruction.id not in wanted:
            continue
        out.append(instruction)
    return out


def send_batch(
    store: BatchStore,
    batch_id: str,
    ids: Optional[Iterable[str]] = None,
    *,
    runner: Runner,
) -> BatchAutomationResult:
    """
    Run the engine over a batch's pending instructions and record the outcome.

    Selected instructions move to `processing` before the run; afterwards each goes to
    `sent` (one shared timestamp) only when its result is successful, otherwise to `failed`.
    """
    batch = store.require(batch_id)
    selected = select_pending(batch, ids)
    if not selected:
        raise NothingToSendError(f"No pending instructions to send in batch {batch_id}")

    started = utc_now()
    for instruction in selected:
        instruction.transition("processing", at=started)
    store.save(batch)
    logger.info("Sending %d instruction(s) from batch %s", len(selected), batch_id)

    snapshot = [i.model_copy(deep=True) for i in selected]
    try:
        result = runner(snapshot)
    except Exception as e:
        # Nothing may stay in `processing` forever.
        for instruction in selected:
            instruction.transition("failed", error=f"Run crashed: {e}")
        store.save(batch)
        raise

    sent_at = utc_now()
    for instruction in selected:
        r = result.result_for(instruction.id)
        if r is not None and r.success:
            instruction.transition("sent", at=sent_at)
        else:
            instruction.transition("failed", at=sent_at, error=(r.error if r else None) or "No result returned")
    store.save(batch)

    logger.info("Batch %s: %d sent, %d failed", batch_id, result.total_sent, result.total_failed)
    return result
