from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .models import AnyInstruction, Batch, BatchKind, InstructionStatus


logger = logging.getLogger(__name__)

STORE_FILES: dict[str, str] = {
    "checks": "batches.json",
    "transfers": "transfer-batches.json",
}


class BatchNotFoundError(LookupError):
    pass


class BatchStore:
    """
    File-backed batch store for one flow kind: `{"batches": [...]}` in a JSON file.

    Writes are atomic (tmp + rename). A last-known-good copy is kept at `<path>.bak`; a
    corrupt file is moved aside and the backup restored when possible.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.path.with_name(self.path.name + ".bak")

    @classmethod
    def for_kind(cls, data_dir: Union[str, Path], kind: BatchKind) -> "BatchStore":
        return cls(Path(data_dir) / STORE_FILES[kind])

    def _parse(self, raw: str) -> list[Batch]:
        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("store root must be an object")
        return [Batch.model_validate(b) for b in data.get("batches") or []]

    def _read(self) -> list[Batch]:
        if not self.path.exists():
            return []
        try:
            return self._parse(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Batch store appears corrupted/unreadable; attempting restore from backup. (%s)", e)
            self._quarantine()

        if self._backup_path.exists():
            try:
                batches = self._parse(self._backup_path.read_text(encoding="utf-8"))
                shutil.copy2(self._backup_path, self.path)
                logger.warning("Restored batch store from backup: %s", self._backup_path)
                return batches
            except (OSError, ValueError, ValidationError):
                logger.warning("Failed to restore batch store from backup; starting empty.", exc_info=True)
        else:
            logger.warning("No batch store backup found; starting empty.")
        return []

    def _quarantine(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        try:
            self.path.replace(self.path.with_name(self.path.name + f".corrupt-{stamp}"))
        except OSError:
            logger.debug("Failed to quarantine path=%s", self.path, exc_info=True)

    def _write(self, batches: list[Batch]) -> None:
        payload = {"batches": [b.model_dump(mode="json") for b in batches]}
        text = json.dumps(payload, indent=2, ensure_ascii=False)

        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(self.path)
        self.backup()

    def backup(self) -> None:
        """Refresh `<path>.bak` from the current (just written, known-good) file."""
        if not self.path.exists():
            return
        tmp = self._backup_path.with_name(self._backup_path.name + ".tmp")
        try:
            shutil.copy2(self.path, tmp)
            tmp.replace(self._backup_path)
        except OSError:
            logger.debug("Failed to write batch store backup.", exc_info=True)

    def list_batches(self) -> list[Batch]:
        return self._read()

    def get(self, batch_id: str) -> Optional[Batch]:
        for b in self._read():
            if b.id == batch_id:
                return b
        return None

    def require(self, batch_id: str) -> Batch:
        batch = self.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return batch

    def add(self, batch: Batch) -> Batch:
        batches = [b for b in self._read() if b.id != batch.id]
        # newest first, like the upload history
        batches.insert(0, batch)
        self._write(batches)
        return batch

    def save(self, batch: Batch) -> None:
        batches = self._read()
        for i, b in enumerate(batches):
            if b.id == batch.id:
                batches[i] = batch
                break
        else:
            raise BatchNotFoundError(f"Batch not found: {batch.id}")
        self._write(batches)

    def get_instruction(self, batch_id: str, instruction_id: str) -> Optional[AnyInstruction]:
        batch = self.get(batch_id)
        return batch.find(instruction_id) if batch else None

    def update_instruction(
        self,
        batch_id: str,
        instruction_id: str,
        status: InstructionStatus,
        *,
        at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> AnyInstruction:
        batch = self.require(batch_id)
        instruction = batch.find(instruction_id)
        if instruction is None:
            raise BatchNotFoundError(f"Instruction {instruction_id} not found in batch {batch_id}")
        instruction.transition(status, at=at, error=error)
        self.save(batch)
        return instruction

    def delete(self, batch_id: str) -> bool:
        batches = self._read()
        kept = [b for b in batches if b.id != batch_id]
        if len(kept) == len(batches):
            return False
        self._write(kept)
        return True

    def clear(self) -> int:
        n = len(self._read())
        self._write([])
        return n
