from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .portal.errors import InvalidTransitionError
from .util.dates import normalize_payment_date
from .util.money import parse_money, quantize_amount


InstructionStatus = Literal["pending", "processing", "sent", "failed"]
BatchKind = Literal["checks", "transfers"]

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"sent", "failed"}),
    "sent": frozenset(),
    "failed": frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentInstruction(BaseModel):
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: str
    payee_name: str = Field(validation_alias=AliasChoices("payee_name", "payeeName", "providerName", "provider_name"))
    tax_id: str = Field(default="", validation_alias=AliasChoices("tax_id", "cuitNumber", "cuit"))
    amount: Decimal
    payment_date: date = Field(validation_alias=AliasChoices("payment_date", "paymentDate"))
    status: InstructionStatus = "pending"
    sent_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("sent_at", "sentAt"))
    updated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("updated_at", "updatedAt"))
    last_error: Optional[str] = Field(default=None, validation_alias=AliasChoices("last_error", "lastError", "error"))

    @field_validator("payment_date", mode="before")
    @classmethod
    def _normalize_date(cls, v: object) -> date:
        return normalize_payment_date(v)  # type: ignore[arg-type]

    @field_validator("amount", mode="before")
    @classmethod
    def _normalize_amount(cls, v: object) -> Decimal:
        if isinstance(v, str):
            parsed = parse_money(v)
            if parsed is None:
                raise ValueError(f"invalid amount: {v!r}")
            v = parsed
        return quantize_amount(v)  # type: ignore[arg-type]

    @field_validator("tax_id", mode="before")
    @classmethod
    def _tax_id_str(cls, v: object) -> str:
        return "" if v is None else str(v).strip()

    def transition(
        self, new_status: InstructionStatus, *, at: Optional[datetime] = None, error: Optional[str] = None
    ) -> None:
        """
        Move along pending -> processing -> {sent, failed}. `sent` is only set by the
        dispatch layer after the portal confirmed the run.
        """
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.id}: cannot move from {self.status} to {new_status}")
        stamp = at or utc_now()
        self.status = new_status
        self.updated_at = stamp
        if new_status == "sent":
            self.sent_at = stamp
        self.last_error = error if new_status == "failed" else None

    def describe(self) -> str:
        return f"{self.payee_name} (CUIT: {self.tax_id})"


class CheckInstruction(PaymentInstruction):
    kind: Literal["check"] = "check"
    email: str = ""


class TransferInstruction(PaymentInstruction):
    kind: Literal["transfer"] = "transfer"
    destination_account: str = Field(
        validation_alias=AliasChoices("destination_account", "cbu", "cbuNumber", "cuentaDestino")
    )

    @field_validator("destination_account", mode="before")
    @classmethod
    def _account_str(cls, v: object) -> str:
        return "" if v is None else str(v).strip()

    def describe(self) -> str:
        return f"{self.payee_name} (CUIT: {self.tax_id}, CBU: {self.destination_account})"


AnyInstruction = Union[CheckInstruction, TransferInstruction]


class Batch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: BatchKind
    file_name: str = Field(default="", validation_alias=AliasChoices("file_name", "fileName"))
    uploaded_at: datetime = Field(default_factory=utc_now, validation_alias=AliasChoices("uploaded_at", "uploadedAt"))
    instructions: list[Annotated[AnyInstruction, Field(discriminator="kind")]] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    @model_validator(mode="before")
    @classmethod
    def _tag_instruction_kind(cls, data: object) -> object:
        # Stored/imported rows may lack the discriminator; derive it from the batch kind.
        if not isinstance(data, dict):
            return data
        kind = data.get("kind")
        tag = "check" if kind == "checks" else "transfer"
        rows = data.get("instructions") or data.get("checks") or data.get("transfers") or []
        tagged = []
        for row in rows:
            if isinstance(row, dict) and "kind" not in row:
                row = {**row, "kind": tag}
            tagged.append(row)
        out = {k: v for k, v in data.items() if k not in ("checks", "transfers")}
        out["instructions"] = tagged
        return out

    @model_validator(mode="after")
    def _compute_total(self) -> "Batch":
        # Recomputed at creation only; partial sends never re-validate it.
        self.total_amount = sum((i.amount for i in self.instructions), Decimal("0.00"))
        return self

    def find(self, instruction_id: str) -> Optional[AnyInstruction]:
        for ins in self.instructions:
            if ins.id == instruction_id:
                return ins
        return None


class InstructionResult(BaseModel):
    id: str
    success: bool
    error: Optional[str] = None

    def fail(self, reason: str) -> None:
        self.success = False
        self.error = reason


class BatchAutomationResult(BaseModel):
    results: list[InstructionResult] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    session_open: bool = False

    @property
    def total_sent(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def total_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def result_for(self, instruction_id: str) -> Optional[InstructionResult]:
        for r in self.results:
            if r.id == instruction_id:
                return r
        return None

    def to_dict(self) -> dict:
        return {
            "results": [r.model_dump(exclude_none=True) for r in self.results],
            "totalSent": self.total_sent,
            "totalFailed": self.total_failed,
            "logs": list(self.logs),
            "sessionOpen": self.session_open,
        }
