from datetime import datetime
from decimal import Context, Decimal, Inexact, InvalidOperation, ROUND_DOWN
from enum import Enum
from typing import Annotated, Any, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from .errors import ValidationError


# Smallest unit the pool can pay out is 1e-9 of a coin.
AMOUNT_QUANTUM = Decimal("0.000000001")

WireAmount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

# Accumulators are NUMERIC(36,9); arithmetic on them must never round.
LEDGER_CONTEXT = Context(prec=36, traps=[InvalidOperation, Inexact])


def add_amounts(a: Decimal, b: Decimal) -> Decimal:
    try:
        return LEDGER_CONTEXT.add(a, b)
    except Inexact:
        raise ValidationError("amount would overflow the ledger balance") from None


def subtract_amounts(a: Decimal, b: Decimal) -> Decimal:
    try:
        return LEDGER_CONTEXT.subtract(a, b)
    except Inexact:
        raise ValidationError("amount would overflow the ledger balance") from None


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def validate_amount(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"amount must be a number, got {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be a positive finite number")
    try:
        exact = quantize_amount(amount) == amount
    except InvalidOperation:
        raise ValidationError("amount is too large") from None
    if not exact:
        raise ValidationError("amount supports at most 9 decimal places")
    return amount


def require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class TransactionKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class LedgerEntry(BaseModel):
    id: str
    owner_key: str
    note_hash: str
    deposited: Decimal = Decimal("0")
    withdrawn: Decimal = Decimal("0")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def balance(self) -> Decimal:
        return subtract_amounts(self.deposited, self.withdrawn)

    def is_consistent(self) -> bool:
        return Decimal("0") <= self.withdrawn <= self.deposited


class LedgerTransaction(BaseModel):
    id: int
    ledger_entry_id: str
    owner_key: str
    kind: TransactionKind
    amount: Decimal
    recipient: Optional[str] = None
    settlement_ref: Optional[str] = None
    status: TransactionStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)


# --- wire models -----------------------------------------------------------

class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateProofRequest(WireModel):
    owner_key: str = Field(
        ...,
        validation_alias=AliasChoices("ownerKey", "walletPubkey", "owner_key"),
        description="Wallet address that will own the identifier",
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {"ownerKey": "8hGDXBJqpCZvWaDcbvXykRSb1bKbbJ5Ji4c85ubYvkaA"}
    })


class GenerateProofResponse(WireModel):
    identifier: str
    secret_note: str


class ProofSummary(WireModel):
    identifier: str
    total: WireAmount
    spent: WireAmount
    balance: WireAmount
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "ProofSummary":
        return cls(
            identifier=entry.id,
            total=entry.deposited,
            spent=entry.withdrawn,
            balance=entry.balance,
            created_at=entry.created_at,
        )


class ProofListResponse(WireModel):
    proofs: list[ProofSummary]


class DepositRequest(WireModel):
    owner_key: str = Field(..., validation_alias=AliasChoices("ownerKey", "walletPubkey", "owner_key"))
    identifier: str = Field(..., validation_alias=AliasChoices("identifier", "zkProofId"))
    amount: Decimal
    settlement_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("settlementRef", "txSignature", "settlement_ref"),
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "ownerKey": "8hGDXBJqpCZvWaDcbvXykRSb1bKbbJ5Ji4c85ubYvkaA",
            "identifier": "ZKP-3F9A0C1B22D47E10",
            "amount": 1.5,
            "settlementRef": "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb",
        }
    })


class DepositResponse(WireModel):
    ok: bool = True
    identifier: str
    balance: WireAmount
    total: WireAmount
    spent: WireAmount

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "DepositResponse":
        return cls(
            identifier=entry.id,
            balance=entry.balance,
            total=entry.deposited,
            spent=entry.withdrawn,
        )


class WithdrawalRequest(WireModel):
    identifier: str = Field(..., validation_alias=AliasChoices("identifier", "zkProofId"))
    secret_note: str = Field(..., validation_alias=AliasChoices("secretNote", "note", "secret_note"))
    amount: Decimal
    recipient: str


class WithdrawalReceipt(WireModel):
    status: TransactionStatus = TransactionStatus.PENDING
    transaction_id: int


class HistoryItem(WireModel):
    id: int
    identifier: str
    kind: TransactionKind
    amount: WireAmount
    recipient: Optional[str] = None
    settlement_ref: Optional[str] = None
    status: TransactionStatus
    created_at: datetime

    @classmethod
    def from_transaction(cls, tx: LedgerTransaction) -> "HistoryItem":
        return cls(
            id=tx.id,
            identifier=tx.ledger_entry_id,
            kind=tx.kind,
            amount=tx.amount,
            recipient=tx.recipient,
            settlement_ref=tx.settlement_ref,
            status=tx.status,
            created_at=tx.created_at,
        )


class HistoryResponse(WireModel):
    history: list[HistoryItem]


class HealthResponse(WireModel):
    ok: bool = True
    pool_address: Optional[str] = None
