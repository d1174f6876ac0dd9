import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from .commitments import derive_identifier, generate_secret_note, hash_note
from .errors import CollisionError, NotFoundError, OwnershipError
from .models import (
    GenerateProofResponse,
    HistoryItem,
    LedgerEntry,
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
    WithdrawalReceipt,
    add_amounts,
    require_text,
    validate_amount,
)
from .settlement import SettlementClient
from .storage import InMemoryStorage, LedgerStorage
from .withdrawals import WithdrawalEngine

logger = logging.getLogger(__name__)

ISSUE_ATTEMPTS = 3
DEFAULT_HISTORY_LIMIT = 200

# Called before a deposit is credited; raise a LedgerServiceError to reject it.
DepositVerifier = Callable[[str, str, Decimal, Optional[str]], Awaitable[None]]


async def trust_caller(owner_key: str, identifier: str, amount: Decimal, settlement_ref: Optional[str]) -> None:
    """Deposits are credited as asserted; nothing is checked on-chain."""


class LedgerService:
    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        settlement: Optional[SettlementClient] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        settlement_timeout: float = 90.0,
        deposit_verifier: DepositVerifier = trust_caller,
        settle_inline: bool = False,
    ):
        self.storage = storage or InMemoryStorage()
        self.withdrawals = WithdrawalEngine(self.storage, settlement, settlement_timeout, settle_inline)
        self.history_limit = history_limit
        self.deposit_verifier = deposit_verifier

    @property
    def settlement(self) -> Optional[SettlementClient]:
        return self.withdrawals.settlement

    async def issue(self, owner_key: Any) -> GenerateProofResponse:
        owner_key = require_text("ownerKey", owner_key)

        for attempt in range(1, ISSUE_ATTEMPTS + 1):
            note = generate_secret_note()
            note_hash = hash_note(note)
            entry = LedgerEntry(
                id=derive_identifier(owner_key, note_hash),
                owner_key=owner_key,
                note_hash=note_hash,
                created_at=datetime.now(timezone.utc),
            )
            try:
                await self.storage.create_entry(entry)
            except CollisionError:
                logger.warning("Identifier collision on %s (attempt %d/%d)", entry.id, attempt, ISSUE_ATTEMPTS)
                continue
            logger.info("Issued %s for %s", entry.id, owner_key)
            return GenerateProofResponse(identifier=entry.id, secret_note=note)

        raise CollisionError("Could not allocate a unique identifier, retry the request")

    async def list_proofs(self, owner_key: Any) -> list[LedgerEntry]:
        return await self.storage.list_entries(require_text("wallet", owner_key))

    async def get_entry(self, identifier: str) -> LedgerEntry:
        entry = await self.storage.get_entry(identifier)
        if entry is None:
            raise NotFoundError(f"Identifier {identifier} not found")
        return entry

    async def record_deposit(
        self,
        owner_key: Any,
        identifier: Any,
        amount: Any,
        settlement_ref: Optional[str] = None,
    ) -> LedgerEntry:
        owner_key = require_text("ownerKey", owner_key)
        identifier = require_text("identifier", identifier)
        amount = validate_amount(amount)
        await self.deposit_verifier(owner_key, identifier, amount, settlement_ref)

        async with self.storage.transaction(identifier) as unit:
            entry = unit.entry
            if entry is None:
                raise NotFoundError(f"Identifier {identifier} not found")
            if entry.owner_key != owner_key:
                raise OwnershipError(f"{owner_key} does not own {identifier}")

            entry = entry.model_copy(update={"deposited": add_amounts(entry.deposited, amount)})
            await unit.save_entry(entry)
            await unit.add_transaction(
                TransactionKind.DEPOSIT,
                amount,
                TransactionStatus.CONFIRMED,
                settlement_ref=settlement_ref,
            )

        logger.info("Deposit of %s credited to %s (ref=%s)", amount, identifier, settlement_ref)
        return entry

    async def initiate_withdrawal(
        self, identifier: Any, secret_note: Any, amount: Any, recipient: Any
    ) -> WithdrawalReceipt:
        return await self.withdrawals.initiate(identifier, secret_note, amount, recipient)

    async def history(self, owner_key: Any, limit: Optional[int] = None) -> list[LedgerTransaction]:
        owner_key = require_text("wallet", owner_key)
        cap = self.history_limit if limit is None else max(0, min(limit, self.history_limit))
        return await self.storage.list_transactions(owner_key, cap)

    async def history_items(self, owner_key: Any, limit: Optional[int] = None) -> list[HistoryItem]:
        return [HistoryItem.from_transaction(tx) for tx in await self.history(owner_key, limit)]
