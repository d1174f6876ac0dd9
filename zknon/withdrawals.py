"""
Withdrawal engine.

A withdrawal moves through PENDING -> CONFIRMED | FAILED exactly once:

1. ``initiate`` locks the ledger entry, checks the note and the balance,
   reserves the amount (``withdrawn += amount``) and records a PENDING
   transaction, all in one storage transaction. Unless ``settle_inline`` is
   set it returns before any payout happens.
2. A tracked background task asks the settlement client to pay out.
3. ``resolve`` records the outcome under the same lock. Success sets
   CONFIRMED and the settlement reference; anything else sets FAILED and
   releases the reservation (``withdrawn -= amount``) in the same write.

If the process dies between 1 and 3 the transaction stays PENDING with the
funds reserved. ``find_stuck_pending`` reports such transactions; they are
not resolved automatically.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .commitments import notes_match
from .errors import (
    AuthorizationError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    SettlementUnavailableError,
    ValidationError,
)
from .models import (
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
    WithdrawalReceipt,
    add_amounts,
    require_text,
    subtract_amounts,
    validate_amount,
)
from .settlement import SettlementClient, SettlementError, SettlementTimeoutError
from .storage import LedgerStorage

logger = logging.getLogger(__name__)


class WithdrawalEngine:
    def __init__(
        self,
        storage: LedgerStorage,
        settlement: Optional[SettlementClient] = None,
        settlement_timeout: float = 90.0,
        settle_inline: bool = False,
    ):
        self.storage = storage
        self.settlement = settlement
        self.settlement_timeout = settlement_timeout
        # Await the payout inside initiate() instead of in a background task.
        # Needed wherever the event loop does not outlive the request.
        self.settle_inline = settle_inline
        self._tasks: dict[int, asyncio.Task] = {}
        self._closing = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def initiate(
        self, identifier: str, secret_note: str, amount: Any, recipient: str
    ) -> WithdrawalReceipt:
        if self.settlement is None:
            raise SettlementUnavailableError("Withdrawals are not configured on this server")
        if self._closing:
            raise SettlementUnavailableError("Server is shutting down; withdrawals are not accepted")

        identifier = require_text("identifier", identifier)
        secret_note = require_text("secretNote", secret_note)
        recipient = require_text("recipient", recipient)
        amount = validate_amount(amount)
        if not self.settlement.is_valid_recipient(recipient):
            raise ValidationError(f"recipient {recipient} is not a valid payout address")

        async with self.storage.transaction(identifier) as unit:
            entry = unit.entry
            if entry is None:
                raise NotFoundError(f"Identifier {identifier} not found")
            if not notes_match(secret_note, entry.note_hash):
                raise AuthorizationError(f"Invalid secret note for {identifier}")
            if amount > entry.balance:
                raise InsufficientBalanceError(identifier, amount, entry.balance)

            reserved = add_amounts(entry.withdrawn, amount)
            await unit.save_entry(entry.model_copy(update={"withdrawn": reserved}))
            tx = await unit.add_transaction(
                TransactionKind.WITHDRAW,
                amount,
                TransactionStatus.PENDING,
                recipient=recipient,
            )

        logger.info("Reserved %s on %s for withdrawal %s to %s", amount, identifier, tx.id, recipient)
        if self.settle_inline:
            resolved = await self._settle(tx)
            status = resolved.status if resolved is not None else TransactionStatus.PENDING
            return WithdrawalReceipt(status=status, transaction_id=tx.id)
        self._spawn(tx)
        return WithdrawalReceipt(status=TransactionStatus.PENDING, transaction_id=tx.id)

    def _spawn(self, tx: LedgerTransaction) -> None:
        task = asyncio.create_task(self._settle(tx), name=f"settle-withdrawal-{tx.id}")
        self._tasks[tx.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(tx.id, None))

    async def _pay(self, tx: LedgerTransaction) -> tuple[bool, Optional[str]]:
        try:
            reference = await asyncio.wait_for(
                self.settlement.transfer(tx.recipient, tx.amount),
                timeout=self.settlement_timeout,
            )
        except SettlementTimeoutError as e:
            logger.warning(
                "Withdrawal %s outcome is AMBIGUOUS: %s. Releasing reservation; "
                "broadcast signature %s kept for reconciliation",
                tx.id, e, e.signature,
            )
            return False, e.signature
        except asyncio.TimeoutError:
            logger.warning(
                "Withdrawal %s outcome is AMBIGUOUS: settlement did not finish within %ss. "
                "Releasing reservation",
                tx.id, self.settlement_timeout,
            )
            return False, None
        except SettlementError as e:
            logger.error("Withdrawal %s settlement failed: %s", tx.id, e)
            return False, None
        except Exception:
            logger.exception("Withdrawal %s settlement raised unexpectedly", tx.id)
            return False, None
        return True, reference

    async def _settle(self, tx: LedgerTransaction) -> Optional[LedgerTransaction]:
        succeeded, reference = await self._pay(tx)
        try:
            return await self.resolve(tx.ledger_entry_id, tx.id, succeeded, reference)
        except Exception:
            logger.exception("Could not record outcome of withdrawal %s; it stays PENDING", tx.id)
            return None

    async def resolve(
        self,
        identifier: str,
        transaction_id: int,
        succeeded: bool,
        settlement_ref: Optional[str] = None,
    ) -> LedgerTransaction:
        """Move a PENDING withdrawal to its terminal state, compensating on failure."""
        async with self.storage.transaction(identifier) as unit:
            tx = await unit.get_transaction(transaction_id)
            if tx is None:
                raise NotFoundError(f"Transaction {transaction_id} not found on {identifier}")
            if tx.kind != TransactionKind.WITHDRAW or tx.is_terminal():
                raise InvalidStateTransitionError(
                    f"Cannot resolve {tx.kind.value} transaction {transaction_id} in {tx.status.value} state"
                )

            if succeeded:
                tx = tx.model_copy(update={
                    "status": TransactionStatus.CONFIRMED,
                    "settlement_ref": settlement_ref,
                })
            else:
                tx = tx.model_copy(update={
                    "status": TransactionStatus.FAILED,
                    "settlement_ref": settlement_ref,
                })
                entry = unit.entry
                released = subtract_amounts(entry.withdrawn, tx.amount)
                await unit.save_entry(entry.model_copy(update={"withdrawn": released}))
            await unit.update_transaction(tx)

        if succeeded:
            logger.info("Withdrawal %s confirmed: %s", transaction_id, settlement_ref)
        else:
            logger.info("Withdrawal %s failed; released %s back to %s", transaction_id, tx.amount, identifier)
        return tx

    async def find_stuck_pending(self) -> list[LedgerTransaction]:
        pending = await self.storage.list_pending()
        return [
            tx for tx in pending
            if tx.kind == TransactionKind.WITHDRAW and tx.id not in self._tasks
        ]

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight settlements. Returns how many are still running."""
        tasks = list(self._tasks.values())
        if not tasks:
            return 0
        logger.info("Waiting for %d in-flight settlement(s)", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return len(pending)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        self._closing = True
        remaining = await self.drain(timeout)
        if not remaining:
            return
        logger.warning(
            "%d settlement(s) still running after %ss; their withdrawals stay PENDING: %s",
            remaining, timeout, sorted(self._tasks),
        )
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

