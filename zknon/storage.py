"""
Ledger storage.

All mutations of an entry's accumulators go through ``transaction()``, which
holds an exclusive lock on that one identifier for the lifetime of the block.
Writes made through the yielded unit only become visible when the block
exits cleanly; raising inside the block discards them.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncContextManager, AsyncIterator, Optional

from .errors import CollisionError, InternalError
from .models import LedgerEntry, LedgerTransaction, TransactionKind, TransactionStatus


class LedgerUnit(ABC):
    """Work performed while holding the lock on one ledger entry."""

    entry: Optional[LedgerEntry]

    @abstractmethod
    async def save_entry(self, entry: LedgerEntry) -> None: ...

    @abstractmethod
    async def add_transaction(
        self,
        kind: TransactionKind,
        amount: Decimal,
        status: TransactionStatus,
        recipient: Optional[str] = None,
        settlement_ref: Optional[str] = None,
    ) -> LedgerTransaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: int) -> Optional[LedgerTransaction]: ...

    @abstractmethod
    async def update_transaction(self, transaction: LedgerTransaction) -> None: ...


class LedgerStorage(ABC):
    @abstractmethod
    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    async def list_entries(self, owner_key: str) -> list[LedgerEntry]: ...

    @abstractmethod
    async def list_transactions(self, owner_key: str, limit: int) -> list[LedgerTransaction]: ...

    @abstractmethod
    async def list_pending(self) -> list[LedgerTransaction]: ...

    @abstractmethod
    def transaction(self, entry_id: str) -> AsyncContextManager[LedgerUnit]: ...

    async def close(self) -> None:
        pass


def check_entry(entry: LedgerEntry) -> None:
    if not entry.is_consistent():
        raise InternalError(
            f"Refusing to persist {entry.id}: withdrawn {entry.withdrawn} exceeds deposited {entry.deposited}",
            details={"identifier": entry.id},
        )


class _MemoryUnit(LedgerUnit):
    def __init__(self, storage: "InMemoryStorage", entry_id: str):
        self._storage = storage
        self._entry_id = entry_id
        entry_data = storage.ledger_entries.get(entry_id)
        self.entry = LedgerEntry(**entry_data) if entry_data else None
        self._staged_entry: Optional[dict] = None
        self._staged_transactions: dict[int, dict] = {}

    async def save_entry(self, entry: LedgerEntry) -> None:
        check_entry(entry)
        self.entry = entry
        self._staged_entry = entry.model_dump()

    async def add_transaction(
        self,
        kind: TransactionKind,
        amount: Decimal,
        status: TransactionStatus,
        recipient: Optional[str] = None,
        settlement_ref: Optional[str] = None,
    ) -> LedgerTransaction:
        if self.entry is None:
            raise InternalError(f"Cannot record a transaction against missing entry {self._entry_id}")
        tx_data = {
            "id": next(self._storage.transaction_ids),
            "ledger_entry_id": self.entry.id,
            "owner_key": self.entry.owner_key,
            "kind": kind,
            "amount": amount,
            "recipient": recipient,
            "settlement_ref": settlement_ref,
            "status": status,
            "created_at": datetime.now(timezone.utc),
        }
        self._staged_transactions[tx_data["id"]] = tx_data
        return LedgerTransaction(**tx_data)

    async def get_transaction(self, transaction_id: int) -> Optional[LedgerTransaction]:
        tx_data = self._staged_transactions.get(transaction_id) or self._storage.transactions.get(transaction_id)
        if not tx_data or tx_data["ledger_entry_id"] != self._entry_id:
            return None
        return LedgerTransaction(**tx_data)

    async def update_transaction(self, transaction: LedgerTransaction) -> None:
        if transaction.ledger_entry_id != self._entry_id:
            raise InternalError(f"Transaction {transaction.id} does not belong to {self._entry_id}")
        self._staged_transactions[transaction.id] = transaction.model_dump()

    def commit(self) -> None:
        if self._staged_entry is not None:
            self._storage.ledger_entries[self._entry_id] = self._staged_entry
        self._storage.transactions.update(self._staged_transactions)


class InMemoryStorage(LedgerStorage):
    """Process-local store. One asyncio lock per identifier serialises writers."""

    def __init__(self):
        self.ledger_entries: dict[str, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.transaction_ids = itertools.count(1)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._locks[entry.id]:
            if entry.id in self.ledger_entries:
                raise CollisionError(f"Identifier {entry.id} already exists")
            check_entry(entry)
            self.ledger_entries[entry.id] = entry.model_dump()
        return entry

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        entry_data = self.ledger_entries.get(entry_id)
        return LedgerEntry(**entry_data) if entry_data else None

    async def list_entries(self, owner_key: str) -> list[LedgerEntry]:
        entries = [
            LedgerEntry(**e) for e in self.ledger_entries.values()
            if e["owner_key"] == owner_key
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    async def list_transactions(self, owner_key: str, limit: int) -> list[LedgerTransaction]:
        txs = [
            LedgerTransaction(**t) for t in self.transactions.values()
            if t["owner_key"] == owner_key
        ]
        txs.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return txs[:limit]

    async def list_pending(self) -> list[LedgerTransaction]:
        return [
            LedgerTransaction(**t) for t in self.transactions.values()
            if t["status"] == TransactionStatus.PENDING
        ]

    @asynccontextmanager
    async def transaction(self, entry_id: str) -> AsyncIterator[LedgerUnit]:
        # Entries are never deleted, so an unknown id needs no lock and gets none.
        if entry_id not in self.ledger_entries:
            yield _MemoryUnit(self, entry_id)
            return
        async with self._locks[entry_id]:
            unit = _MemoryUnit(self, entry_id)
            yield unit
            unit.commit()
