"""PostgreSQL-backed ledger storage.

Same contract as ``InMemoryStorage``. ``transaction()`` opens a database
transaction and loads the entry with ``SELECT ... FOR UPDATE`` so concurrent
writers on one identifier are serialised by the database, including writers
in other processes.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

import asyncpg

from .errors import CollisionError
from .models import LedgerEntry, LedgerTransaction, TransactionKind, TransactionStatus
from .storage import LedgerStorage, LedgerUnit, check_entry

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS zk_proofs (
    zk_proof_id TEXT PRIMARY KEY,
    wallet_pubkey TEXT NOT NULL,
    note_hash TEXT NOT NULL,
    total_amount NUMERIC(36,9) NOT NULL DEFAULT 0 CHECK (total_amount >= 0),
    spent_amount NUMERIC(36,9) NOT NULL DEFAULT 0
        CHECK (spent_amount >= 0 AND spent_amount <= total_amount),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS zk_proofs_wallet_idx ON zk_proofs (wallet_pubkey);

CREATE TABLE IF NOT EXISTS zk_transfers (
    id BIGSERIAL PRIMARY KEY,
    zk_proof_id TEXT NOT NULL REFERENCES zk_proofs (zk_proof_id),
    wallet_pubkey TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('DEPOSIT', 'WITHDRAW')),
    amount NUMERIC(36,9) NOT NULL CHECK (amount > 0),
    recipient TEXT,
    tx_signature TEXT,
    status TEXT NOT NULL CHECK (status IN ('PENDING', 'CONFIRMED', 'FAILED')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS zk_transfers_wallet_idx ON zk_transfers (wallet_pubkey, created_at DESC);
CREATE INDEX IF NOT EXISTS zk_transfers_pending_idx ON zk_transfers (status) WHERE status = 'PENDING';
"""

_ENTRY_COLUMNS = "zk_proof_id, wallet_pubkey, note_hash, total_amount, spent_amount, created_at"
_TRANSFER_COLUMNS = (
    "id, zk_proof_id, wallet_pubkey, direction, amount, recipient, tx_signature, status, created_at"
)


def _entry_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        id=row["zk_proof_id"],
        owner_key=row["wallet_pubkey"],
        note_hash=row["note_hash"],
        deposited=row["total_amount"],
        withdrawn=row["spent_amount"],
        created_at=row["created_at"],
    )


def _transaction_from_row(row) -> LedgerTransaction:
    return LedgerTransaction(
        id=row["id"],
        ledger_entry_id=row["zk_proof_id"],
        owner_key=row["wallet_pubkey"],
        kind=TransactionKind(row["direction"]),
        amount=row["amount"],
        recipient=row["recipient"],
        settlement_ref=row["tx_signature"],
        status=TransactionStatus(row["status"]),
        created_at=row["created_at"],
    )


class _PostgresUnit(LedgerUnit):
    def __init__(self, conn: asyncpg.Connection, entry_id: str, entry: Optional[LedgerEntry]):
        self._conn = conn
        self._entry_id = entry_id
        self.entry = entry

    async def save_entry(self, entry: LedgerEntry) -> None:
        check_entry(entry)
        await self._conn.execute(
            "UPDATE zk_proofs SET total_amount = $1, spent_amount = $2 WHERE zk_proof_id = $3",
            entry.deposited,
            entry.withdrawn,
            entry.id,
        )
        self.entry = entry

    async def add_transaction(
        self,
        kind: TransactionKind,
        amount: Decimal,
        status: TransactionStatus,
        recipient: Optional[str] = None,
        settlement_ref: Optional[str] = None,
    ) -> LedgerTransaction:
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO zk_transfers
                (zk_proof_id, wallet_pubkey, direction, amount, recipient, tx_signature, status)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_TRANSFER_COLUMNS}
            """,
            self.entry.id,
            self.entry.owner_key,
            kind.value,
            amount,
            recipient,
            settlement_ref,
            status.value,
        )
        return _transaction_from_row(row)

    async def get_transaction(self, transaction_id: int) -> Optional[LedgerTransaction]:
        row = await self._conn.fetchrow(
            f"SELECT {_TRANSFER_COLUMNS} FROM zk_transfers WHERE id = $1 AND zk_proof_id = $2 FOR UPDATE",
            transaction_id,
            self._entry_id,
        )
        return _transaction_from_row(row) if row else None

    async def update_transaction(self, transaction: LedgerTransaction) -> None:
        await self._conn.execute(
            "UPDATE zk_transfers SET status = $1, tx_signature = $2 WHERE id = $3 AND zk_proof_id = $4",
            transaction.status.value,
            transaction.settlement_ref,
            transaction.id,
            self._entry_id,
        )


class PostgresStorage(LedgerStorage):
    """
    Durable ledger storage on PostgreSQL.

    The pool and the schema are created by ``connect()``, which runs on first
    use if nobody awaited it earlier.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> asyncpg.Pool:
        async with self._connect_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
                async with pool.acquire() as conn:
                    await conn.execute(SCHEMA)
                self._pool = pool
                logger.info("Ledger schema initialized")
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = self._pool or await self.connect()
        async with pool.acquire() as conn:
            yield conn

    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry:
        check_entry(entry)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO zk_proofs (zk_proof_id, wallet_pubkey, note_hash, total_amount, spent_amount, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (zk_proof_id) DO NOTHING
                RETURNING {_ENTRY_COLUMNS}
                """,
                entry.id,
                entry.owner_key,
                entry.note_hash,
                entry.deposited,
                entry.withdrawn,
                entry.created_at,
            )
        if row is None:
            raise CollisionError(f"Identifier {entry.id} already exists")
        return _entry_from_row(row)

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ENTRY_COLUMNS} FROM zk_proofs WHERE zk_proof_id = $1", entry_id
            )
        return _entry_from_row(row) if row else None

    async def list_entries(self, owner_key: str) -> list[LedgerEntry]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ENTRY_COLUMNS} FROM zk_proofs WHERE wallet_pubkey = $1 ORDER BY created_at DESC",
                owner_key,
            )
        return [_entry_from_row(r) for r in rows]

    async def list_transactions(self, owner_key: str, limit: int) -> list[LedgerTransaction]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TRANSFER_COLUMNS} FROM zk_transfers
                WHERE wallet_pubkey = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                owner_key,
                limit,
            )
        return [_transaction_from_row(r) for r in rows]

    async def list_pending(self) -> list[LedgerTransaction]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_TRANSFER_COLUMNS} FROM zk_transfers WHERE status = 'PENDING' ORDER BY id"
            )
        return [_transaction_from_row(r) for r in rows]

    @asynccontextmanager
    async def transaction(self, entry_id: str) -> AsyncIterator[LedgerUnit]:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_ENTRY_COLUMNS} FROM zk_proofs WHERE zk_proof_id = $1 FOR UPDATE",
                    entry_id,
                )
                yield _PostgresUnit(conn, entry_id, _entry_from_row(row) if row else None)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
