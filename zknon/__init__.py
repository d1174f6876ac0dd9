"""
Note-bound balance ledger with pool settlement

This module provides:
- Identifier issuance bound to a secret note and a wallet
- Deposit crediting and per-identifier balances
- Withdrawals reserved under a per-identifier lock, paid out from the pool
  in the background, and compensated on failure
- Wallet history, newest first
"""

from .errors import (
    AuthorizationError,
    CollisionError,
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    OwnershipError,
    ValidationError,
)
from .models import (
    LedgerEntry,
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
)
from .service import LedgerService
from .withdrawals import WithdrawalEngine

__all__ = [
    "AuthorizationError",
    "CollisionError",
    "InsufficientBalanceError",
    "LedgerServiceError",
    "NotFoundError",
    "OwnershipError",
    "ValidationError",
    "LedgerEntry",
    "LedgerTransaction",
    "TransactionKind",
    "TransactionStatus",
    "LedgerService",
    "WithdrawalEngine",
]
