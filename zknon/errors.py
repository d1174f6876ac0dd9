from typing import Any, Optional


class LedgerServiceError(Exception):
    """Base exception for ledger operations."""

    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), "details": self.details}


class ValidationError(LedgerServiceError):
    code = "VALIDATION_ERROR"


class NotFoundError(LedgerServiceError):
    code = "NOT_FOUND"
    status_code = 404


class OwnershipError(LedgerServiceError):
    code = "OWNERSHIP_MISMATCH"


class AuthorizationError(LedgerServiceError):
    code = "INVALID_NOTE"
    status_code = 403


class InsufficientBalanceError(LedgerServiceError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, identifier: str, required, available):
        super().__init__(
            f"Insufficient balance in {identifier}: required {required}, available {available}",
            details={"identifier": identifier, "required": str(required), "available": str(available)},
        )


class CollisionError(LedgerServiceError):
    """Generated identifier already exists. Recoverable: retry issuance."""

    code = "IDENTIFIER_COLLISION"
    status_code = 409


class InvalidStateTransitionError(LedgerServiceError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class SettlementUnavailableError(LedgerServiceError):
    code = "SETTLEMENT_NOT_CONFIGURED"
    status_code = 500


class InternalError(LedgerServiceError):
    code = "INTERNAL_ERROR"
    status_code = 500
