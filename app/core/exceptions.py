"""
Settlement error taxonomy.

Every error raised by the settlement core derives from SettlementError and
tells the caller which of four things happened:

- invalid_input: fix the request and retry
- retry_later: an external service was unavailable, try again later
- already_settled: the debt (or this ower's share) is already paid
- conflict: the request contradicts recorded state (a caller bug)
"""

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    RETRY_LATER = "retry_later"
    ALREADY_SETTLED = "already_settled"
    CONFLICT = "conflict"


class SettlementError(Exception):
    """Base class for settlement errors."""

    code = "settlement_error"
    kind = ErrorKind.INVALID_INPUT
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "kind": self.kind.value,
            "detail": self.message,
            **self.details
        }


# ===== INPUT / VALIDATION =====

class UnsupportedChain(SettlementError):
    code = "unsupported_chain"


class UnsupportedToken(SettlementError):
    code = "unsupported_token"


class OwerNotFound(SettlementError):
    code = "ower_not_found"


class DebtNotFound(SettlementError):
    code = "debt_not_found"
    status_code = 404


class InvalidAmount(SettlementError):
    code = "invalid_amount"


class InvalidIntent(SettlementError):
    code = "invalid_intent"


class InvalidTransactionHash(SettlementError):
    code = "invalid_transaction_hash"


class InsufficientBalance(SettlementError):
    code = "insufficient_balance"
    status_code = 402


# ===== ALREADY SETTLED =====

class AlreadySettled(SettlementError):
    code = "already_settled"
    kind = ErrorKind.ALREADY_SETTLED
    status_code = 409


class DebtAlreadySettled(AlreadySettled):
    code = "debt_already_settled"


# ===== TRANSIENT =====

class TransientSettlementError(SettlementError):
    code = "service_unavailable"
    kind = ErrorKind.RETRY_LATER
    status_code = 503


class ChainQueryFailed(TransientSettlementError):
    code = "chain_query_failed"


class BalanceQueryFailed(TransientSettlementError):
    code = "balance_query_failed"


class BridgeStatusQueryFailed(TransientSettlementError):
    code = "bridge_status_query_failed"


class ConcurrentModification(TransientSettlementError):
    code = "concurrent_modification"


# ===== CONSISTENCY =====

class InvalidAttemptReference(SettlementError):
    code = "invalid_attempt_reference"
    kind = ErrorKind.CONFLICT
    status_code = 409


class DuplicateSubmission(SettlementError):
    code = "duplicate_submission"
    kind = ErrorKind.CONFLICT
    status_code = 409
