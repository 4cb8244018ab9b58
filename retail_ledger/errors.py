"""
Ledger Error Module

Typed failures raised by the ledger core. Validation failures are raised
before anything is mutated; conflict and storage failures abort the unit of
work and leave it rolled back.
"""

from enum import Enum
from typing import Any, Dict, Optional


class OperationState(Enum):
    """Lifecycle states of a ledger operation"""
    VALIDATING = "validating"
    APPLYING = "applying"
    COMMITTED = "committed"   # Terminal success
    REJECTED = "rejected"     # Terminal failure, no side effects
    ABORTED = "aborted"       # Terminal failure, changes discarded


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"
    terminal_state = OperationState.REJECTED

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "state": self.terminal_state.value,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class AccountNotFoundError(LedgerError):
    """Referenced account does not exist"""

    code = "not_found"

    def __init__(self, account_id: Any):
        super().__init__(f"Account {account_id} not found", account_id=account_id)
        self.account_id = account_id


class InvalidAmountError(LedgerError, ValueError):
    """Zero, negative, non-finite or over-precise amount"""

    code = "invalid_amount"


class InvalidRequestError(LedgerError, ValueError):
    """Request is malformed independently of account state"""

    code = "invalid_request"


class SelfTransferError(InvalidRequestError):
    """Transfer source and destination are the same account"""

    code = "self_transfer"

    def __init__(self, account_id: Any):
        super().__init__(
            f"Cannot transfer from account {account_id} to itself",
            account_id=account_id,
        )
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    """Debit would take the balance below zero"""

    code = "insufficient_funds"

    def __init__(self, account_id: Any, balance: Any, requested: Any):
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"available {balance}, requested {requested}",
            account_id=account_id,
            balance=balance,
            requested=requested,
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class ConflictError(LedgerError):
    """Serialization could not be obtained; safe to retry"""

    code = "conflict"
    terminal_state = OperationState.ABORTED


class LockTimeoutError(ConflictError):
    """Per-account lock was not acquired within the configured bound"""

    code = "timeout"

    def __init__(self, account_id: Any, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for lock on account {account_id}",
            account_id=account_id,
            timeout=timeout,
        )
        self.account_id = account_id
        self.timeout = timeout


class StorageFailureError(LedgerError):
    """Durability layer failed; the unit of work was rolled back"""

    code = "storage_failure"
    terminal_state = OperationState.ABORTED

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
