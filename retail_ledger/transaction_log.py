"""
Transaction Log Module

Append-only record of every balance-affecting movement. Records are written
once, inside the same unit of work as the balance change they describe, and
are never updated or deleted.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
from enum import Enum

from .errors import LedgerError
from .money import ZERO, to_amount
from .storage import StorageInterface


class TransactionType(Enum):
    """Kinds of ledger movements"""
    DEPOSIT = "Deposit"
    WITHDRAW = "Withdraw"
    TRANSFER_OUT = "TransferOut"
    TRANSFER_IN = "TransferIn"

    @property
    def is_debit(self) -> bool:
        """Whether the movement reduces the account balance"""
        return self in (TransactionType.WITHDRAW, TransactionType.TRANSFER_OUT)


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable ledger entry

    ``amount`` is always positive; the direction comes from the type.
    Both legs of a transfer share the same ``reference`` and name each other
    through ``counterparty_account_id``.
    """
    transaction_id: int
    account_id: int
    amount: Decimal
    transaction_type: TransactionType
    transaction_date: datetime
    remarks: str
    counterparty_account_id: Optional[int] = None
    reference: Optional[str] = None

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValueError("Transaction amount must be positive")

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.transaction_type.is_debit else self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "amount": str(self.amount),
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "remarks": self.remarks,
            "counterparty_account_id": self.counterparty_account_id,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        counterparty = data.get("counterparty_account_id")
        return cls(
            transaction_id=int(data["transaction_id"]),
            account_id=int(data["account_id"]),
            amount=Decimal(data["amount"]),
            transaction_type=TransactionType(data["transaction_type"]),
            transaction_date=datetime.fromisoformat(data["transaction_date"]),
            remarks=data["remarks"],
            counterparty_account_id=int(counterparty) if counterparty is not None else None,
            reference=data.get("reference"),
        )


class TransactionHistory:
    """
    Lazy, restartable view of one account's history, newest first

    Nothing is read until iteration starts, and every iteration reads the
    committed log again.
    """

    def __init__(self, log: 'TransactionLog', account_id: int):
        self._log = log
        self.account_id = account_id

    def __iter__(self) -> Iterator[TransactionRecord]:
        rows = self._log.storage.find(self._log.table_name, {"account_id": self.account_id})
        records = [TransactionRecord.from_dict(row) for row in rows]
        records.sort(key=lambda r: (r.transaction_date, r.transaction_id), reverse=True)
        for record in records:
            yield record

    def __repr__(self) -> str:
        return f"TransactionHistory(account_id={self.account_id})"


class TransactionLog:
    """Append-only transaction table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transaction_history"

    def append(
        self,
        account_id: int,
        amount: Decimal,
        transaction_type: TransactionType,
        remarks: str,
        transaction_date: datetime,
        counterparty_account_id: Optional[int] = None,
        reference: Optional[str] = None
    ) -> TransactionRecord:
        """
        Append a record and return it with its assigned identifier

        Must run inside the same ``storage.atomic()`` block as the balance
        mutation it records.
        """
        record = TransactionRecord(
            transaction_id=self.storage.next_sequence(self.table_name),
            account_id=account_id,
            amount=to_amount(amount),
            transaction_type=transaction_type,
            transaction_date=transaction_date,
            remarks=remarks,
            counterparty_account_id=counterparty_account_id,
            reference=reference,
        )

        record_key = str(record.transaction_id)
        if self.storage.exists(self.table_name, record_key):
            raise LedgerError(
                f"Transaction {record.transaction_id} already exists; log entries are immutable",
                transaction_id=record.transaction_id,
            )

        self.storage.save(self.table_name, record_key, record.to_dict())
        return record

    def query(self, account_id: int) -> TransactionHistory:
        """History for an account ordered by transaction date descending"""
        return TransactionHistory(self, account_id)

    def get(self, transaction_id: int) -> Optional[TransactionRecord]:
        """Get a record by ID"""
        data = self.storage.load(self.table_name, str(transaction_id))
        if data:
            return TransactionRecord.from_dict(data)
        return None

    def count(self, account_id: Optional[int] = None) -> int:
        """Number of records, for one account or for the whole log"""
        if account_id is None:
            return self.storage.count(self.table_name)
        return len(self.storage.find(self.table_name, {"account_id": account_id}))

    def find_by_reference(self, reference: str) -> List[TransactionRecord]:
        """Records sharing a reference (both legs of a transfer), oldest first"""
        rows = self.storage.find(self.table_name, {"reference": reference})
        return sorted(
            (TransactionRecord.from_dict(row) for row in rows),
            key=lambda r: r.transaction_id
        )
