"""
Account Store Module

Holds account identity, type and current balance. The store is the unit of
consistency of the ledger: ``apply_delta`` never lets a balance go below
zero and never commits on its own, so the caller decides whether a change is
part of a larger unit of work (a transfer touches two accounts).
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .errors import AccountNotFoundError, InsufficientFundsError
from .money import ZERO, add_amounts, to_amount, require_non_negative
from .storage import StorageInterface


class AccountType(Enum):
    """Retail account types"""
    SAVINGS = "Savings"
    CURRENT = "Current"


@dataclass
class Account:
    """
    Bank account with its authoritative balance

    The balance is a two-place Decimal and is never negative in any
    committed state.
    """
    account_id: int
    customer_id: int
    branch_id: int
    account_type: AccountType
    balance: Decimal
    open_date: date
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        self.balance = to_amount(self.balance)
        if self.balance < ZERO:
            raise ValueError(f"Account {self.account_id} balance cannot be negative: {self.balance}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "account_id": self.account_id,
            "customer_id": self.customer_id,
            "branch_id": self.branch_id,
            "account_type": self.account_type.value,
            "balance": str(self.balance),
            "open_date": self.open_date.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create Account from stored dictionary"""
        return cls(
            account_id=int(data["account_id"]),
            customer_id=int(data["customer_id"]),
            branch_id=int(data["branch_id"]),
            account_type=AccountType(data["account_type"]),
            balance=Decimal(data["balance"]),
            open_date=date.fromisoformat(data["open_date"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class AccountStore:
    """
    Storage-backed account table keyed by account identifier
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounts"

    def create_account(
        self,
        customer_id: int,
        branch_id: int,
        account_type: AccountType,
        initial_balance: Any = ZERO,
        open_date: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> Account:
        """
        Insert a new account

        Args:
            customer_id: Owning customer reference
            branch_id: Branch reference
            account_type: Savings or Current
            initial_balance: Opening balance (zero or positive)
            open_date: Opening date, defaults to today (UTC)
            now: Timestamp for the record, defaults to current UTC time

        Returns:
            Created Account
        """
        now = now or datetime.now(timezone.utc)
        account = Account(
            account_id=self.storage.next_sequence(self.table_name),
            customer_id=customer_id,
            branch_id=branch_id,
            account_type=account_type,
            balance=require_non_negative(initial_balance),
            open_date=open_date or now.date(),
            created_at=now,
            updated_at=now,
        )
        self._save_account(account)
        return account

    def get_account(self, account_id: int) -> Account:
        """Get account by ID; raises AccountNotFoundError"""
        data = self.storage.load(self.table_name, str(account_id))
        if data is None:
            raise AccountNotFoundError(account_id)
        return Account.from_dict(data)

    def exists(self, account_id: int) -> bool:
        """Check if an account exists"""
        return self.storage.exists(self.table_name, str(account_id))

    def get_balance(self, account_id: int) -> Decimal:
        """Current committed (or, inside a unit, pending) balance"""
        return self.get_account(account_id).balance

    def apply_delta(self, account_id: int, signed_amount: Decimal,
                    now: Optional[datetime] = None) -> Decimal:
        """
        Add a signed amount to an account balance

        Does not commit; callers wrap it in ``storage.atomic()`` together with
        the matching log append.

        Args:
            account_id: Account to update
            signed_amount: Positive to credit, negative to debit
            now: Update timestamp

        Returns:
            New balance

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If the balance would go negative
            InvalidAmountError: If the new balance exceeds the supported precision
        """
        account = self.get_account(account_id)
        new_balance = add_amounts(account.balance, signed_amount)
        if new_balance < ZERO:
            raise InsufficientFundsError(account_id, account.balance, -signed_amount)

        account.balance = new_balance
        account.updated_at = now or datetime.now(timezone.utc)
        self._save_account(account)
        return new_balance

    def list_accounts(self, customer_id: Optional[int] = None,
                      branch_id: Optional[int] = None) -> List[Account]:
        """List accounts, optionally filtered by customer and/or branch"""
        filters: Dict[str, Any] = {}
        if customer_id is not None:
            filters["customer_id"] = customer_id
        if branch_id is not None:
            filters["branch_id"] = branch_id

        accounts = [Account.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        return sorted(accounts, key=lambda a: a.account_id)

    def snapshot(self) -> Dict[int, Decimal]:
        """Point-in-time balance of every account"""
        with self.storage.atomic():
            return {
                account.account_id: account.balance
                for account in self.list_accounts()
            }

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.table_name, str(account.account_id), account.to_dict())
