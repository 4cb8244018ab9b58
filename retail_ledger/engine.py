"""
Ledger Engine Module

Orchestrates deposits, withdrawals and transfers. Each operation runs as one
atomic unit of work:

    Validating -> Applying -> Committed
    Validating -> Rejected            (no side effects)
    Applying   -> Aborted             (conflict or storage failure, rolled back)

Amount and self-transfer checks happen before any lock is taken. Existence
and funds checks happen after the per-account locks are held and inside the
storage unit, so no concurrent operation can invalidate them before the
mutation commits. Audit and low-balance events are published only after the
commit, and their delivery never affects the committed result.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional
import uuid

from .accounts import Account, AccountStore, AccountType
from .config import LedgerConfig, get_config
from .errors import (
    AccountNotFoundError, InsufficientFundsError, InvalidRequestError,
    LedgerError, OperationState, SelfTransferError
)
from .events import EventDispatcher, EventPayload, LedgerEvent
from .locking import AccountLockManager, RetryPolicy
from .logging_config import get_logger, log_action
from .money import ZERO, require_non_negative, require_positive, to_amount
from .sinks import (
    LogAuditSink, LogNotificationSink, WebhookAuditSink,
    WebhookNotificationSink, register_sinks
)
from .storage import StorageInterface, create_storage
from .transaction_log import TransactionHistory, TransactionLog, TransactionRecord, TransactionType


@dataclass
class OperationResult:
    """Outcome of a committed ledger operation"""
    operation: str
    state: OperationState
    reference: str
    committed_at: datetime
    records: List[TransactionRecord] = field(default_factory=list)
    balances: Dict[int, Decimal] = field(default_factory=dict)
    account: Optional[Account] = None

    @property
    def transaction_ids(self) -> List[int]:
        return [record.transaction_id for record in self.records]

    def balance_of(self, account_id: int) -> Decimal:
        return self.balances[account_id]


class LedgerEngine:
    """
    Transactional core of the retail ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LedgerConfig] = None,
        dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[AccountLockManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.accounts = AccountStore(storage)
        self.log = TransactionLog(storage)
        self.dispatcher = dispatcher or EventDispatcher(asynchronous=self.config.async_side_effects)
        self.locks = lock_manager or AccountLockManager(timeout=self.config.lock_timeout_seconds)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.max_conflict_retries + 1,
            backoff_seconds=self.config.retry_backoff_seconds,
            max_backoff_seconds=self.config.retry_max_backoff_seconds
        )
        self.low_balance_floor = to_amount(self.config.low_balance_floor)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("retail_ledger.engine")

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'LedgerEngine':
        """
        Build an engine with storage and sinks wired from configuration

        Withdrawal audits and low-balance alerts always go to the structured
        log, and additionally to webhooks when their URLs are configured.
        """
        config = config or get_config()
        storage = create_storage(config.database_url, busy_timeout=config.sqlite_busy_timeout)
        dispatcher = EventDispatcher(asynchronous=config.async_side_effects)

        register_sinks(dispatcher, LogAuditSink(), LogNotificationSink())
        if config.audit_webhook_url:
            register_sinks(dispatcher, audit_sink=WebhookAuditSink(
                config.audit_webhook_url, timeout=config.webhook_timeout
            ))
        if config.notification_webhook_url:
            register_sinks(dispatcher, notification_sink=WebhookNotificationSink(
                config.notification_webhook_url, timeout=config.webhook_timeout
            ))

        return cls(storage, config=config, dispatcher=dispatcher)

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def open_account(
        self,
        customer_id: int,
        branch_id: int,
        account_type: AccountType,
        initial_deposit: Any = ZERO
    ) -> OperationResult:
        """
        Open an account with an opening balance

        A positive opening balance is recorded as an "Initial Deposit"
        Deposit record in the same unit of work.
        """
        with self._validating("open_account"):
            customer_id = self._reference_key(customer_id, "customer")
            branch_id = self._reference_key(branch_id, "branch")
            initial_deposit = require_non_negative(initial_deposit)
            try:
                account_type = AccountType(account_type)
            except ValueError:
                raise InvalidRequestError(f"Unknown account type: {account_type}")
        reference = self._new_reference("open")

        def apply() -> OperationResult:
            now = self._now()
            account = self.accounts.create_account(
                customer_id=customer_id,
                branch_id=branch_id,
                account_type=account_type,
                initial_balance=initial_deposit,
                now=now
            )
            records = []
            if initial_deposit > ZERO:
                records.append(self.log.append(
                    account.account_id, initial_deposit, TransactionType.DEPOSIT,
                    "Initial Deposit", now, reference=reference
                ))
            return OperationResult(
                operation="open_account",
                state=OperationState.COMMITTED,
                reference=reference,
                committed_at=now,
                records=records,
                balances={account.account_id: account.balance},
                account=account
            )

        return self._execute("open_account", [], apply, reference)

    def deposit(self, account_id: int, amount: Any) -> OperationResult:
        """
        Credit an account

        Raises:
            InvalidAmountError: If amount is not strictly positive
            AccountNotFoundError: If the account does not exist
        """
        with self._validating("deposit"):
            amount = require_positive(amount)
            account_id = self._account_key(account_id)
        reference = self._new_reference("deposit")

        def apply() -> OperationResult:
            self.accounts.get_account(account_id)
            now = self._now()
            new_balance = self.accounts.apply_delta(account_id, amount, now)
            record = self.log.append(
                account_id, amount, TransactionType.DEPOSIT,
                "Money Deposited", now, reference=reference
            )
            return OperationResult(
                operation="deposit",
                state=OperationState.COMMITTED,
                reference=reference,
                committed_at=now,
                records=[record],
                balances={account_id: new_balance}
            )

        return self._execute("deposit", [account_id], apply, reference)

    def withdraw(self, account_id: int, amount: Any) -> OperationResult:
        """
        Debit an account if it holds enough funds

        Raises:
            InvalidAmountError: If amount is not strictly positive
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If balance < amount (nothing is changed)
        """
        with self._validating("withdraw"):
            amount = require_positive(amount)
            account_id = self._account_key(account_id)
        reference = self._new_reference("withdraw")

        def apply() -> OperationResult:
            account = self.accounts.get_account(account_id)
            if account.balance < amount:
                raise InsufficientFundsError(account_id, account.balance, amount)

            now = self._now()
            new_balance = self.accounts.apply_delta(account_id, -amount, now)
            record = self.log.append(
                account_id, amount, TransactionType.WITHDRAW,
                "Money Withdrawn", now, reference=reference
            )
            return OperationResult(
                operation="withdraw",
                state=OperationState.COMMITTED,
                reference=reference,
                committed_at=now,
                records=[record],
                balances={account_id: new_balance}
            )

        return self._execute("withdraw", [account_id], apply, reference)

    def transfer(self, from_account_id: int, to_account_id: int, amount: Any) -> OperationResult:
        """
        Move money between two accounts, all or nothing

        Both balance updates and both log records commit together. The two
        records share a reference and name each other's account.

        Raises:
            InvalidAmountError: If amount is not strictly positive
            SelfTransferError: If source and destination are the same account
            AccountNotFoundError: If either account does not exist
            InsufficientFundsError: If the source lacks funds (nothing is changed)
        """
        with self._validating("transfer"):
            amount = require_positive(amount)
            from_account_id = self._account_key(from_account_id)
            to_account_id = self._account_key(to_account_id)
            if from_account_id == to_account_id:
                raise SelfTransferError(from_account_id)
        reference = self._new_reference("transfer")

        def apply() -> OperationResult:
            source = self.accounts.get_account(from_account_id)
            self.accounts.get_account(to_account_id)
            if source.balance < amount:
                raise InsufficientFundsError(from_account_id, source.balance, amount)

            now = self._now()
            source_balance = self.accounts.apply_delta(from_account_id, -amount, now)
            debit = self.log.append(
                from_account_id, amount, TransactionType.TRANSFER_OUT,
                f"Transferred to AccountID {to_account_id}", now,
                counterparty_account_id=to_account_id, reference=reference
            )
            destination_balance = self.accounts.apply_delta(to_account_id, amount, now)
            credit = self.log.append(
                to_account_id, amount, TransactionType.TRANSFER_IN,
                f"Received from AccountID {from_account_id}", now,
                counterparty_account_id=from_account_id, reference=reference
            )
            return OperationResult(
                operation="transfer",
                state=OperationState.COMMITTED,
                reference=reference,
                committed_at=now,
                records=[debit, credit],
                balances={
                    from_account_id: source_balance,
                    to_account_id: destination_balance
                }
            )

        return self._execute("transfer", [from_account_id, to_account_id], apply, reference)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account:
        """Get an account; raises AccountNotFoundError"""
        return self.accounts.get_account(self._account_key(account_id))

    def get_balance(self, account_id: int) -> Decimal:
        """Committed balance of an account"""
        return self.accounts.get_balance(self._account_key(account_id))

    def history(self, account_id: int) -> TransactionHistory:
        """Lazy transaction history for an account, newest first"""
        account_id = self._account_key(account_id)
        if not self.accounts.exists(account_id):
            raise AccountNotFoundError(account_id)
        return self.log.query(account_id)

    def balance_snapshot(self) -> Dict[int, Decimal]:
        """Consistent point-in-time balances of all accounts"""
        return self.accounts.snapshot()

    def close(self) -> None:
        """Deliver outstanding events and release storage"""
        self.dispatcher.close()
        self.storage.close()

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        account_ids: Iterable[int],
        apply: Callable[[], OperationResult],
        reference: str
    ) -> OperationResult:
        """Run ``apply`` under account locks inside one storage unit, with bounded retries"""
        account_ids = list(account_ids)

        def attempt() -> OperationResult:
            # Accounts are never deleted, so this still holds once locked
            self._require_accounts(account_ids)
            with self.locks.hold(account_ids):
                with self.storage.atomic():
                    return apply()

        try:
            result = self.retry_policy.run(attempt, description=f"{operation} {reference}")
        except LedgerError as e:
            self._log_failure(operation, account_ids, reference, e)
            raise

        log_action(
            self.logger, "info", f"{operation} committed",
            action=operation, resource=",".join(f"account:{a}" for a in result.balances),
            correlation_id=reference,
            extra={
                "state": result.state.value,
                "transaction_ids": result.transaction_ids,
                "balances": {str(k): str(v) for k, v in result.balances.items()}
            }
        )
        self._emit_side_effects(result)
        return result

    def _emit_side_effects(self, result: OperationResult) -> None:
        """Publish post-commit events; failures here never reach the caller"""
        try:
            for record in result.records:
                if self._is_audited(record):
                    self.dispatcher.publish(EventPayload(
                        event_type=LedgerEvent.WITHDRAWAL_COMMITTED,
                        account_id=record.account_id,
                        timestamp=record.transaction_date,
                        data={
                            "transaction_id": record.transaction_id,
                            "transaction_type": record.transaction_type.value,
                            "amount": str(record.amount),
                            "reference": record.reference
                        }
                    ))

            summary_event = {
                "open_account": LedgerEvent.ACCOUNT_OPENED,
                "deposit": LedgerEvent.DEPOSIT_COMMITTED,
                "transfer": LedgerEvent.TRANSFER_COMMITTED,
            }.get(result.operation)
            if summary_event is not None:
                primary_account = next(iter(result.balances))
                self.dispatcher.publish(EventPayload(
                    event_type=summary_event,
                    account_id=primary_account,
                    timestamp=result.committed_at,
                    data={
                        "reference": result.reference,
                        "transaction_ids": result.transaction_ids,
                        "balances": {str(k): str(v) for k, v in result.balances.items()}
                    }
                ))

            for account_id, balance in result.balances.items():
                if balance < self.low_balance_floor:
                    self.dispatcher.publish(EventPayload(
                        event_type=LedgerEvent.LOW_BALANCE,
                        account_id=account_id,
                        timestamp=result.committed_at,
                        data={
                            "new_balance": str(balance),
                            "floor": str(self.low_balance_floor),
                            "reference": result.reference
                        }
                    ))
        except Exception as e:
            self.logger.error(
                f"Failed to publish side effects for {result.operation} {result.reference}: {e}",
                exc_info=True
            )

    def _require_accounts(self, account_ids: Iterable[int]) -> None:
        """Reject unknown accounts before any lock is created for them"""
        for account_id in account_ids:
            if not self.accounts.exists(account_id):
                raise AccountNotFoundError(account_id)

    def _is_audited(self, record: TransactionRecord) -> bool:
        if record.transaction_type == TransactionType.WITHDRAW:
            return True
        return self.config.audit_transfer_out and record.transaction_type == TransactionType.TRANSFER_OUT

    @contextmanager
    def _validating(self, operation: str):
        """Pre-lock validation; failures are logged as rejected and re-raised"""
        try:
            yield
        except LedgerError as e:
            self._log_failure(operation, [], None, e)
            raise

    def _log_failure(self, operation: str, account_ids: Iterable[Any],
                     reference: Optional[str], error: LedgerError) -> None:
        state = error.terminal_state
        log_action(
            self.logger, "warning" if state == OperationState.REJECTED else "error",
            f"{operation} {state.value}: {error.message}",
            action=operation,
            resource=",".join(f"account:{a}" for a in account_ids),
            correlation_id=reference,
            extra=error.to_dict()
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _new_reference(operation: str) -> str:
        return f"{operation.upper()}-{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _as_identifier(value: Any) -> Optional[int]:
        """Integer form of an identifier, or None if it is not one"""
        if isinstance(value, (bool, float)):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _account_key(cls, account_id: Any) -> int:
        """Account identifiers are integers; anything else cannot exist"""
        key = cls._as_identifier(account_id)
        if key is None:
            raise AccountNotFoundError(account_id)
        return key

    @classmethod
    def _reference_key(cls, value: Any, kind: str) -> int:
        key = cls._as_identifier(value)
        if key is None:
            raise InvalidRequestError(f"Invalid {kind} id: {value!r}", **{f"{kind}_id": value})
        return key
