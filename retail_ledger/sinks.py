"""
Audit and Notification Sinks

External collaborators that receive the ledger's side-channel events: a copy
of every committed withdrawal for audit, and an alert whenever a commit
leaves an account below the low-balance floor. Sinks are driven by the event
dispatcher after commit; a sink that raises is logged by the dispatcher and
has no effect on the ledger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import threading

import requests

from .events import EventDispatcher, EventPayload, LedgerEvent
from .logging_config import get_logger, log_action
from .storage import StorageInterface


@dataclass(frozen=True)
class WithdrawalAudit:
    """Audit copy of a committed withdrawal-typed movement"""
    account_id: int
    amount: Decimal
    timestamp: datetime
    transaction_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "amount": str(self.amount),
            "timestamp": self.timestamp.isoformat(),
            "transaction_id": self.transaction_id,
        }

    @classmethod
    def from_event(cls, event: EventPayload) -> 'WithdrawalAudit':
        return cls(
            account_id=event.account_id,
            amount=Decimal(event.data["amount"]),
            timestamp=event.timestamp,
            transaction_id=event.data.get("transaction_id"),
        )


@dataclass(frozen=True)
class LowBalanceAlert:
    """Signal that a committed operation left an account below the floor"""
    account_id: int
    new_balance: Decimal
    timestamp: datetime
    floor: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "new_balance": str(self.new_balance),
            "timestamp": self.timestamp.isoformat(),
            "floor": str(self.floor) if self.floor is not None else None,
        }

    @classmethod
    def from_event(cls, event: EventPayload) -> 'LowBalanceAlert':
        floor = event.data.get("floor")
        return cls(
            account_id=event.account_id,
            new_balance=Decimal(event.data["new_balance"]),
            timestamp=event.timestamp,
            floor=Decimal(floor) if floor is not None else None,
        )


class AuditSink(ABC):
    """Receives every committed withdrawal"""

    @abstractmethod
    def record_withdrawal(self, audit: WithdrawalAudit) -> None:
        pass


class NotificationSink(ABC):
    """Receives low-balance alerts"""

    @abstractmethod
    def notify_low_balance(self, alert: LowBalanceAlert) -> None:
        pass


class LogAuditSink(AuditSink):
    """Writes withdrawal audits to the structured log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("retail_ledger.audit")

    def record_withdrawal(self, audit: WithdrawalAudit) -> None:
        log_action(
            self.logger, "info", f"Withdrawal audited for account {audit.account_id}",
            action="audit_withdrawal", resource=f"account:{audit.account_id}",
            extra=audit.to_dict()
        )


class LogNotificationSink(NotificationSink):
    """Writes low-balance alerts to the structured log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("retail_ledger.notifications")

    def notify_low_balance(self, alert: LowBalanceAlert) -> None:
        log_action(
            self.logger, "warning",
            f"LOW BALANCE ALERT: account {alert.account_id} balance {alert.new_balance} is below {alert.floor}",
            action="low_balance_alert", resource=f"account:{alert.account_id}",
            extra=alert.to_dict()
        )


class StorageAuditSink(AuditSink):
    """Persists withdrawal audits into their own table"""

    def __init__(self, storage: StorageInterface, table_name: str = "withdrawal_audit"):
        self.storage = storage
        self.table_name = table_name

    def record_withdrawal(self, audit: WithdrawalAudit) -> None:
        audit_id = self.storage.next_sequence(self.table_name)
        data = audit.to_dict()
        data["audit_id"] = audit_id
        self.storage.save(self.table_name, str(audit_id), data)

    def list_audits(self, account_id: Optional[int] = None) -> List[WithdrawalAudit]:
        """Stored audits, oldest first"""
        filters = {"account_id": account_id} if account_id is not None else {}
        rows = sorted(self.storage.find(self.table_name, filters), key=lambda r: r["audit_id"])
        return [
            WithdrawalAudit(
                account_id=row["account_id"],
                amount=Decimal(row["amount"]),
                timestamp=datetime.fromisoformat(row["timestamp"]),
                transaction_id=row.get("transaction_id"),
            )
            for row in rows
        ]


class CollectingAuditSink(AuditSink):
    """Keeps audits in memory"""

    def __init__(self):
        self._lock = threading.Lock()
        self.audits: List[WithdrawalAudit] = []

    def record_withdrawal(self, audit: WithdrawalAudit) -> None:
        with self._lock:
            self.audits.append(audit)


class CollectingNotificationSink(NotificationSink):
    """Keeps alerts in memory"""

    def __init__(self):
        self._lock = threading.Lock()
        self.alerts: List[LowBalanceAlert] = []

    def notify_low_balance(self, alert: LowBalanceAlert) -> None:
        with self._lock:
            self.alerts.append(alert)


class _WebhookPoster:
    """Shared HTTP POST logic for webhook sinks"""

    def __init__(self, url: str, timeout: float = 2.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, payload: Dict[str, Any]) -> None:
        response = self.session.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class WebhookAuditSink(AuditSink):
    """Forwards withdrawal audits to an HTTP endpoint"""

    def __init__(self, url: str, timeout: float = 2.0, session: Optional[requests.Session] = None):
        self._poster = _WebhookPoster(url, timeout, session)

    def record_withdrawal(self, audit: WithdrawalAudit) -> None:
        payload = {"type": "withdrawal_audit", **audit.to_dict()}
        self._poster.post(payload)


class WebhookNotificationSink(NotificationSink):
    """Forwards low-balance alerts to an HTTP endpoint"""

    def __init__(self, url: str, timeout: float = 2.0, session: Optional[requests.Session] = None):
        self._poster = _WebhookPoster(url, timeout, session)

    def notify_low_balance(self, alert: LowBalanceAlert) -> None:
        payload = {"type": "low_balance", **alert.to_dict()}
        self._poster.post(payload)


def register_sinks(
    dispatcher: EventDispatcher,
    audit_sink: Optional[AuditSink] = None,
    notification_sink: Optional[NotificationSink] = None
) -> None:
    """Subscribe sinks to the events they consume"""
    if audit_sink is not None:
        def forward_withdrawal(event: EventPayload) -> None:
            audit_sink.record_withdrawal(WithdrawalAudit.from_event(event))

        forward_withdrawal.__name__ = f"{type(audit_sink).__name__}.record_withdrawal"
        dispatcher.subscribe(LedgerEvent.WITHDRAWAL_COMMITTED, forward_withdrawal)

    if notification_sink is not None:
        def forward_low_balance(event: EventPayload) -> None:
            notification_sink.notify_low_balance(LowBalanceAlert.from_event(event))

        forward_low_balance.__name__ = f"{type(notification_sink).__name__}.notify_low_balance"
        dispatcher.subscribe(LedgerEvent.LOW_BALANCE, forward_low_balance)
