#!/usr/bin/env python3
"""
Example: Replaying a sample banking session against the ledger

Opens two accounts, then runs a deposit, a withdrawal and a transfer,
printing balances, the transaction history, and the audit and low-balance
events the engine emits after each commit.

Configure the backend with LEDGER_DATABASE_URL (defaults to in-memory).
"""

import os
import sys
from decimal import Decimal

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from retail_ledger.accounts import AccountType
from retail_ledger.config import LedgerConfig
from retail_ledger.engine import LedgerEngine
from retail_ledger.errors import InsufficientFundsError
from retail_ledger.events import EventDispatcher
from retail_ledger.logging_config import setup_logging
from retail_ledger.money import format_amount
from retail_ledger.sinks import (
    CollectingAuditSink, CollectingNotificationSink, StorageAuditSink, register_sinks
)
from retail_ledger.storage import create_storage


def main():
    print("Retail Ledger - Sample Session")
    print("=" * 60)

    config = LedgerConfig()
    setup_logging(config.log_level, config.log_format)
    print(f"\n1. Storage backend: {config.database_url}")
    storage = create_storage(config.database_url, busy_timeout=config.sqlite_busy_timeout)

    dispatcher = EventDispatcher()
    audits = CollectingAuditSink()
    alerts = CollectingNotificationSink()
    register_sinks(dispatcher, audits, alerts)
    audit_table = StorageAuditSink(storage)
    register_sinks(dispatcher, audit_sink=audit_table)

    engine = LedgerEngine(storage, config=config, dispatcher=dispatcher)

    print("\n2. Opening accounts")
    first = engine.open_account(customer_id=1, branch_id=1,
                                account_type=AccountType.SAVINGS,
                                initial_deposit=Decimal("10000.00")).account
    second = engine.open_account(customer_id=2, branch_id=2,
                                 account_type=AccountType.CURRENT,
                                 initial_deposit=Decimal("15000.00")).account
    print(f"   Account {first.account_id} ({first.account_type.value}): {format_amount(first.balance)}")
    print(f"   Account {second.account_id} ({second.account_type.value}): {format_amount(second.balance)}")

    print("\n3. Money movement")
    engine.deposit(first.account_id, Decimal("2000.00"))
    engine.withdraw(first.account_id, Decimal("500.00"))
    result = engine.transfer(first.account_id, second.account_id, Decimal("3000.00"))
    for account_id, balance in result.balances.items():
        print(f"   Account {account_id}: {format_amount(balance)}")

    try:
        engine.withdraw(first.account_id, Decimal("1000000.00"))
    except InsufficientFundsError as e:
        print(f"   Rejected: {e}")

    print(f"\n4. History of account {first.account_id}")
    for record in engine.history(first.account_id):
        print(f"   #{record.transaction_id} {record.transaction_date:%Y-%m-%d %H:%M:%S} "
              f"{record.transaction_type.value:<12} {format_amount(record.amount):>12}  {record.remarks}")

    print("\n5. Side channel")
    print(f"   Withdrawal audits: {len(audits.audits)} (stored: {len(audit_table.list_audits())})")
    engine.withdraw(first.account_id, Decimal("8000.00"))
    for alert in alerts.alerts:
        print(f"   Low balance: account {alert.account_id} at {format_amount(alert.new_balance)}")

    print("\n6. Balance snapshot")
    for account_id, balance in engine.balance_snapshot().items():
        print(f"   Account {account_id}: {format_amount(balance)}")

    engine.close()
    print("\nExample completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    main()
