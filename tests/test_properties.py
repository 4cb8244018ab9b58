"""
Property-based tests for ledger invariants

Random sequences of deposits, withdrawals and transfers are replayed against
a fresh in-memory ledger and checked against a simple model:

  1. No committed balance is ever negative
  2. Money is conserved: total = opening + deposits - withdrawals
  3. Every account's signed history sums to its balance
  4. A rejected operation changes nothing
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from retail_ledger.accounts import AccountType
from retail_ledger.config import LedgerConfig
from retail_ledger.engine import LedgerEngine
from retail_ledger.errors import InsufficientFundsError, SelfTransferError
from retail_ledger.events import EventDispatcher
from retail_ledger.storage import InMemoryStorage


ACCOUNTS = 3

amounts = st.integers(min_value=1, max_value=500_000).map(lambda cents: Decimal(cents) / 100)


@st.composite
def operation_strategy(draw):
    kind = draw(st.sampled_from(["deposit", "withdraw", "transfer"]))
    source = draw(st.integers(min_value=0, max_value=ACCOUNTS - 1))
    destination = draw(st.integers(min_value=0, max_value=ACCOUNTS - 1))
    return kind, source, destination, draw(amounts)


def fresh_ledger(openings):
    config = LedgerConfig(_env_file=None, lock_timeout_seconds=1.0)
    ledger = LedgerEngine(InMemoryStorage(), config=config, dispatcher=EventDispatcher())
    ids = [
        ledger.open_account(i, 1, AccountType.SAVINGS, opening).account.account_id
        for i, opening in enumerate(openings)
    ]
    return ledger, ids


@settings(max_examples=60, deadline=None)
@given(
    openings=st.lists(st.integers(min_value=0, max_value=1_000_000).map(lambda c: Decimal(c) / 100),
                      min_size=ACCOUNTS, max_size=ACCOUNTS),
    operations=st.lists(operation_strategy(), max_size=40),
)
def test_random_operations_preserve_invariants(openings, operations):
    ledger, ids = fresh_ledger(openings)
    expected_total = sum(openings, Decimal('0.00'))
    expected_records = sum(1 for opening in openings if opening > 0)

    for kind, source, destination, amount in operations:
        before = (ledger.balance_snapshot(), ledger.log.count())
        try:
            if kind == "deposit":
                ledger.deposit(ids[source], amount)
                expected_total += amount
                expected_records += 1
            elif kind == "withdraw":
                ledger.withdraw(ids[source], amount)
                expected_total -= amount
                expected_records += 1
            else:
                ledger.transfer(ids[source], ids[destination], amount)
                expected_records += 2
        except (InsufficientFundsError, SelfTransferError):
            assert (ledger.balance_snapshot(), ledger.log.count()) == before

        snapshot = ledger.balance_snapshot()
        assert all(balance >= 0 for balance in snapshot.values())
        assert sum(snapshot.values()) == expected_total

    for account_id in ids:
        replayed = sum((r.signed_amount for r in ledger.history(account_id)), Decimal('0.00'))
        assert replayed == ledger.get_balance(account_id)

    assert ledger.log.count() == expected_records


@settings(max_examples=40, deadline=None)
@given(balance=amounts, amount=amounts)
def test_withdraw_succeeds_exactly_when_funds_suffice(balance, amount):
    ledger, (account_id,) = fresh_ledger([balance])

    try:
        result = ledger.withdraw(account_id, amount)
    except InsufficientFundsError:
        assert amount > balance
        assert ledger.get_balance(account_id) == balance
    else:
        assert amount <= balance
        assert result.balance_of(account_id) == balance - amount
