"""
Concurrency tests for the ledger engine

Races withdrawals, opposing transfers and snapshot readers against each
other on both storage backends.
"""

import threading
import pytest
from decimal import Decimal

from retail_ledger.accounts import AccountType
from retail_ledger.config import LedgerConfig
from retail_ledger.engine import LedgerEngine
from retail_ledger.errors import InsufficientFundsError
from retail_ledger.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def engine(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "race.db")
    config = LedgerConfig(_env_file=None, lock_timeout_seconds=10.0, max_conflict_retries=5,
                          retry_backoff_seconds=0.01)
    ledger = LedgerEngine(storage, config=config)
    yield ledger
    ledger.close()


def run_threads(count, target):
    barrier = threading.Barrier(count)

    def start(index):
        barrier.wait()
        target(index)

    threads = [threading.Thread(target=start, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)
    assert not any(t.is_alive() for t in threads), "worker threads did not finish"


class TestConcurrentWithdrawals:
    """Competing debits on one account"""

    def test_exactly_affordable_withdrawals_succeed(self, engine):
        """Test that 20 racing withdrawals of 100 from 1050 yield 10 successes"""
        account = engine.open_account(1, 1, AccountType.SAVINGS, Decimal('1050.00')).account
        outcomes = []
        unexpected = []
        lock = threading.Lock()

        def withdraw(_):
            try:
                engine.withdraw(account.account_id, Decimal('100.00'))
                with lock:
                    outcomes.append("ok")
            except InsufficientFundsError:
                with lock:
                    outcomes.append("insufficient")
            except Exception as e:
                with lock:
                    unexpected.append(e)

        run_threads(20, withdraw)

        assert unexpected == []
        assert outcomes.count("ok") == 10
        assert outcomes.count("insufficient") == 10
        assert engine.get_balance(account.account_id) == Decimal('50.00')
        assert engine.log.count(account.account_id) == 11


class TestConcurrentTransfers:
    """Transfers racing in both directions"""

    def test_opposing_transfers_conserve_money(self, engine):
        a = engine.open_account(1, 1, AccountType.SAVINGS, Decimal('10000.00')).account.account_id
        b = engine.open_account(2, 1, AccountType.CURRENT, Decimal('10000.00')).account.account_id
        unexpected = []
        per_thread = 25

        def shuffle(index):
            source, destination = (a, b) if index % 2 == 0 else (b, a)
            for _ in range(per_thread):
                try:
                    engine.transfer(source, destination, Decimal('10.00'))
                except Exception as e:
                    unexpected.append(e)

        run_threads(4, shuffle)

        assert unexpected == []
        snapshot = engine.balance_snapshot()
        assert snapshot[a] + snapshot[b] == Decimal('20000.00')
        assert snapshot[a] == snapshot[b] == Decimal('10000.00')
        assert engine.log.count() == 2 + 2 * 4 * per_thread

    def test_snapshots_always_balance(self, engine):
        """Test that readers never observe half of a transfer"""
        ids = [
            engine.open_account(i, 1, AccountType.SAVINGS, Decimal('1000.00')).account.account_id
            for i in range(3)
        ]
        total = Decimal('3000.00')
        observed = []
        unexpected = []

        def work(index):
            if index == 0:
                for _ in range(40):
                    observed.append(sum(engine.balance_snapshot().values()))
                return
            for step in range(30):
                source = ids[(index + step) % 3]
                destination = ids[(index + step + 1) % 3]
                try:
                    engine.transfer(source, destination, Decimal('7.00'))
                except InsufficientFundsError:
                    pass
                except Exception as e:
                    unexpected.append(e)

        run_threads(4, work)

        assert unexpected == []
        assert observed and all(value == total for value in observed)
        assert sum(engine.balance_snapshot().values()) == total
        assert all(balance >= 0 for balance in engine.balance_snapshot().values())
