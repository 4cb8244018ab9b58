"""
Test suite for the transaction log

Tests append-only semantics, history ordering and lazy history views.
"""

import dataclasses
import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from retail_ledger.errors import LedgerError
from retail_ledger.storage import InMemoryStorage
from retail_ledger.transaction_log import TransactionLog, TransactionRecord, TransactionType


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestTransactionLog:
    """Test TransactionLog operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.log = TransactionLog(self.storage)

    def test_append_assigns_increasing_ids(self):
        """Test identifier assignment"""
        first = self.log.append(1, Decimal('10.00'), TransactionType.DEPOSIT, "Money Deposited", T0)
        second = self.log.append(1, Decimal('5.00'), TransactionType.WITHDRAW, "Money Withdrawn", T0)

        assert second.transaction_id > first.transaction_id
        assert self.log.get(first.transaction_id) == first
        assert self.log.get(999) is None

    def test_records_are_immutable(self):
        """Test that a returned record cannot be modified"""
        record = self.log.append(1, Decimal('10.00'), TransactionType.DEPOSIT, "Money Deposited", T0)

        with pytest.raises(dataclasses.FrozenInstanceError):
            record.amount = Decimal('20.00')

    def test_append_refuses_to_overwrite(self):
        """Test that an existing record id is never reused"""
        self.storage.save(self.log.table_name, "1", {"transaction_id": 1})

        with pytest.raises(LedgerError, match="immutable"):
            self.log.append(1, Decimal('10.00'), TransactionType.DEPOSIT, "Money Deposited", T0)

    def test_history_ordering(self):
        """Test newest-first ordering with ties broken by id"""
        oldest = self.log.append(1, Decimal('1.00'), TransactionType.DEPOSIT, "a", T0)
        newest = self.log.append(1, Decimal('2.00'), TransactionType.DEPOSIT, "b", T0 + timedelta(hours=2))
        middle = self.log.append(1, Decimal('3.00'), TransactionType.WITHDRAW, "c", T0 + timedelta(hours=1))
        tie = self.log.append(1, Decimal('4.00'), TransactionType.DEPOSIT, "d", T0 + timedelta(hours=1))
        self.log.append(2, Decimal('9.00'), TransactionType.DEPOSIT, "other account", T0)

        history = [r.transaction_id for r in self.log.query(1)]
        assert history == [
            newest.transaction_id, tie.transaction_id,
            middle.transaction_id, oldest.transaction_id
        ]

    def test_history_is_lazy_and_restartable(self):
        """Test that a history view reads the log when iterated"""
        history = self.log.query(1)
        assert list(history) == []

        self.log.append(1, Decimal('1.00'), TransactionType.DEPOSIT, "late", T0)

        assert len(list(history)) == 1
        assert list(history) == list(history)

    def test_rolled_back_append_leaves_no_record(self):
        """Test that a record only exists if its unit commits"""
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.log.append(1, Decimal('1.00'), TransactionType.DEPOSIT, "x", T0)
                raise RuntimeError("abort")

        assert self.log.count() == 0
        assert list(self.log.query(1)) == []

    def test_count_and_reference_lookup(self):
        """Test counting and finding both legs of a transfer"""
        self.log.append(1, Decimal('5.00'), TransactionType.TRANSFER_OUT, "Transferred to AccountID 2",
                        T0, counterparty_account_id=2, reference="TRANSFER-abc")
        self.log.append(2, Decimal('5.00'), TransactionType.TRANSFER_IN, "Received from AccountID 1",
                        T0, counterparty_account_id=1, reference="TRANSFER-abc")
        self.log.append(1, Decimal('1.00'), TransactionType.DEPOSIT, "Money Deposited", T0)

        assert self.log.count() == 3
        assert self.log.count(1) == 2
        assert self.log.count(2) == 1

        legs = self.log.find_by_reference("TRANSFER-abc")
        assert [leg.transaction_type for leg in legs] == [
            TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN
        ]
        assert legs[0].counterparty_account_id == 2
        assert legs[1].counterparty_account_id == 1


class TestTransactionRecord:
    """Test TransactionRecord rules"""

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError):
            TransactionRecord(1, 1, Decimal('0.00'), TransactionType.DEPOSIT, T0, "zero")

    def test_signed_amount(self):
        """Test direction derived from type"""
        deposit = TransactionRecord(1, 1, Decimal('5.00'), TransactionType.DEPOSIT, T0, "")
        transfer_out = TransactionRecord(2, 1, Decimal('5.00'), TransactionType.TRANSFER_OUT, T0, "")

        assert deposit.signed_amount == Decimal('5.00')
        assert transfer_out.signed_amount == Decimal('-5.00')
        assert TransactionType.WITHDRAW.is_debit
        assert not TransactionType.TRANSFER_IN.is_debit
