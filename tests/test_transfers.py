"""
Test suite for the transfer engine

Covers balance conservation, rollback on every failure path, input policy,
lock ordering and the lock wait deadline.
"""

import sqlite3
from decimal import Decimal

import pytest

from user_ledger.config import LedgerConfig
from user_ledger.errors import (
    InsufficientFundsError, NotFoundError, TransactionError, ValidationError
)
from user_ledger.models import TransferResult
from user_ledger.storage import SQLiteStorage
from user_ledger.transfers import TransferEngine
from user_ledger.users import UserManager


def make_config(**overrides):
    overrides.setdefault("database_url", "memory://")
    overrides.setdefault("lock_timeout_seconds", 5.0)
    return LedgerConfig(**overrides)


class TestTransferEngine:
    """Test transfers on every backend"""

    @pytest.fixture(autouse=True)
    def _engine(self, storage):
        self.storage = storage
        self.users = UserManager(storage)
        self.engine = TransferEngine(storage, make_config())
        self.alice = self.users.create_user("alice", "alice@example.com", "100.00")
        self.bob = self.users.create_user("bob", "bob@example.com", "50.00")

    def balances(self):
        return (
            self.users.get_user(self.alice.id).balance,
            self.users.get_user(self.bob.id).balance,
        )

    def test_worked_example(self):
        result = self.engine.transfer(self.alice.id, self.bob.id, "30.00")

        assert isinstance(result, TransferResult)
        assert result.from_balance == Decimal("70.00")
        assert result.to_balance == Decimal("80.00")
        assert self.balances() == (Decimal("70.00"), Decimal("80.00"))

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.engine.transfer(self.alice.id, self.bob.id, "1000.00")

        assert exc_info.value.user_id == self.alice.id
        assert exc_info.value.balance == Decimal("70.00")
        assert exc_info.value.amount == Decimal("1000.00")
        assert self.balances() == (Decimal("70.00"), Decimal("80.00"))

    def test_conservation_of_total(self):
        before = sum(self.balances())
        self.engine.transfer(self.alice.id, self.bob.id, "12.34")
        self.engine.transfer(self.bob.id, self.alice.id, "0.01")
        self.engine.transfer(self.bob.id, self.alice.id, "62.33")

        assert sum(self.balances()) == before
        assert self.balances() == (Decimal("150.00"), Decimal("0.00"))

    def test_transfer_entire_balance(self):
        self.engine.transfer(self.alice.id, self.bob.id, "100.00")
        assert self.balances() == (Decimal("0.00"), Decimal("150.00"))

    def test_many_cent_transfers_stay_exact(self):
        for _ in range(100):
            self.engine.transfer(self.alice.id, self.bob.id, "0.10")
        assert self.balances() == (Decimal("90.00"), Decimal("60.00"))

    def test_missing_sender(self):
        with pytest.raises(NotFoundError) as exc_info:
            self.engine.transfer(9999, self.bob.id, "1.00")
        assert exc_info.value.role == "sender"
        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))

    def test_missing_receiver_rolls_back(self):
        with pytest.raises(NotFoundError) as exc_info:
            self.engine.transfer(self.alice.id, 9999, "1.00")
        assert exc_info.value.role == "receiver"
        assert exc_info.value.user_id == 9999
        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))

    def test_ids_beyond_integer_range_not_found(self):
        huge = 99999999999999999999
        with pytest.raises(NotFoundError) as exc_info:
            self.engine.transfer(self.alice.id, huge, "1.00")
        assert exc_info.value.role == "receiver"

        with pytest.raises(NotFoundError) as exc_info:
            self.engine.transfer(huge, self.bob.id, "1.00")
        assert exc_info.value.role == "sender"
        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))

    def test_oversized_amount_rejected(self):
        with pytest.raises(ValidationError, match="too large"):
            self.engine.transfer(self.alice.id, self.bob.id, "100000000000000000.00")

    def test_funds_checked_before_receiver_lookup(self):
        # Role order: sender locked and checked before the receiver is read
        with pytest.raises(InsufficientFundsError):
            self.engine.transfer(self.alice.id, 9999, "500.00")

    @pytest.mark.parametrize("amount", ["0", "0.00", "-5.00"])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(ValidationError, match="positive"):
            self.engine.transfer(self.alice.id, self.bob.id, amount)
        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))

    @pytest.mark.parametrize("amount", ["abc", "1.001", "Infinity"])
    def test_malformed_amount_rejected(self, amount):
        with pytest.raises(ValidationError):
            self.engine.transfer(self.alice.id, self.bob.id, amount)

    def test_self_transfer_rejected(self):
        with pytest.raises(ValidationError, match="itself"):
            self.engine.transfer(self.alice.id, self.alice.id, "1.00")
        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))

    def test_accepts_decimal_amount(self):
        self.engine.transfer(self.alice.id, self.bob.id, Decimal("2.50"))
        assert self.balances() == (Decimal("97.50"), Decimal("52.50"))

    def test_lock_timeout_fails_and_leaves_balances(self):
        holder = self.storage.begin()
        holder.lock_balance(self.alice.id)
        try:
            with pytest.raises(TransactionError, match="timed out"):
                self.engine.transfer(self.alice.id, self.bob.id, "1.00", lock_timeout=0.1)
        finally:
            holder.rollback()

        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))
        self.engine.transfer(self.alice.id, self.bob.id, "1.00", lock_timeout=0.1)
        assert self.balances() == (Decimal("99.00"), Decimal("51.00"))


class TestLockOrderById:
    """Test lock_order="id" on every backend"""

    @pytest.fixture(autouse=True)
    def _engine(self, storage):
        self.users = UserManager(storage)
        self.engine = TransferEngine(storage, make_config(lock_order="id"))
        self.low = self.users.create_user("low", "low@example.com", "10.00")
        self.high = self.users.create_user("high", "high@example.com", "10.00")

    def test_transfer_in_both_directions(self):
        self.engine.transfer(self.high.id, self.low.id, "4.00")
        self.engine.transfer(self.low.id, self.high.id, "1.00")

        assert self.users.get_user(self.low.id).balance == Decimal("13.00")
        assert self.users.get_user(self.high.id).balance == Decimal("7.00")

    def test_both_rows_locked_before_funds_check(self):
        # Missing receiver with a higher id is found before the balance check
        with pytest.raises(NotFoundError):
            self.engine.transfer(self.low.id, 9999, "500.00")

    def test_insufficient_funds_still_detected(self):
        with pytest.raises(InsufficientFundsError):
            self.engine.transfer(self.high.id, self.low.id, "10.01")
        assert self.users.get_user(self.high.id).balance == Decimal("10.00")


class FailingCommitConnection:
    """Pooled SQLite connection whose COMMIT (and optionally ROLLBACK) fails"""

    def __init__(self, conn, fail_rollback=False):
        self._conn = conn
        self.fail_rollback = fail_rollback

    def execute(self, sql, *args):
        if sql == "COMMIT":
            raise sqlite3.OperationalError("disk I/O error")
        if sql == "ROLLBACK" and self.fail_rollback:
            raise sqlite3.OperationalError("cannot rollback")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class TestCommitFailure:
    """A failed commit discards the whole transfer"""

    @pytest.fixture(autouse=True)
    def _engine(self, tmp_path, monkeypatch):
        self.storage = SQLiteStorage(tmp_path / "ledger.db", max_open=2, acquire_timeout=1.0)
        self.storage.ensure_schema()
        self.users = UserManager(self.storage)
        self.engine = TransferEngine(self.storage, make_config())
        self.alice = self.users.create_user("alice", "alice@example.com", "100.00")
        self.bob = self.users.create_user("bob", "bob@example.com", "50.00")
        self.monkeypatch = monkeypatch
        yield
        self.storage.close()

    def fail_commits(self, fail_rollback=False):
        begin = self.storage.begin

        def failing_begin(lock_timeout=None):
            tx = begin(lock_timeout=lock_timeout)
            tx._conn = FailingCommitConnection(tx._conn, fail_rollback=fail_rollback)
            return tx

        self.monkeypatch.setattr(self.storage, "begin", failing_begin)

    def balances(self):
        return (
            self.users.get_user(self.alice.id).balance,
            self.users.get_user(self.bob.id).balance,
        )

    def test_commit_failure_rolls_back_and_returns_connection(self):
        self.fail_commits()

        with pytest.raises(TransactionError, match="commit: disk I/O error"):
            self.engine.transfer(self.alice.id, self.bob.id, "30.00")

        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))
        assert self.storage._pool.checkedout() == 0

    def test_commit_error_kept_when_rollback_also_fails(self):
        self.fail_commits(fail_rollback=True)

        with pytest.raises(TransactionError, match="commit: disk I/O error"):
            self.engine.transfer(self.alice.id, self.bob.id, "30.00")

        assert self.balances() == (Decimal("100.00"), Decimal("50.00"))
        assert self.storage._pool.checkedout() == 0

    def test_later_transfers_succeed(self):
        self.fail_commits()
        with pytest.raises(TransactionError):
            self.engine.transfer(self.alice.id, self.bob.id, "30.00")

        self.monkeypatch.undo()
        self.engine.transfer(self.alice.id, self.bob.id, "30.00")
        assert self.balances() == (Decimal("70.00"), Decimal("80.00"))
