"""
Transfer Processing Module

Moves money between two users as a single atomic unit of work. Both user
rows are locked for the life of the transaction, the sender's balance is
checked under that lock, and every failure rolls the whole transfer back.
Nothing is retried: a failed transfer is reported to the caller as-is.
"""

from decimal import Decimal
from typing import Optional, Tuple

from .config import LedgerConfig, get_config
from .errors import InsufficientFundsError, LedgerError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import TransferResult
from .money import ZERO, AmountLike, format_amount, parse_amount
from .storage import StorageInterface, StorageTransaction

# Sentinel so an explicit lock_timeout=None (wait forever) differs from "use config"
_CONFIGURED = object()


class TransferEngine:
    """
    Executes balance transfers with row-level locking.

    lock_order "role" locks the sender, checks funds, then locks the
    receiver. Two opposite-direction transfers between the same pair can
    deadlock under that order; the database (or the lock timeout) breaks
    it and one side fails with TransactionError. lock_order "id" locks
    both rows in ascending id order before checking funds, which avoids
    that deadlock.
    """

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.logger = get_logger("user_ledger.transfers")

    def transfer(
        self,
        from_user_id: int,
        to_user_id: int,
        amount: AmountLike,
        lock_timeout=_CONFIGURED
    ) -> TransferResult:
        """
        Transfer amount from one user to another

        Args:
            from_user_id: Sender
            to_user_id: Receiver
            amount: Positive amount with at most two decimal places
            lock_timeout: Seconds to wait for each row lock; None waits
                forever. Defaults to config.lock_timeout_seconds.

        Returns:
            TransferResult with both post-transfer balances

        Raises:
            ValidationError: Non-positive amount or sender == receiver
            NotFoundError: Sender or receiver does not exist
            InsufficientFundsError: Sender balance is below amount
            TransactionError: Lock wait timed out, deadlock, or commit failed
        """
        amount = parse_amount(amount)
        if amount <= ZERO:
            raise ValidationError(f"amount must be positive: {format_amount(amount)}")
        if from_user_id == to_user_id:
            raise ValidationError(f"cannot transfer from user {from_user_id} to itself")

        if lock_timeout is _CONFIGURED:
            lock_timeout = self.config.lock_timeout_seconds

        try:
            with self.storage.transaction(lock_timeout=lock_timeout) as tx:
                if self.config.lock_order == "id":
                    from_balance, to_balance = self._lock_by_id(tx, from_user_id, to_user_id)
                    self._check_funds(from_user_id, from_balance, amount)
                else:
                    from_balance = self._lock(tx, from_user_id, "sender")
                    self._check_funds(from_user_id, from_balance, amount)
                    to_balance = self._lock(tx, to_user_id, "receiver")

                tx.debit(from_user_id, amount)
                tx.credit(to_user_id, amount)
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e}",
                user_id=from_user_id, action="transfer", resource=f"user:{to_user_id}",
                extra={"amount": format_amount(amount), "error": type(e).__name__}
            )
            raise

        result = TransferResult(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            from_balance=from_balance - amount,
            to_balance=to_balance + amount
        )

        log_action(
            self.logger, "info", f"Transfer completed: {from_user_id} -> {to_user_id}",
            user_id=from_user_id, action="transfer", resource=f"user:{to_user_id}",
            extra=result.to_dict()
        )

        return result

    @staticmethod
    def _lock(tx: StorageTransaction, user_id: int, role: str) -> Decimal:
        balance = tx.lock_balance(user_id)
        if balance is None:
            raise NotFoundError(user_id, role=role)
        return balance

    def _lock_by_id(self, tx: StorageTransaction, from_user_id: int,
                    to_user_id: int) -> Tuple[Decimal, Decimal]:
        roles = {from_user_id: "sender", to_user_id: "receiver"}
        balances = {}
        for user_id in sorted(roles):
            balances[user_id] = self._lock(tx, user_id, roles[user_id])
        return balances[from_user_id], balances[to_user_id]

    @staticmethod
    def _check_funds(user_id: int, balance: Decimal, amount: Decimal) -> None:
        if balance < amount:
            raise InsufficientFundsError(user_id, balance, amount)
