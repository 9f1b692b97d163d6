"""
Error Taxonomy Module

Every failure raised by the record store, the transfer engine and the storage
backends derives from LedgerError so callers can catch the whole family.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""


class ValidationError(LedgerError):
    """Raised when an input value is malformed or out of range"""


class NotFoundError(LedgerError):
    """Raised when a referenced user id does not exist"""

    def __init__(self, user_id: int, role: Optional[str] = None):
        self.user_id = user_id
        self.role = role
        label = f"{role} user" if role else "user"
        super().__init__(f"{label} {user_id} not found")


class InsufficientFundsError(LedgerError):
    """Raised when a sender's balance is lower than the requested amount"""

    def __init__(self, user_id: int, balance: Decimal, amount: Decimal):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"insufficient funds for user {user_id}: have {balance:.2f} need {amount:.2f}"
        )


class StoreConnectionError(LedgerError):
    """Raised when the database cannot be reached or authenticated against"""


class TransactionError(LedgerError):
    """Raised when begin, commit, rollback or a statement inside a transaction fails"""
