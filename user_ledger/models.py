"""
Ledger Records

Plain data records returned by the record store and the transfer engine.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from .money import format_amount


@dataclass(frozen=True)
class User:
    """A user and their current balance"""
    id: int
    name: str
    email: str
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (balance as a string, never a float)"""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "balance": format_amount(self.balance),
        }

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.id}: {self.name} <{self.email}> - {format_amount(self.balance)}"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a committed transfer"""
    from_user_id: int
    to_user_id: int
    amount: Decimal
    from_balance: Decimal
    to_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": format_amount(self.amount),
            "from_balance": format_amount(self.from_balance),
            "to_balance": format_amount(self.to_balance),
        }
