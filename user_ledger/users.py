"""
User Management Module

Creates, fetches and lists user records. Balances are only ever changed by
the transfer engine; this module never updates or deletes a user.
"""

from typing import List

from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import User
from .money import ZERO, AmountLike, format_amount, parse_amount
from .storage import StorageInterface


class UserManager:
    """
    Record store for users
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("user_ledger.users")

    def create_user(self, name: str, email: str, initial_balance: AmountLike = ZERO) -> User:
        """
        Create a new user

        Args:
            name: Display name
            email: Contact address
            initial_balance: Opening balance, must not be negative

        Returns:
            Created User with its store-assigned id

        Raises:
            ValidationError: If name or email is blank, or the balance is
                negative or not a valid two-place amount
        """
        name = (name or "").strip()
        email = (email or "").strip()
        if not name:
            raise ValidationError("name must not be empty")
        if not email:
            raise ValidationError("email must not be empty")

        balance = parse_amount(initial_balance, field="initial balance")
        if balance < ZERO:
            raise ValidationError(f"initial balance must not be negative: {format_amount(balance)}")

        user = self.storage.insert_user(name, email, balance)

        log_action(
            self.logger, "info", f"User created: {user.id}",
            user_id=user.id, action="create_user", resource=f"user:{user.id}",
            extra={"name": name, "email": email, "balance": format_amount(balance)}
        )

        return user

    def get_user(self, user_id: int) -> User:
        """Get user by ID, raising NotFoundError if there is none"""
        user = self.storage.get_user(user_id)
        if user is None:
            raise NotFoundError(user_id)
        return user

    def list_users(self) -> List[User]:
        """All users ordered by id (empty list when there are none)"""
        return self.storage.list_users()
