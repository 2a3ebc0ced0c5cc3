"""Per-session token balance.

Every oracle call costs ``cost_per_item`` tokens.  ``reserve`` checks and
debits in one locked step so concurrent calls can never overdraw; a call that
then fails hands its reservation back with ``refund``.
"""

from __future__ import annotations

import logging
import threading

from .config import INITIAL_TOKEN_BALANCE, TOKENS_PER_ITEM
from .utils import InsufficientBudgetError

logger = logging.getLogger(__name__)


class Session:
    def __init__(
        self,
        balance: int = INITIAL_TOKEN_BALANCE,
        cost_per_item: int = TOKENS_PER_ITEM,
        user: str | None = None,
    ) -> None:
        if balance < 0:
            raise ValueError("balance must be >= 0")
        if cost_per_item < 1:
            raise ValueError("cost_per_item must be >= 1")
        self._balance = balance
        self.cost_per_item = cost_per_item
        self.user = user
        self._lock = threading.Lock()

    @property
    def balance(self) -> int:
        with self._lock:
            return self._balance

    def can_afford(self, amount: int | None = None) -> bool:
        with self._lock:
            return self._balance >= (amount if amount is not None else self.cost_per_item)

    def reserve(self, amount: int | None = None) -> int:
        """Debit *amount* (default: one item) or raise InsufficientBudgetError."""
        cost = amount if amount is not None else self.cost_per_item
        with self._lock:
            if self._balance < cost:
                raise InsufficientBudgetError(
                    f"Insufficient tokens: {cost} needed, {self._balance} available."
                )
            self._balance -= cost
            return cost

    def refund(self, amount: int) -> None:
        with self._lock:
            self._balance += amount

    def add_tokens(self, amount: int) -> int:
        """Top up the balance; returns the new balance."""
        if amount <= 0:
            raise ValueError("amount must be > 0")
        with self._lock:
            self._balance += amount
            logger.info("Added %d tokens (balance now %d)", amount, self._balance)
            return self._balance
