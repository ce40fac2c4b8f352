"""Balance ledger.

Authoritative per-user fund state. Every mutation goes through :meth:`commit`,
which hands signed deltas to the store; the store applies them to its current
row, rejects a negative result and appends exactly one immutable
:class:`LedgerEvent` in the same transaction.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, Mapping, Optional, Sequence

from core.errors import InsufficientFunds, InvariantViolation, require_positive_amount
from core.persistence.interfaces import BalanceStore
from core.types import BALANCE_FIELDS, Currency, LedgerEvent, UserBalance, utc_now

logger = logging.getLogger(__name__)


def _currency_fields(currency: Currency | str) -> tuple[str, str]:
    code = Currency(currency).value.lower()
    return f"available_{code}", f"reserved_{code}"


def apply_deltas(balance: UserBalance, deltas: Mapping[str, int]) -> UserBalance:
    """Return `balance` with signed integer `deltas` added.

    Raises:
        ValueError: If a delta names an unknown field or is not an int
        InvariantViolation: If any resulting field would be negative
    """
    updates: dict[str, int] = {}
    for name, delta in deltas.items():
        if name not in BALANCE_FIELDS:
            raise ValueError(f"Unknown balance field: {name}")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValueError(f"Delta for {name} must be an int, got {delta!r}")
        updates[name] = getattr(balance, name) + delta

    negative = {name: value for name, value in updates.items() if value < 0}
    if negative:
        raise InvariantViolation(
            f"Commit would make balance negative for user {balance.user_id}: {sorted(negative)}",
            user_id=balance.user_id,
            fields=negative,
        )
    return replace(balance, **updates)


class BalanceLedger:
    """Per-user balance ledger with atomic mutation primitives.

    Supports:
    - Reserve/release for pending orders
    - Multi-field signed-delta commits (trades, loans, deposits)
    - Event replay for conservation checks
    """

    def __init__(self, store: BalanceStore) -> None:
        self._store = store
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def user_lock(self, user_id: int) -> Iterator[None]:
        """Serialise all mutations for one user.

        Re-entrant, so engines can hold it around a read-validate-commit
        sequence that itself calls ledger methods.
        """
        with self._locks_guard:
            lock = self._locks.setdefault(user_id, threading.RLock())
        with lock:
            yield

    def get_balance(self, user_id: int) -> UserBalance:
        """Current balance for a user (all zero when never funded)."""
        balance = self._store.get_balance(user_id=user_id)
        return balance if balance is not None else UserBalance(user_id=user_id)

    def user_ids(self) -> Sequence[int]:
        return self._store.list_user_ids()

    def ensure_available(self, user_id: int, currency: Currency | str, amount: int) -> UserBalance:
        """Raise InsufficientFunds unless `amount` is spendable."""
        available_field, _ = _currency_fields(currency)
        balance = self.get_balance(user_id)
        available = getattr(balance, available_field)
        if available < amount:
            raise InsufficientFunds(
                f"Insufficient available {Currency(currency).value}: have {available}, need {amount}",
                available=available,
                required=amount,
            )
        return balance

    def preview(self, user_id: int, deltas: Mapping[str, int]) -> UserBalance:
        """Return the balance `deltas` would produce without storing it.

        Raises:
            ValueError: If a delta names an unknown field or is not an int
            InvariantViolation: If any resulting field would be negative
        """
        return apply_deltas(self.get_balance(user_id), deltas)

    def commit(
        self,
        user_id: int,
        deltas: Mapping[str, int],
        *,
        kind: str = "commit",
        operation_id: Optional[int] = None,
    ) -> LedgerEvent:
        """Apply signed deltas as one unit and append one ledger event.

        The store applies the deltas to the row it holds at commit time,
        not to the balance read here.

        Args:
            user_id: Owner of the balance
            deltas: Field name -> signed int change; zero entries are dropped
            kind: Event label (usually the operation type)
            operation_id: Operation row this commit belongs to

        Returns:
            The stored LedgerEvent, carrying the post-commit balance

        Raises:
            ValueError: If a delta is not an int or names an unknown field
            InvariantViolation: If any field would go negative (nothing is stored)
        """
        with self.user_lock(user_id):
            self.preview(user_id, deltas)
            effective = {name: delta for name, delta in deltas.items() if delta != 0}
            stored = self._store.commit_deltas(
                user_id=user_id,
                deltas=effective,
                kind=kind,
                operation_id=operation_id,
                created_at=utc_now(),
            )

        logger.debug("Ledger commit user=%s kind=%s deltas=%s", user_id, kind, effective)
        return stored

    def reserve(
        self,
        user_id: int,
        currency: Currency | str,
        amount: int,
        *,
        operation_id: Optional[int] = None,
    ) -> LedgerEvent:
        """Move funds from available to reserved (for pending orders).

        Raises:
            InvalidAmount: If amount <= 0
            InsufficientFunds: If available < amount
        """
        require_positive_amount(amount)
        available_field, reserved_field = _currency_fields(currency)
        with self.user_lock(user_id):
            self.ensure_available(user_id, currency, amount)
            return self.commit(
                user_id,
                {available_field: -amount, reserved_field: amount},
                kind="reserve",
                operation_id=operation_id,
            )

    def release(
        self,
        user_id: int,
        currency: Currency | str,
        amount: int,
        *,
        operation_id: Optional[int] = None,
    ) -> LedgerEvent:
        """Move funds from reserved back to available (order cancelled).

        Raises:
            InvalidAmount: If amount <= 0
            InvariantViolation: If reserved < amount
        """
        require_positive_amount(amount)
        available_field, reserved_field = _currency_fields(currency)
        return self.commit(
            user_id,
            {available_field: amount, reserved_field: -amount},
            kind="release",
            operation_id=operation_id,
        )

    def adjust(
        self,
        user_id: int,
        field_name: str,
        delta: int,
        *,
        kind: str = "adjust",
        operation_id: Optional[int] = None,
    ) -> LedgerEvent:
        """Single-field commit (deposits, withdrawals, admin corrections)."""
        return self.commit(user_id, {field_name: delta}, kind=kind, operation_id=operation_id)

    def events(self, user_id: int) -> Sequence[LedgerEvent]:
        return self._store.list_events(user_id=user_id)

    def ledger_total(self, user_id: int, currency: Currency | str) -> int:
        """Replay events to get available + reserved for one currency."""
        available_field, reserved_field = _currency_fields(currency)
        total = 0
        for event in self.events(user_id):
            total += event.deltas.get(available_field, 0) + event.deltas.get(reserved_field, 0)
        return total
