from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence

from core.types import (
    ActivePlan,
    LedgerEvent,
    Loan,
    LoanStatus,
    Operation,
    OperationStatus,
    OperationType,
    PlanStatus,
    UserBalance,
)


class BalanceStore(Protocol):
    def get_balance(self, *, user_id: int) -> Optional[UserBalance]:
        """Fetch the stored balance row for a user."""

    def commit_deltas(
        self,
        *,
        user_id: int,
        deltas: Mapping[str, int],
        kind: str,
        operation_id: Optional[int],
        created_at: datetime,
    ) -> LedgerEvent:
        """Add `deltas` to the stored balance and append its event in one transaction.

        The deltas are applied to the row as stored at commit time; a
        negative result raises InvariantViolation and nothing is written.
        Returns the event with `seq` and `balance_after` set.
        """

    def list_events(self, *, user_id: int) -> Sequence[LedgerEvent]:
        """List ledger events for a user, oldest first."""

    def list_user_ids(self) -> Sequence[int]:
        """List users that have a balance row."""


class OperationStore(Protocol):
    def add_operation(self, *, operation: Operation) -> Operation:
        """Insert an operation and return it with its id assigned."""

    def get_operation(self, *, operation_id: int) -> Optional[Operation]:
        """Fetch a single operation by id."""

    def list_operations(
        self,
        *,
        user_id: int | None = None,
        status: OperationStatus | None = None,
        types: Sequence[OperationType] | None = None,
        loan_id: int | None = None,
        parent_id: int | None = None,
        limit: int = 1000,
    ) -> Sequence[Operation]:
        """List operations (newest first) with optional filters."""

    def transition_operation(self, *, operation: Operation, expected_status: OperationStatus) -> bool:
        """Replace the row for `operation.id` only if its stored status is `expected_status`."""


class PlanStore(Protocol):
    def add_plan(self, *, plan: ActivePlan) -> ActivePlan:
        """Insert a DCA plan and return it with its id assigned."""

    def get_plan(self, *, plan_id: int) -> Optional[ActivePlan]:
        """Fetch a single plan by id."""

    def list_plans(
        self,
        *,
        user_id: int | None = None,
        status: PlanStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[ActivePlan]:
        """List plans; `due_before` keeps plans with next_execution_at <= it."""

    def compare_and_update_plan(
        self,
        *,
        plan: ActivePlan,
        expected_status: PlanStatus,
        expected_next_execution_at: datetime,
    ) -> bool:
        """Replace the plan row only if status and next_execution_at still match."""


class LoanStore(Protocol):
    def add_loan(self, *, loan: Loan) -> Loan:
        """Insert a loan and return it with its id assigned."""

    def get_loan(self, *, loan_id: int) -> Optional[Loan]:
        """Fetch a single loan by id."""

    def get_active_loan(self, *, user_id: int) -> Optional[Loan]:
        """Fetch the user's ACTIVE loan, if any."""

    def list_loans(self, *, user_id: int | None = None, status: LoanStatus | None = None) -> Sequence[Loan]:
        """List loans with optional filters."""

    def update_loan(self, *, loan: Loan, expected: Loan) -> bool:
        """Replace the loan row only if it still matches `expected` (the row as last read)."""
