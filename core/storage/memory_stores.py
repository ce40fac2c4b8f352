"""In-memory persistence.

Thread-safe implementations of every store protocol, used by tests and by
single-process deployments without DATABASE_URL.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Mapping, Optional, Sequence

from core.ledger.balances import apply_deltas
from core.persistence.interfaces import BalanceStore, LoanStore, OperationStore, PlanStore
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


class MemoryStores(BalanceStore, OperationStore, PlanStore, LoanStore):
    """Single entrypoint for the in-memory persistence layer."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._balances: dict[int, UserBalance] = {}
        self._events: dict[int, list[LedgerEvent]] = {}
        self._operations: dict[int, Operation] = {}
        self._plans: dict[int, ActivePlan] = {}
        self._loans: dict[int, Loan] = {}
        self._event_seq = itertools.count(1)
        self._operation_ids = itertools.count(1)
        self._plan_ids = itertools.count(1)
        self._loan_ids = itertools.count(1)

    # Balances

    def get_balance(self, *, user_id: int) -> Optional[UserBalance]:
        with self._lock:
            return self._balances.get(user_id)

    def commit_deltas(
        self,
        *,
        user_id: int,
        deltas: Mapping[str, int],
        kind: str,
        operation_id: Optional[int],
        created_at: datetime,
    ) -> LedgerEvent:
        with self._lock:
            current = self._balances.get(user_id) or UserBalance(user_id=user_id)
            balance = apply_deltas(current, deltas)
            event = LedgerEvent(
                user_id=user_id,
                kind=kind,
                deltas=dict(deltas),
                balance_after=balance,
                operation_id=operation_id,
                created_at=created_at,
                seq=next(self._event_seq),
            )
            self._balances[user_id] = balance
            self._events.setdefault(user_id, []).append(event)
            return event

    def list_events(self, *, user_id: int) -> Sequence[LedgerEvent]:
        with self._lock:
            return list(self._events.get(user_id, []))

    def list_user_ids(self) -> Sequence[int]:
        with self._lock:
            return sorted(self._balances)

    # Operations

    def add_operation(self, *, operation: Operation) -> Operation:
        with self._lock:
            stored = replace(operation, id=next(self._operation_ids))
            self._operations[stored.id] = stored
            return stored

    def get_operation(self, *, operation_id: int) -> Optional[Operation]:
        with self._lock:
            return self._operations.get(operation_id)

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
        with self._lock:
            rows = list(self._operations.values())

        wanted_types = set(types) if types else None
        results = [
            op
            for op in rows
            if (user_id is None or op.user_id == user_id)
            and (status is None or op.status == status)
            and (wanted_types is None or op.type in wanted_types)
            and (loan_id is None or op.loan_id == loan_id)
            and (parent_id is None or op.parent_id == parent_id)
        ]
        results.sort(key=lambda op: op.id or 0, reverse=True)
        return results[:limit]

    def transition_operation(self, *, operation: Operation, expected_status: OperationStatus) -> bool:
        if operation.id is None:
            raise ValueError("operation.id is required")
        with self._lock:
            current = self._operations.get(operation.id)
            if current is None or current.status != expected_status:
                return False
            self._operations[operation.id] = operation
            return True

    # Plans

    def add_plan(self, *, plan: ActivePlan) -> ActivePlan:
        with self._lock:
            stored = replace(plan, id=next(self._plan_ids))
            self._plans[stored.id] = stored
            return stored

    def get_plan(self, *, plan_id: int) -> Optional[ActivePlan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list_plans(
        self,
        *,
        user_id: int | None = None,
        status: PlanStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[ActivePlan]:
        with self._lock:
            rows = list(self._plans.values())
        return sorted(
            (
                plan
                for plan in rows
                if (user_id is None or plan.user_id == user_id)
                and (status is None or plan.status == status)
                and (due_before is None or plan.next_execution_at <= due_before)
            ),
            key=lambda plan: plan.id or 0,
        )

    def compare_and_update_plan(
        self,
        *,
        plan: ActivePlan,
        expected_status: PlanStatus,
        expected_next_execution_at: datetime,
    ) -> bool:
        if plan.id is None:
            raise ValueError("plan.id is required")
        with self._lock:
            current = self._plans.get(plan.id)
            if (
                current is None
                or current.status != expected_status
                or current.next_execution_at != expected_next_execution_at
            ):
                return False
            self._plans[plan.id] = plan
            return True

    # Loans

    def add_loan(self, *, loan: Loan) -> Loan:
        with self._lock:
            if loan.status == LoanStatus.ACTIVE and self.get_active_loan(user_id=loan.user_id) is not None:
                raise ValueError(f"User {loan.user_id} already has an active loan")
            stored = replace(loan, id=next(self._loan_ids))
            self._loans[stored.id] = stored
            return stored

    def get_loan(self, *, loan_id: int) -> Optional[Loan]:
        with self._lock:
            return self._loans.get(loan_id)

    def get_active_loan(self, *, user_id: int) -> Optional[Loan]:
        with self._lock:
            for loan in self._loans.values():
                if loan.user_id == user_id and loan.status == LoanStatus.ACTIVE:
                    return loan
        return None

    def list_loans(self, *, user_id: int | None = None, status: LoanStatus | None = None) -> Sequence[Loan]:
        with self._lock:
            rows = list(self._loans.values())
        return sorted(
            (
                loan
                for loan in rows
                if (user_id is None or loan.user_id == user_id) and (status is None or loan.status == status)
            ),
            key=lambda loan: loan.id or 0,
        )

    def update_loan(self, *, loan: Loan, expected: Loan) -> bool:
        if loan.id is None:
            raise ValueError("loan.id is required")
        with self._lock:
            current = self._loans.get(loan.id)
            if current is None or current != expected:
                return False
            self._loans[loan.id] = loan
            return True
