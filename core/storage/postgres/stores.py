from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from core.ledger.balances import apply_deltas
from core.persistence.interfaces import BalanceStore, LoanStore, OperationStore, PlanStore
from core.storage.postgres.config import PostgresConfig
from core.types import (
    BALANCE_FIELDS,
    ActivePlan,
    LedgerEvent,
    Loan,
    LoanStatus,
    Operation,
    OperationStatus,
    OperationType,
    PlanFrequency,
    PlanStatus,
    PlanType,
    UserBalance,
)

_OPERATION_COLUMNS = (
    "id",
    "user_id",
    "type",
    "status",
    "inr_amount",
    "btc_amount",
    "execution_price",
    "limit_price",
    "parent_id",
    "loan_id",
    "notes",
    "cancellation_reason",
    "created_at",
    "executed_at",
    "cancelled_at",
    "expires_at",
    "inr_balance_after",
    "btc_balance_after",
)

_PLAN_COLUMNS = (
    "id",
    "user_id",
    "plan_type",
    "frequency",
    "amount_per_execution",
    "next_execution_at",
    "status",
    "remaining_executions",
    "total_executions",
    "max_price",
    "min_price",
    "created_at",
    "completed_at",
)

_LOAN_COLUMNS = (
    "id",
    "user_id",
    "btc_collateral_amount",
    "inr_borrowed_amount",
    "interest_accrued",
    "interest_paid",
    "total_borrowed",
    "interest_rate",
    "ltv_ratio",
    "liquidation_price",
    "status",
    "created_at",
    "last_accrual_at",
    "closed_at",
)

# Columns an engine read-modify-write must find unchanged.
_LOAN_CAS_COLUMNS = (
    "status",
    "btc_collateral_amount",
    "inr_borrowed_amount",
    "interest_accrued",
    "interest_paid",
    "total_borrowed",
)


def _utc(value: datetime | None) -> datetime | None:
    """Postgres TIMESTAMP columns may come back naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _balance_from_row(row: Sequence[Any]) -> UserBalance:
    return UserBalance(user_id=int(row[0]), **{name: int(row[i + 1]) for i, name in enumerate(BALANCE_FIELDS)})


def _operation_from_row(row: Sequence[Any]) -> Operation:
    data = dict(zip(_OPERATION_COLUMNS, row))
    return Operation(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        type=OperationType(data["type"]),
        status=OperationStatus(data["status"]),
        inr_amount=int(data["inr_amount"] or 0),
        btc_amount=int(data["btc_amount"] or 0),
        execution_price=data["execution_price"],
        limit_price=data["limit_price"],
        parent_id=data["parent_id"],
        loan_id=data["loan_id"],
        notes=data["notes"],
        cancellation_reason=data["cancellation_reason"],
        created_at=_utc(data["created_at"]),
        executed_at=_utc(data["executed_at"]),
        cancelled_at=_utc(data["cancelled_at"]),
        expires_at=_utc(data["expires_at"]),
        inr_balance_after=data["inr_balance_after"],
        btc_balance_after=data["btc_balance_after"],
    )


def _operation_params(operation: Operation) -> dict[str, Any]:
    params = {name: getattr(operation, name) for name in _OPERATION_COLUMNS}
    params["type"] = operation.type.value
    params["status"] = operation.status.value
    return params


def _plan_from_row(row: Sequence[Any]) -> ActivePlan:
    data = dict(zip(_PLAN_COLUMNS, row))
    return ActivePlan(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        plan_type=PlanType(data["plan_type"]),
        frequency=PlanFrequency(data["frequency"]),
        amount_per_execution=int(data["amount_per_execution"]),
        next_execution_at=_utc(data["next_execution_at"]),
        status=PlanStatus(data["status"]),
        remaining_executions=data["remaining_executions"],
        total_executions=int(data["total_executions"] or 0),
        max_price=data["max_price"],
        min_price=data["min_price"],
        created_at=_utc(data["created_at"]),
        completed_at=_utc(data["completed_at"]),
    )


def _plan_params(plan: ActivePlan) -> dict[str, Any]:
    params = {name: getattr(plan, name) for name in _PLAN_COLUMNS}
    params["plan_type"] = plan.plan_type.value
    params["frequency"] = plan.frequency.value
    params["status"] = plan.status.value
    return params


def _loan_from_row(row: Sequence[Any]) -> Loan:
    data = dict(zip(_LOAN_COLUMNS, row))
    return Loan(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        btc_collateral_amount=int(data["btc_collateral_amount"]),
        inr_borrowed_amount=int(data["inr_borrowed_amount"]),
        interest_accrued=int(data["interest_accrued"]),
        interest_paid=int(data["interest_paid"]),
        total_borrowed=int(data["total_borrowed"]),
        interest_rate=int(data["interest_rate"]),
        ltv_ratio=int(data["ltv_ratio"]),
        liquidation_price=int(data["liquidation_price"]),
        status=LoanStatus(data["status"]),
        created_at=_utc(data["created_at"]),
        last_accrual_at=_utc(data["last_accrual_at"]),
        closed_at=_utc(data["closed_at"]),
    )


def _loan_params(loan: Loan) -> dict[str, Any]:
    params = {name: getattr(loan, name) for name in _LOAN_COLUMNS}
    params["status"] = loan.status.value
    return params


def _assignments(columns: Sequence[str]) -> str:
    return ", ".join(f"{name} = :{name}" for name in columns if name != "id")


class PostgresStores(BalanceStore, OperationStore, PlanStore, LoanStore):
    """Single entrypoint for a PostgreSQL-backed persistence layer.

    Uses SQLAlchemy Core with plain SQL; the schema lives in db/schema.sql.
    """

    def __init__(self, *, config: PostgresConfig) -> None:
        self._config = config
        self._engine: Any | None = None

    def _require_sqlalchemy(self) -> tuple[Any, Any]:
        try:
            from sqlalchemy import create_engine, text  # type: ignore[import-not-found]
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("SQLAlchemy is required for PostgresStores. Install the package dependencies.") from exc

        return create_engine, text

    def _get_engine(self) -> Any:
        if self._engine is None:
            create_engine, _ = self._require_sqlalchemy()
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._config.database_url, echo=False, pool_pre_ping=True)
        return self._engine

    def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()
        with engine.begin() as conn:
            conn.execute(text("SELECT 1"))

    # ---- BalanceStore

    def get_balance(self, *, user_id: int) -> Optional[UserBalance]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            SELECT user_id, {", ".join(BALANCE_FIELDS)}
            FROM user_balances
            WHERE user_id = :user_id
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, {"user_id": user_id}).fetchone()

        return None if row is None else _balance_from_row(row)

    def commit_deltas(
        self,
        *,
        user_id: int,
        deltas: Mapping[str, int],
        kind: str,
        operation_id: Optional[int],
        created_at: datetime,
    ) -> LedgerEvent:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        ensure_row = text(
            """
            INSERT INTO user_balances (user_id)
            VALUES (:user_id)
            ON CONFLICT (user_id) DO NOTHING
            """
        )
        lock_row = text(
            f"""
            SELECT user_id, {", ".join(BALANCE_FIELDS)}
            FROM user_balances
            WHERE user_id = :user_id
            FOR UPDATE
            """
        )
        update = text(
            f"""
            UPDATE user_balances
            SET {", ".join(f"{name} = :{name}" for name in BALANCE_FIELDS)}, updated_at = NOW()
            WHERE user_id = :user_id
            """
        )
        insert_event = text(
            """
            INSERT INTO ledger_events (user_id, kind, deltas_json, balance_after_json, operation_id, created_at)
            VALUES (:user_id, :kind, :deltas_json, :balance_after_json, :operation_id, :created_at)
            RETURNING seq
            """
        )

        # Row lock held until the transaction ends; apply_deltas raising rolls it back.
        with engine.begin() as conn:
            conn.execute(ensure_row, {"user_id": user_id})
            current = conn.execute(lock_row, {"user_id": user_id}).fetchone()
            if current is None:
                raise RuntimeError(f"Balance row for user {user_id} is missing")
            balance = apply_deltas(_balance_from_row(current), deltas)
            conn.execute(update, balance.to_dict())
            row = conn.execute(
                insert_event,
                {
                    "user_id": user_id,
                    "kind": kind,
                    "deltas_json": json.dumps(dict(deltas), sort_keys=True),
                    "balance_after_json": json.dumps(balance.to_dict(), sort_keys=True),
                    "operation_id": operation_id,
                    "created_at": created_at,
                },
            ).fetchone()

            if row is None:
                raise RuntimeError("Failed to append ledger event")

        return LedgerEvent(
            user_id=user_id,
            kind=kind,
            deltas=dict(deltas),
            balance_after=balance,
            operation_id=operation_id,
            created_at=created_at,
            seq=int(row[0]),
        )

    def list_events(self, *, user_id: int) -> Sequence[LedgerEvent]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            SELECT seq, user_id, kind, deltas_json, balance_after_json, operation_id, created_at
            FROM ledger_events
            WHERE user_id = :user_id
            ORDER BY seq ASC
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, {"user_id": user_id}).fetchall()

        return [
            LedgerEvent(
                seq=int(row[0]),
                user_id=int(row[1]),
                kind=row[2],
                deltas={k: int(v) for k, v in json.loads(row[3]).items()},
                balance_after=UserBalance(**json.loads(row[4])),
                operation_id=row[5],
                created_at=_utc(row[6]),
            )
            for row in rows
        ]

    def list_user_ids(self) -> Sequence[int]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        with engine.begin() as conn:
            rows = conn.execute(text("SELECT user_id FROM user_balances ORDER BY user_id")).fetchall()

        return [int(row[0]) for row in rows]

    # ---- OperationStore

    def add_operation(self, *, operation: Operation) -> Operation:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        columns = [name for name in _OPERATION_COLUMNS if name != "id"]
        stmt = text(
            f"""
            INSERT INTO operations ({", ".join(columns)})
            VALUES ({", ".join(f":{name}" for name in columns)})
            RETURNING id
            """
        )

        params = _operation_params(operation)
        params.pop("id")
        with engine.begin() as conn:
            row = conn.execute(stmt, params).fetchone()

        if row is None:
            raise RuntimeError("Failed to insert operation")

        return replace(operation, id=int(row[0]))

    def get_operation(self, *, operation_id: int) -> Optional[Operation]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(f"SELECT {', '.join(_OPERATION_COLUMNS)} FROM operations WHERE id = :id")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"id": operation_id}).fetchone()

        return None if row is None else _operation_from_row(row)

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
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        conditions: list[str] = []
        params: dict[str, object] = {"limit": limit}

        if user_id is not None:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status.value
        if types:
            conditions.append("type = ANY(:types)")
            params["types"] = [t.value for t in types]
        if loan_id is not None:
            conditions.append("loan_id = :loan_id")
            params["loan_id"] = loan_id
        if parent_id is not None:
            conditions.append("parent_id = :parent_id")
            params["parent_id"] = parent_id

        where_sql = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        stmt = text(
            f"""
            SELECT {", ".join(_OPERATION_COLUMNS)}
            FROM operations
            {where_sql}
            ORDER BY id DESC
            LIMIT :limit
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [_operation_from_row(row) for row in rows]

    def transition_operation(self, *, operation: Operation, expected_status: OperationStatus) -> bool:
        if operation.id is None:
            raise ValueError("operation.id is required")

        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            UPDATE operations
            SET {_assignments(_OPERATION_COLUMNS)}
            WHERE id = :id AND status = :expected_status
            """
        )

        params = _operation_params(operation)
        params["expected_status"] = expected_status.value
        with engine.begin() as conn:
            result = conn.execute(stmt, params)

        return int(getattr(result, "rowcount", 0) or 0) == 1

    # ---- PlanStore

    def add_plan(self, *, plan: ActivePlan) -> ActivePlan:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        columns = [name for name in _PLAN_COLUMNS if name != "id"]
        stmt = text(
            f"""
            INSERT INTO active_plans ({", ".join(columns)})
            VALUES ({", ".join(f":{name}" for name in columns)})
            RETURNING id
            """
        )

        params = _plan_params(plan)
        params.pop("id")
        with engine.begin() as conn:
            row = conn.execute(stmt, params).fetchone()

        if row is None:
            raise RuntimeError("Failed to insert plan")

        return replace(plan, id=int(row[0]))

    def get_plan(self, *, plan_id: int) -> Optional[ActivePlan]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(f"SELECT {', '.join(_PLAN_COLUMNS)} FROM active_plans WHERE id = :id")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"id": plan_id}).fetchone()

        return None if row is None else _plan_from_row(row)

    def list_plans(
        self,
        *,
        user_id: int | None = None,
        status: PlanStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[ActivePlan]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        conditions: list[str] = []
        params: dict[str, object] = {}

        if user_id is not None:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status.value
        if due_before is not None:
            conditions.append("next_execution_at <= :due_before")
            params["due_before"] = due_before

        where_sql = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        stmt = text(
            f"""
            SELECT {", ".join(_PLAN_COLUMNS)}
            FROM active_plans
            {where_sql}
            ORDER BY id ASC
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [_plan_from_row(row) for row in rows]

    def compare_and_update_plan(
        self,
        *,
        plan: ActivePlan,
        expected_status: PlanStatus,
        expected_next_execution_at: datetime,
    ) -> bool:
        if plan.id is None:
            raise ValueError("plan.id is required")

        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            UPDATE active_plans
            SET {_assignments(_PLAN_COLUMNS)}
            WHERE id = :id
              AND status = :expected_status
              AND next_execution_at = :expected_next_execution_at
            """
        )

        params = _plan_params(plan)
        params["expected_status"] = expected_status.value
        params["expected_next_execution_at"] = expected_next_execution_at
        with engine.begin() as conn:
            result = conn.execute(stmt, params)

        return int(getattr(result, "rowcount", 0) or 0) == 1

    # ---- LoanStore

    def add_loan(self, *, loan: Loan) -> Loan:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        columns = [name for name in _LOAN_COLUMNS if name != "id"]
        stmt = text(
            f"""
            INSERT INTO loans ({", ".join(columns)})
            VALUES ({", ".join(f":{name}" for name in columns)})
            RETURNING id
            """
        )

        params = _loan_params(loan)
        params.pop("id")
        with engine.begin() as conn:
            row = conn.execute(stmt, params).fetchone()

        if row is None:
            raise RuntimeError("Failed to insert loan")

        return replace(loan, id=int(row[0]))

    def get_loan(self, *, loan_id: int) -> Optional[Loan]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(f"SELECT {', '.join(_LOAN_COLUMNS)} FROM loans WHERE id = :id")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"id": loan_id}).fetchone()

        return None if row is None else _loan_from_row(row)

    def get_active_loan(self, *, user_id: int) -> Optional[Loan]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            SELECT {", ".join(_LOAN_COLUMNS)}
            FROM loans
            WHERE user_id = :user_id AND status = 'ACTIVE'
            LIMIT 1
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, {"user_id": user_id}).fetchone()

        return None if row is None else _loan_from_row(row)

    def list_loans(self, *, user_id: int | None = None, status: LoanStatus | None = None) -> Sequence[Loan]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        conditions: list[str] = []
        params: dict[str, object] = {}

        if user_id is not None:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status.value

        where_sql = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        stmt = text(
            f"""
            SELECT {", ".join(_LOAN_COLUMNS)}
            FROM loans
            {where_sql}
            ORDER BY id ASC
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [_loan_from_row(row) for row in rows]

    def update_loan(self, *, loan: Loan, expected: Loan) -> bool:
        if loan.id is None:
            raise ValueError("loan.id is required")

        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        matches = " AND ".join(f"{name} = :expected_{name}" for name in _LOAN_CAS_COLUMNS)
        stmt = text(
            f"""
            UPDATE loans
            SET {_assignments(_LOAN_COLUMNS)}
            WHERE id = :id
              AND {matches}
              AND last_accrual_at IS NOT DISTINCT FROM :expected_last_accrual_at
            """
        )

        params = _loan_params(loan)
        expected_params = _loan_params(expected)
        for name in (*_LOAN_CAS_COLUMNS, "last_accrual_at"):
            params[f"expected_{name}"] = expected_params[name]
        with engine.begin() as conn:
            result = conn.execute(stmt, params)

        return int(getattr(result, "rowcount", 0) or 0) == 1
