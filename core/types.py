from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional

# All BTC amounts are integer satoshis, all INR amounts integer rupees.
SATOSHIS_PER_BTC = 100_000_000


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


class Currency(str, Enum):
    INR = "INR"
    BTC = "BTC"


class OperationType(str, Enum):
    """Canonical tag for every ledger-affecting action."""

    MARKET_BUY = "MARKET_BUY"
    MARKET_SELL = "MARKET_SELL"
    LIMIT_BUY = "LIMIT_BUY"
    LIMIT_SELL = "LIMIT_SELL"
    DCA_BUY = "DCA_BUY"
    DCA_SELL = "DCA_SELL"
    LOAN_CREATE = "LOAN_CREATE"
    LOAN_BORROW = "LOAN_BORROW"
    LOAN_REPAY = "LOAN_REPAY"
    LOAN_ADD_COLLATERAL = "LOAN_ADD_COLLATERAL"
    PARTIAL_LIQUIDATION = "PARTIAL_LIQUIDATION"
    FULL_LIQUIDATION = "FULL_LIQUIDATION"
    INTEREST_ACCRUAL = "INTEREST_ACCRUAL"
    DEPOSIT_INR = "DEPOSIT_INR"
    DEPOSIT_BTC = "DEPOSIT_BTC"
    WITHDRAW_INR = "WITHDRAW_INR"
    WITHDRAW_BTC = "WITHDRAW_BTC"

    @classmethod
    def parse(cls, value: "str | OperationType") -> "OperationType":
        """Parse a tag, mapping the legacy BUY/SELL names onto market orders."""
        if isinstance(value, OperationType):
            return value
        normalized = str(value).strip().upper()
        normalized = _LEGACY_OPERATION_TYPES.get(normalized, normalized)
        return cls(normalized)

    @property
    def is_buy(self) -> bool:
        return self in (OperationType.MARKET_BUY, OperationType.LIMIT_BUY, OperationType.DCA_BUY)

    @property
    def is_sell(self) -> bool:
        return self in (OperationType.MARKET_SELL, OperationType.LIMIT_SELL, OperationType.DCA_SELL)

    @property
    def is_limit(self) -> bool:
        return self in (OperationType.LIMIT_BUY, OperationType.LIMIT_SELL)


_LEGACY_OPERATION_TYPES = {
    "BUY": "MARKET_BUY",
    "SELL": "MARKET_SELL",
}

MARKET_ORDER_TYPES = frozenset(
    {OperationType.MARKET_BUY, OperationType.MARKET_SELL, OperationType.DCA_BUY, OperationType.DCA_SELL}
)


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.PENDING


class PlanType(str, Enum):
    DCA_BUY = "DCA_BUY"
    DCA_SELL = "DCA_SELL"

    @property
    def operation_type(self) -> OperationType:
        return OperationType(self.value)


class PlanFrequency(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    def advance(self, moment: datetime) -> datetime:
        """Return the next execution time one interval after `moment`."""
        if self is PlanFrequency.HOURLY:
            return moment + timedelta(hours=1)
        if self is PlanFrequency.DAILY:
            return moment + timedelta(days=1)
        if self is PlanFrequency.WEEKLY:
            return moment + timedelta(days=7)
        return _add_month(moment)


def _add_month(moment: datetime) -> datetime:
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    # Clamp e.g. Jan 31 -> Feb 28/29
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REPAID = "REPAID"
    LIQUIDATED = "LIQUIDATED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


BALANCE_FIELDS = (
    "available_inr",
    "available_btc",
    "reserved_inr",
    "reserved_btc",
    "collateral_btc",
    "borrowed_inr",
    "interest_accrued",
)


@dataclass(frozen=True)
class UserBalance:
    """Authoritative fund state for one user (written only by the ledger)."""

    user_id: int
    available_inr: int = 0
    available_btc: int = 0
    reserved_inr: int = 0
    reserved_btc: int = 0
    collateral_btc: int = 0
    borrowed_inr: int = 0
    interest_accrued: int = 0

    @property
    def inr_balance(self) -> int:
        """Spendable plus reserved INR."""
        return self.available_inr + self.reserved_inr

    @property
    def btc_balance(self) -> int:
        """Spendable plus reserved BTC (satoshis)."""
        return self.available_btc + self.reserved_btc

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in ("user_id", *BALANCE_FIELDS)}


@dataclass(frozen=True)
class LedgerEvent:
    """Immutable record appended once per committed ledger mutation."""

    user_id: int
    kind: str
    deltas: Mapping[str, int]
    balance_after: UserBalance
    operation_id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    seq: Optional[int] = None


@dataclass(frozen=True)
class PriceQuote:
    """Rates in INR per whole BTC as supplied by the price oracle."""

    buy_rate: int
    sell_rate: int
    btc_usd: int
    timestamp: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()


@dataclass(frozen=True)
class Operation:
    user_id: int
    type: OperationType
    status: OperationStatus
    inr_amount: int = 0
    btc_amount: int = 0
    execution_price: Optional[int] = None
    limit_price: Optional[int] = None
    parent_id: Optional[int] = None
    loan_id: Optional[int] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    inr_balance_after: Optional[int] = None
    btc_balance_after: Optional[int] = None
    id: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "status": self.status.value,
            "inr_amount": self.inr_amount,
            "btc_amount": self.btc_amount,
            "execution_price": self.execution_price,
            "limit_price": self.limit_price,
            "parent_id": self.parent_id,
            "loan_id": self.loan_id,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "executed_at": _iso(self.executed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "expires_at": _iso(self.expires_at),
            "inr_balance_after": self.inr_balance_after,
            "btc_balance_after": self.btc_balance_after,
        }


@dataclass(frozen=True)
class ActivePlan:
    """Recurring DCA instruction owned by the DCA scheduler."""

    user_id: int
    plan_type: PlanType
    frequency: PlanFrequency
    amount_per_execution: int
    next_execution_at: datetime
    status: PlanStatus = PlanStatus.ACTIVE
    remaining_executions: Optional[int] = None  # None = unlimited
    total_executions: int = 0
    max_price: Optional[int] = None
    min_price: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_type": self.plan_type.value,
            "frequency": self.frequency.value,
            "amount_per_execution": self.amount_per_execution,
            "next_execution_at": _iso(self.next_execution_at),
            "status": self.status.value,
            "remaining_executions": self.remaining_executions,
            "total_executions": self.total_executions,
            "max_price": self.max_price,
            "min_price": self.min_price,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(frozen=True)
class Loan:
    """Over-collateralised INR loan backed by BTC.

    `inr_borrowed_amount` is outstanding principal and `interest_accrued`
    is outstanding interest; they are paid down interest first.
    """

    user_id: int
    btc_collateral_amount: int
    interest_rate: int  # percent per year
    ltv_ratio: int  # origination cap, percent
    inr_borrowed_amount: int = 0
    interest_accrued: int = 0
    interest_paid: int = 0
    total_borrowed: int = 0
    liquidation_price: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    last_accrual_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def debt(self) -> int:
        """Outstanding principal plus accrued interest."""
        return self.inr_borrowed_amount + self.interest_accrued

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "btc_collateral_amount": self.btc_collateral_amount,
            "inr_borrowed_amount": self.inr_borrowed_amount,
            "interest_accrued": self.interest_accrued,
            "interest_paid": self.interest_paid,
            "total_borrowed": self.total_borrowed,
            "interest_rate": self.interest_rate,
            "ltv_ratio": self.ltv_ratio,
            "liquidation_price": self.liquidation_price,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "last_accrual_at": _iso(self.last_accrual_at),
            "closed_at": _iso(self.closed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
