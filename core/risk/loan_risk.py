"""Loan risk evaluation.

Pure functions over integers and Decimals: no I/O and no mutation.
Prices are INR per whole BTC, collateral is satoshis, debt is rupees.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from core.config import EngineConfig
from core.types import SATOSHIS_PER_BTC, Loan, RiskLevel

INFINITE_LTV = Decimal("Infinity")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def collateral_value(collateral_btc: int, price: int) -> int:
    """INR value of `collateral_btc` satoshis at `price` (floored)."""
    return collateral_btc * price // SATOSHIS_PER_BTC


def current_ltv(debt: int, collateral_btc: int, price: int) -> Decimal:
    """Loan-to-value as a percentage.

    Returns 0 when there is no debt and Infinity when debt exists but the
    collateral is worth nothing.
    """
    if debt <= 0:
        return Decimal(0)
    value = Decimal(collateral_btc) * Decimal(price) / SATOSHIS_PER_BTC
    if value <= 0:
        return INFINITE_LTV
    return Decimal(debt) / value * 100


def loan_debt(loan: Loan) -> int:
    """Outstanding principal plus accrued interest."""
    return loan.inr_borrowed_amount + loan.interest_accrued


def loan_ltv(loan: Loan, price: int) -> Decimal:
    return current_ltv(loan_debt(loan), loan.btc_collateral_amount, price)


def max_borrowable(collateral_btc: int, price: int, origination_ltv: int = 60) -> int:
    """floor(collateral * price / 1e8 * origination_ltv%)."""
    if collateral_btc <= 0 or price <= 0:
        return 0
    return collateral_btc * price * origination_ltv // (SATOSHIS_PER_BTC * 100)


def available_capacity(loan: Loan, price: int, origination_ltv: int = 60) -> int:
    """How much more INR the loan can draw before hitting the origination cap."""
    return max(0, max_borrowable(loan.btc_collateral_amount, price, origination_ltv) - loan_debt(loan))


def liquidation_price(debt: int, collateral_btc: int, liquidation_ltv: int = 90) -> int:
    """BTC price at which the loan's LTV reaches `liquidation_ltv`.

    ceil(debt / (collateral / 1e8 * liquidation_ltv%)); 0 when there is no
    debt or no collateral.
    """
    if debt <= 0 or collateral_btc <= 0:
        return 0
    numerator = debt * SATOSHIS_PER_BTC * 100
    denominator = collateral_btc * liquidation_ltv
    return -(-numerator // denominator)


def daily_interest(principal: int, interest_rate: int) -> int:
    """Simple daily interest: round(principal * rate / 36500)."""
    if principal <= 0 or interest_rate <= 0:
        return 0
    return _round_half_up(Decimal(principal) * interest_rate / 36500)


def minimum_interest_floor(total_borrowed: int, interest_rate: int, days: int = 30) -> int:
    """Interest owed over `days` on everything ever drawn."""
    if total_borrowed <= 0 or interest_rate <= 0:
        return 0
    return _round_half_up(Decimal(total_borrowed) * interest_rate * days / (100 * 365))


def minimum_interest_due(loan: Loan, config: Optional[EngineConfig] = None) -> int:
    """Outstanding interest, never less than the 30-day minimum charge.

    max(interest_accrued, floor - interest_paid, 0)
    """
    days = config.minimum_interest_days if config is not None else 30
    floor = minimum_interest_floor(loan.total_borrowed, loan.interest_rate, days)
    return max(loan.interest_accrued, floor - loan.interest_paid, 0)


def total_due(loan: Loan, config: Optional[EngineConfig] = None) -> int:
    """Amount that fully settles the loan right now."""
    return loan.inr_borrowed_amount + minimum_interest_due(loan, config)


def risk_level(ltv: Decimal, medium_ltv: int = 85, liquidation_ltv: int = 90) -> RiskLevel:
    if ltv >= liquidation_ltv:
        return RiskLevel.HIGH
    if ltv >= medium_ltv:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_liquidatable(ltv: Decimal, liquidation_ltv: int = 90) -> bool:
    return ltv >= liquidation_ltv


@dataclass(frozen=True)
class LoanSnapshot:
    """Read-only risk view of a loan at one price."""

    loan_id: Optional[int]
    price: int
    collateral_btc: int
    collateral_value_inr: int
    debt: int
    ltv: Decimal
    risk_level: RiskLevel
    liquidation_price: int
    max_borrowable: int
    available_capacity: int
    minimum_interest_due: int
    total_due: int

    @property
    def liquidatable(self) -> bool:
        return self.risk_level is RiskLevel.HIGH

    def to_dict(self) -> dict[str, object]:
        ltv = None if not self.ltv.is_finite() else float(self.ltv.quantize(Decimal("0.01")))
        return {
            "loan_id": self.loan_id,
            "price": self.price,
            "collateral_btc": self.collateral_btc,
            "collateral_value_inr": self.collateral_value_inr,
            "debt": self.debt,
            "ltv": ltv,
            "risk_level": self.risk_level.value,
            "liquidation_price": self.liquidation_price,
            "max_borrowable": self.max_borrowable,
            "available_capacity": self.available_capacity,
            "minimum_interest_due": self.minimum_interest_due,
            "total_due": self.total_due,
        }


def evaluate_loan(loan: Loan, price: int, config: EngineConfig) -> LoanSnapshot:
    """Compute every risk figure for `loan` at `price` (the sell rate)."""
    ltv = loan_ltv(loan, price)
    return LoanSnapshot(
        loan_id=loan.id,
        price=price,
        collateral_btc=loan.btc_collateral_amount,
        collateral_value_inr=collateral_value(loan.btc_collateral_amount, price),
        debt=loan_debt(loan),
        ltv=ltv,
        risk_level=risk_level(ltv, config.medium_risk_ltv, config.liquidation_ltv),
        liquidation_price=liquidation_price(loan_debt(loan), loan.btc_collateral_amount, config.liquidation_ltv),
        max_borrowable=max_borrowable(loan.btc_collateral_amount, price, config.origination_ltv),
        available_capacity=available_capacity(loan, price, config.origination_ltv),
        minimum_interest_due=minimum_interest_due(loan, config),
        total_due=total_due(loan, config),
    )
