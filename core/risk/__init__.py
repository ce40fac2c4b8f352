"""Loan risk module.

Pure integer helpers for LTV, borrowing capacity, liquidation price and
interest.
"""

from .loan_risk import (
    LoanSnapshot,
    available_capacity,
    collateral_value,
    current_ltv,
    daily_interest,
    evaluate_loan,
    is_liquidatable,
    liquidation_price,
    loan_debt,
    loan_ltv,
    max_borrowable,
    minimum_interest_due,
    minimum_interest_floor,
    risk_level,
    total_due,
)

__all__ = [
    # Snapshot
    "LoanSnapshot",
    "evaluate_loan",
    # LTV
    "collateral_value",
    "current_ltv",
    "loan_debt",
    "loan_ltv",
    "max_borrowable",
    "available_capacity",
    "liquidation_price",
    "risk_level",
    "is_liquidatable",
    # Interest
    "daily_interest",
    "minimum_interest_floor",
    "minimum_interest_due",
    "total_due",
]
