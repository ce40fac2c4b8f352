"""Loan engine.

Lifecycle of the single over-collateralised INR loan a user may hold:
collateral deposit, borrowing, repayment, collateral top-up, partial and
full liquidation, and daily interest accrual.

Every mutation follows the same order: validate under the user lock, store
the new loan state with a compare-and-set on the row as it was read, record the
operation, then commit the balance deltas.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Sequence

from core.config import EngineConfig
from core.errors import (
    EngineError,
    InvalidAmount,
    InvariantViolation,
    LoanAlreadyActive,
    LoanNotFound,
    LtvExceeded,
    NoActiveLoan,
    require_positive_amount,
)
from core.execution.order_book import inr_for_btc
from core.ledger.balances import BalanceLedger
from core.market_data.oracle import PriceOracle, require_fresh_quote
from core.persistence.interfaces import LoanStore, OperationStore
from core.risk.loan_risk import (
    LoanSnapshot,
    available_capacity,
    daily_interest,
    evaluate_loan,
    is_liquidatable,
    liquidation_price,
    loan_ltv,
    minimum_interest_due,
    total_due,
)
from core.types import (
    Currency,
    Loan,
    LoanStatus,
    Operation,
    OperationStatus,
    OperationType,
    PriceQuote,
    utc_now,
)

logger = logging.getLogger(__name__)

LOAN_OPERATION_TYPES = (
    OperationType.LOAN_CREATE,
    OperationType.LOAN_BORROW,
    OperationType.LOAN_REPAY,
    OperationType.LOAN_ADD_COLLATERAL,
    OperationType.INTEREST_ACCRUAL,
    OperationType.PARTIAL_LIQUIDATION,
    OperationType.FULL_LIQUIDATION,
)


def _with_liquidation_price(loan: Loan, config: EngineConfig) -> Loan:
    return replace(
        loan,
        liquidation_price=liquidation_price(loan.debt, loan.btc_collateral_amount, config.liquidation_ltv),
    )


def _apply_payment(loan: Loan, amount: int) -> tuple[Loan, int, int, int]:
    """Pay interest first, then principal.

    Returns:
        (updated loan, interest paid, principal paid, unused remainder)
    """
    interest_part = min(amount, loan.interest_accrued)
    principal_part = min(amount - interest_part, loan.inr_borrowed_amount)
    updated = replace(
        loan,
        interest_accrued=loan.interest_accrued - interest_part,
        interest_paid=loan.interest_paid + interest_part,
        inr_borrowed_amount=loan.inr_borrowed_amount - principal_part,
    )
    return updated, interest_part, principal_part, amount - interest_part - principal_part


class LoanEngine:
    """Loan lifecycle against the balance ledger."""

    def __init__(
        self,
        *,
        ledger: BalanceLedger,
        loans: LoanStore,
        operations: OperationStore,
        oracle: PriceOracle,
        config: EngineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._loans = loans
        self._operations = operations
        self._oracle = oracle
        self._config = config
        self._clock = clock

    def _quote(self, quote: Optional[PriceQuote]) -> PriceQuote:
        quote = quote if quote is not None else self._oracle.get_rate()
        return require_fresh_quote(quote, self._config, now=self._clock())

    def _require_active(self, user_id: int) -> Loan:
        loan = self._loans.get_active_loan(user_id=user_id)
        if loan is None:
            raise NoActiveLoan(f"User {user_id} has no active loan", user_id=user_id)
        return loan

    def _store(self, updated: Loan, expected: Loan) -> None:
        """Replace the stored loan, failing if it no longer equals `expected`."""
        if not self._loans.update_loan(loan=updated, expected=expected):
            raise InvariantViolation(
                f"Loan {updated.id} changed since it was read",
                loan_id=updated.id,
            )

    def _record(
        self,
        user_id: int,
        op_type: OperationType,
        deltas: Mapping[str, int],
        *,
        loan_id: Optional[int],
        inr_amount: int = 0,
        btc_amount: int = 0,
        execution_price: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Operation:
        """Store an EXECUTED operation and commit its deltas (caller holds the user lock)."""
        after = self._ledger.preview(user_id, deltas)
        now = self._clock()
        operation = self._operations.add_operation(
            operation=Operation(
                user_id=user_id,
                type=op_type,
                status=OperationStatus.EXECUTED,
                inr_amount=inr_amount,
                btc_amount=btc_amount,
                execution_price=execution_price,
                loan_id=loan_id,
                notes=notes,
                created_at=now,
                executed_at=now,
                inr_balance_after=after.inr_balance,
                btc_balance_after=after.btc_balance,
            )
        )
        self._ledger.commit(user_id, deltas, kind=op_type.value, operation_id=operation.id)
        return operation

    def _materialise_minimum_interest(self, loan: Loan, payment: Optional[int] = None) -> tuple[Loan, int]:
        """Top outstanding interest up to the 30-day minimum charge.

        With a `payment`, only the part of it left over after the current
        debt is charged against the minimum.

        Returns the loan as it must be stored and the top-up amount; the
        caller stores the loan and then calls :meth:`_record_top_up`.
        """
        top_up = minimum_interest_due(loan, self._config) - loan.interest_accrued
        if payment is not None:
            top_up = min(top_up, payment - loan.debt)
        if top_up <= 0:
            return loan, 0
        return replace(loan, interest_accrued=loan.interest_accrued + top_up), top_up

    def _record_top_up(self, loan: Loan, top_up: int, reason: str) -> None:
        if top_up <= 0:
            return
        self._record(
            loan.user_id,
            OperationType.INTEREST_ACCRUAL,
            {"interest_accrued": top_up},
            loan_id=loan.id,
            inr_amount=top_up,
            notes=reason,
        )
        logger.info("Applied %s minimum interest to loan #%s (%s)", top_up, loan.id, reason)

    # ---- Collateral

    def deposit_collateral(self, user_id: int, btc_amount: int) -> Loan:
        """Open a loan by moving BTC from available to collateral.

        Raises:
            LoanAlreadyActive: The user already has an ACTIVE loan
            InsufficientFunds: available_btc below `btc_amount`
        """
        require_positive_amount(btc_amount, name="btc_amount")
        with self._ledger.user_lock(user_id):
            existing = self._loans.get_active_loan(user_id=user_id)
            if existing is not None:
                raise LoanAlreadyActive(
                    f"User {user_id} already has active loan {existing.id}; add collateral instead",
                    loan_id=existing.id,
                )
            self._ledger.ensure_available(user_id, Currency.BTC, btc_amount)
            deltas = {"available_btc": -btc_amount, "collateral_btc": btc_amount}
            self._ledger.preview(user_id, deltas)

            now = self._clock()
            loan = self._loans.add_loan(
                loan=Loan(
                    user_id=user_id,
                    btc_collateral_amount=btc_amount,
                    interest_rate=self._config.interest_rate,
                    ltv_ratio=self._config.origination_ltv,
                    created_at=now,
                    last_accrual_at=now,
                )
            )
            self._record(user_id, OperationType.LOAN_CREATE, deltas, loan_id=loan.id, btc_amount=btc_amount)

        logger.info("Opened loan #%s user=%s collateral=%s sat", loan.id, user_id, btc_amount)
        return loan

    def add_collateral(self, user_id: int, btc_amount: int) -> Loan:
        """Move more BTC into the active loan's collateral."""
        require_positive_amount(btc_amount, name="btc_amount")
        with self._ledger.user_lock(user_id):
            loan = self._require_active(user_id)
            self._ledger.ensure_available(user_id, Currency.BTC, btc_amount)
            deltas = {"available_btc": -btc_amount, "collateral_btc": btc_amount}
            self._ledger.preview(user_id, deltas)

            updated = _with_liquidation_price(
                replace(loan, btc_collateral_amount=loan.btc_collateral_amount + btc_amount), self._config
            )
            self._store(updated, loan)
            self._record(user_id, OperationType.LOAN_ADD_COLLATERAL, deltas, loan_id=loan.id, btc_amount=btc_amount)

        logger.info("Added %s sat collateral to loan #%s", btc_amount, loan.id)
        return updated

    # ---- Borrow / repay

    def borrow(self, user_id: int, inr_amount: int, *, quote: Optional[PriceQuote] = None) -> Loan:
        """Draw INR against the collateral.

        Raises:
            LtvExceeded: `inr_amount` above max_borrowable - current debt
        """
        require_positive_amount(inr_amount, name="inr_amount")
        quote = self._quote(quote)
        with self._ledger.user_lock(user_id):
            loan = self._require_active(user_id)
            capacity = available_capacity(loan, quote.sell_rate, self._config.origination_ltv)
            if inr_amount > capacity:
                raise LtvExceeded(
                    f"Insufficient borrowing capacity. Available: ₹{capacity}",
                    available_capacity=capacity,
                    requested=inr_amount,
                )

            deltas = {"borrowed_inr": inr_amount, "available_inr": inr_amount}
            self._ledger.preview(user_id, deltas)
            now = self._clock()
            updated = _with_liquidation_price(
                replace(
                    loan,
                    inr_borrowed_amount=loan.inr_borrowed_amount + inr_amount,
                    total_borrowed=loan.total_borrowed + inr_amount,
                    # Interest runs from the first draw, not from the deposit.
                    last_accrual_at=now if loan.inr_borrowed_amount == 0 else loan.last_accrual_at,
                ),
                self._config,
            )
            self._store(updated, loan)
            self._record(
                user_id,
                OperationType.LOAN_BORROW,
                deltas,
                loan_id=loan.id,
                inr_amount=inr_amount,
                execution_price=quote.sell_rate,
            )

        logger.info("Loan #%s borrowed ₹%s (capacity was ₹%s)", loan.id, inr_amount, capacity)
        return updated

    def repay(self, user_id: int, inr_amount: int) -> Loan:
        """Repay interest first, then principal.

        Paying the full total due closes the loan as REPAID and returns the
        collateral to available_btc.

        Raises:
            InvalidAmount: `inr_amount` above total due
            InsufficientFunds: available_inr below `inr_amount`
        """
        require_positive_amount(inr_amount, name="inr_amount")
        with self._ledger.user_lock(user_id):
            stored = self._require_active(user_id)
            due = total_due(stored, self._config)
            if inr_amount > due:
                raise InvalidAmount(
                    f"Repay amount exceeds total amount due. Maximum repayment: ₹{due}",
                    total_due=due,
                )
            self._ledger.ensure_available(user_id, Currency.INR, inr_amount)

            loan, top_up = self._materialise_minimum_interest(stored, payment=inr_amount)
            paid, interest_part, principal_part, _ = _apply_payment(loan, inr_amount)
            deltas: dict[str, int] = {
                "available_inr": -inr_amount,
                "interest_accrued": -interest_part,
                "borrowed_inr": -principal_part,
            }

            now = self._clock()
            fully_repaid = total_due(paid, self._config) == 0
            if fully_repaid:
                deltas["collateral_btc"] = -paid.btc_collateral_amount
                deltas["available_btc"] = paid.btc_collateral_amount
                paid = replace(paid, btc_collateral_amount=0, status=LoanStatus.REPAID, closed_at=now)
            updated = _with_liquidation_price(paid, self._config)

            self._store(updated, stored)
            self._record_top_up(loan, top_up, "30-day minimum interest charge applied")
            self._record(
                user_id,
                OperationType.LOAN_REPAY,
                deltas,
                loan_id=loan.id,
                inr_amount=inr_amount,
                btc_amount=deltas.get("available_btc", 0),
                notes="Complete loan repayment and collateral release" if fully_repaid else "Partial loan repayment",
            )

        logger.info(
            "Loan #%s repaid ₹%s (interest=%s principal=%s)%s",
            loan.id,
            inr_amount,
            interest_part,
            principal_part,
            " - closed" if fully_repaid else "",
        )
        return updated

    # ---- Liquidation

    def partial_liquidate(self, user_id: int, btc_amount: int, *, quote: Optional[PriceQuote] = None) -> Loan:
        """Sell part of the collateral at the sell rate to pay down debt.

        Proceeds pay interest first, then principal; any surplus goes to
        available_inr. If nothing remains due the loan is REPAID and the
        remaining collateral is released.

        Raises:
            InvalidAmount: Amount above collateral, proceeds below ₹1, or
                selling all collateral for less than the total due
        """
        require_positive_amount(btc_amount, name="btc_amount")
        quote = self._quote(quote)
        with self._ledger.user_lock(user_id):
            stored = self._require_active(user_id)
            if btc_amount > stored.btc_collateral_amount:
                raise InvalidAmount(
                    f"Cannot sell {btc_amount} sat; collateral is {stored.btc_collateral_amount} sat",
                    collateral=stored.btc_collateral_amount,
                )
            proceeds = inr_for_btc(btc_amount, quote.sell_rate)
            if proceeds <= 0:
                raise InvalidAmount(f"{btc_amount} sat sells for less than ₹1", btc_amount=btc_amount)
            due = total_due(stored, self._config)
            if btc_amount == stored.btc_collateral_amount and proceeds < due:
                raise InvalidAmount(
                    "Selling all collateral would not clear the debt; use full liquidation",
                    proceeds=proceeds,
                    total_due=due,
                )

            loan, top_up = self._materialise_minimum_interest(stored, payment=proceeds)

            paid, interest_part, principal_part, surplus = _apply_payment(loan, proceeds)
            remaining_collateral = loan.btc_collateral_amount - btc_amount
            deltas: dict[str, int] = {
                "collateral_btc": -btc_amount,
                "interest_accrued": -interest_part,
                "borrowed_inr": -principal_part,
                "available_inr": surplus,
            }

            now = self._clock()
            paid = replace(paid, btc_collateral_amount=remaining_collateral)
            fully_repaid = total_due(paid, self._config) == 0
            if fully_repaid:
                deltas["collateral_btc"] -= remaining_collateral
                deltas["available_btc"] = remaining_collateral
                paid = replace(paid, btc_collateral_amount=0, status=LoanStatus.REPAID, closed_at=now)
            updated = _with_liquidation_price(paid, self._config)

            notes = json.dumps(
                {
                    "description": "User partial liquidation",
                    "btc_sold": btc_amount,
                    "proceeds": proceeds,
                    "interest_paid": interest_part,
                    "principal_paid": principal_part,
                    "surplus": surplus,
                    "collateral_released": remaining_collateral if fully_repaid else 0,
                    "sell_rate": quote.sell_rate,
                }
            )
            self._store(updated, stored)
            self._record_top_up(loan, top_up, "30-day minimum interest charge applied before partial liquidation")
            self._record(
                user_id,
                OperationType.PARTIAL_LIQUIDATION,
                deltas,
                loan_id=loan.id,
                inr_amount=proceeds,
                btc_amount=btc_amount,
                execution_price=quote.sell_rate,
                notes=notes,
            )

        logger.info("Loan #%s partially liquidated %s sat for ₹%s", loan.id, btc_amount, proceeds)
        return updated

    def full_liquidate(
        self,
        user_id: int,
        *,
        quote: Optional[PriceQuote] = None,
        reason: str = "admin",
    ) -> Loan:
        """Sell all collateral and close the loan as LIQUIDATED.

        The ACTIVE -> LIQUIDATED transition is stored before any balance
        moves. Proceeds pay interest, then principal; surplus goes to
        available_inr and any shortfall is written off.
        """
        quote = self._quote(quote)
        with self._ledger.user_lock(user_id):
            loan = self._require_active(user_id)
            return self._liquidate(loan, quote, reason)

    def _liquidate(self, stored: Loan, quote: PriceQuote, reason: str) -> Loan:
        ltv = loan_ltv(stored, quote.sell_rate)
        loan, top_up = self._materialise_minimum_interest(stored)
        collateral = loan.btc_collateral_amount
        proceeds = inr_for_btc(collateral, quote.sell_rate)
        paid, interest_part, principal_part, surplus = _apply_payment(loan, proceeds)
        shortfall = paid.debt

        now = self._clock()
        liquidated = replace(
            paid,
            btc_collateral_amount=0,
            inr_borrowed_amount=0,
            interest_accrued=0,
            liquidation_price=0,
            status=LoanStatus.LIQUIDATED,
            closed_at=now,
        )
        self._store(liquidated, stored)

        deltas = {
            "collateral_btc": -collateral,
            "interest_accrued": -loan.interest_accrued,
            "borrowed_inr": -loan.inr_borrowed_amount,
            "available_inr": surplus,
        }
        notes = json.dumps(
            {
                "description": "Full liquidation",
                "reason": reason,
                "ltv": None if not ltv.is_finite() else float(round(ltv, 2)),
                "btc_sold": collateral,
                "proceeds": proceeds,
                "interest_paid": interest_part,
                "principal_paid": principal_part,
                "surplus": surplus,
                "shortfall_written_off": shortfall,
                "minimum_interest_applied": top_up,
                "sell_rate": quote.sell_rate,
            }
        )
        self._record_top_up(loan, top_up, "30-day minimum interest charge applied before full liquidation")
        self._record(
            loan.user_id,
            OperationType.FULL_LIQUIDATION,
            deltas,
            loan_id=loan.id,
            inr_amount=proceeds,
            btc_amount=collateral,
            execution_price=quote.sell_rate,
            notes=notes,
        )

        if shortfall:
            logger.warning("Loan #%s liquidated with ₹%s shortfall written off", loan.id, shortfall)
        logger.info(
            "Loan #%s fully liquidated (%s): sold %s sat at %s for ₹%s",
            loan.id,
            reason,
            collateral,
            quote.sell_rate,
            proceeds,
        )
        return liquidated

    def check_liquidations(self, quote: Optional[PriceQuote] = None) -> list[Loan]:
        """Liquidate every ACTIVE loan whose LTV reached the liquidation threshold.

        Failures are logged and retried on the next tick.
        """
        quote = self._quote(quote)
        liquidated: list[Loan] = []
        for candidate in self._loans.list_loans(status=LoanStatus.ACTIVE):
            if not is_liquidatable(loan_ltv(candidate, quote.sell_rate), self._config.liquidation_ltv):
                continue
            try:
                with self._ledger.user_lock(candidate.user_id):
                    loan = self._loans.get_active_loan(user_id=candidate.user_id)
                    if loan is None or loan.id != candidate.id:
                        continue
                    ltv = loan_ltv(loan, quote.sell_rate)
                    if not is_liquidatable(ltv, self._config.liquidation_ltv):
                        continue
                    liquidated.append(self._liquidate(loan, quote, f"LTV {float(ltv):.2f}% >= {self._config.liquidation_ltv}%"))
            except EngineError as e:
                logger.error("Failed to liquidate loan #%s: %s", candidate.id, e)

        if liquidated:
            logger.warning("Liquidated %d loan(s) at sell rate %s", len(liquidated), quote.sell_rate)
        return liquidated

    # ---- Interest

    def accrue_interest(self, now: Optional[datetime] = None) -> list[Operation]:
        """Add simple daily interest for each whole day since the last accrual."""
        now = now or self._clock()
        recorded: list[Operation] = []
        for candidate in self._loans.list_loans(status=LoanStatus.ACTIVE):
            try:
                operation = self._accrue_one(candidate.user_id, candidate.id, now)
            except EngineError as e:
                logger.error("Interest accrual failed for loan #%s: %s", candidate.id, e)
                continue
            if operation is not None:
                recorded.append(operation)

        if recorded:
            logger.info("Accrued interest on %d loan(s)", len(recorded))
        return recorded

    def _accrue_one(self, user_id: int, loan_id: Optional[int], now: datetime) -> Optional[Operation]:
        with self._ledger.user_lock(user_id):
            loan = self._loans.get_active_loan(user_id=user_id)
            if loan is None or loan.id != loan_id or loan.inr_borrowed_amount <= 0:
                return None
            last = loan.last_accrual_at or loan.created_at
            days = (now - last).days
            if days < 1:
                return None

            per_day = daily_interest(loan.inr_borrowed_amount, loan.interest_rate)
            interest = per_day * days
            updated = _with_liquidation_price(
                replace(
                    loan,
                    interest_accrued=loan.interest_accrued + interest,
                    last_accrual_at=last + timedelta(days=days),
                ),
                self._config,
            )
            self._store(updated, loan)
            if interest <= 0:
                return None
            return self._record(
                user_id,
                OperationType.INTEREST_ACCRUAL,
                {"interest_accrued": interest},
                loan_id=loan.id,
                inr_amount=interest,
                notes=f"{days} day(s) at {loan.interest_rate}% on ₹{loan.inr_borrowed_amount}",
            )

    # ---- Queries

    def get_active_loan(self, user_id: int) -> Optional[Loan]:
        return self._loans.get_active_loan(user_id=user_id)

    def get_loan_status(self, user_id: int, *, quote: Optional[PriceQuote] = None) -> dict[str, object]:
        """Loan row plus its risk snapshot at the current sell rate."""
        loan = self._require_active(user_id)
        snapshot = self.evaluate(loan, quote=quote)
        return {"loan": loan.to_dict(), "risk": snapshot.to_dict()}

    def evaluate(self, loan: Loan, *, quote: Optional[PriceQuote] = None) -> LoanSnapshot:
        quote = self._quote(quote)
        return evaluate_loan(loan, quote.sell_rate, self._config)

    def get_loan_history(self, user_id: int, loan_id: Optional[int] = None) -> Sequence[Operation]:
        if loan_id is not None:
            loan = self._loans.get_loan(loan_id=loan_id)
            if loan is None or loan.user_id != user_id:
                raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return self._operations.list_operations(user_id=user_id, types=LOAN_OPERATION_TYPES, loan_id=loan_id)

    def list_loans(self, user_id: int) -> Sequence[Loan]:
        return self._loans.list_loans(user_id=user_id)
