"""Engine error taxonomy.

Every failure a caller can observe carries a stable ``kind`` so the API layer
can map it to a status code without string matching.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine failures."""

    kind = "EngineError"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class InsufficientFunds(EngineError):
    kind = "InsufficientFunds"


class InvariantViolation(EngineError):
    """A mutation would drive a balance field negative."""

    kind = "InvariantViolation"


class InvalidAmount(EngineError):
    kind = "InvalidAmount"


class StalePrice(EngineError):
    kind = "StalePrice"


class OracleUnavailable(EngineError):
    kind = "OracleUnavailable"


class OrderNotFound(EngineError):
    kind = "OrderNotFound"


class OrderNotCancellable(EngineError):
    kind = "OrderNotCancellable"


class LoanNotFound(EngineError):
    kind = "LoanNotFound"


class NoActiveLoan(EngineError):
    kind = "NoActiveLoan"


class LoanAlreadyActive(EngineError):
    kind = "LoanAlreadyActive"


class LtvExceeded(EngineError):
    kind = "LtvExceeded"


class PlanNotFound(EngineError):
    kind = "PlanNotFound"


class InvalidPlanState(EngineError):
    kind = "InvalidPlanState"


def require_positive_amount(amount: Any, *, name: str = "amount") -> int:
    """Validate an integer subunit amount.

    Raises:
        InvalidAmount: If the value is not an int (bools excluded) or is <= 0
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{name} must be an integer number of subunits", **{name: amount})
    if amount <= 0:
        raise InvalidAmount(f"{name} must be positive", **{name: amount})
    return amount
