"""BTC-collateralized INR loans."""

from .engine import LoanEngine

__all__ = ["LoanEngine"]
