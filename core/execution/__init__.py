"""Order execution: market orders, limit orders, cancellation and expiry."""

from .engine import OrderExecutionEngine

__all__ = ["OrderExecutionEngine"]
