"""Balance ledger."""

from .balances import BalanceLedger

__all__ = ["BalanceLedger"]
