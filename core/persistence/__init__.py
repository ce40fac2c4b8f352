"""Persistence interfaces.

These protocols define the persistence boundary. Implementations can be backed by
PostgreSQL (recommended) or kept in memory for tests and single-process use.
"""

from .interfaces import (
    BalanceStore,
    LoanStore,
    OperationStore,
    PlanStore,
)
