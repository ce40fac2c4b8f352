"""Storage implementations.

Concrete implementations of the persistence interfaces: in-memory stores for
tests and PostgreSQL via SQLAlchemy for deployments.
"""

from .memory_stores import MemoryStores
