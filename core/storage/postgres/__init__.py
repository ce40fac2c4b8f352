"""PostgreSQL persistence (SQLAlchemy Core)."""

from .config import PostgresConfig
from .stores import PostgresStores
