from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class PostgresConfig:
    """Connection configuration.

    `database_url` should come from environment (e.g. DATABASE_URL).
    Do not log it.
    """

    database_url: str

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Optional["PostgresConfig"]:
        """Return a config when DATABASE_URL is set, else None."""
        env = os.environ if environ is None else environ
        url = (env.get("DATABASE_URL") or "").strip()
        return cls(database_url=url) if url else None
