"""Versioned engine configuration.

Rate multipliers, loan thresholds and scheduler cadences live in one frozen
struct that is injected into every engine. Risk numbers are therefore
reproducible from a ``(PriceQuote, EngineConfig)`` pair.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Mapping, Optional

ENV_PREFIX = "BITTRADE_"

DCA_POLICY_ADVANCE = "advance"
DCA_POLICY_HOLD = "hold"
DCA_PRICE_BOUND_POLICIES = (DCA_POLICY_ADVANCE, DCA_POLICY_HOLD)


@dataclass(frozen=True)
class EngineConfig:
    """Settings shared by the ledger-facing engines.

    Percentages are whole percents (60 means 60%).
    """

    version: int = 1

    # Oracle: INR rate = BTC/USD * multiplier
    buy_multiplier: int = 91
    sell_multiplier: int = 88
    max_price_age_seconds: int = 120
    oracle_timeout_seconds: float = 10.0

    # Loans
    origination_ltv: int = 60
    liquidation_ltv: int = 90
    medium_risk_ltv: int = 85
    interest_rate: int = 15
    minimum_interest_days: int = 30

    # Limit orders
    limit_order_ttl_seconds: int = 24 * 60 * 60
    max_buy_limit_multiplier: float = 1.5
    min_sell_limit_multiplier: float = 0.5

    # DCA
    dca_price_bound_policy: str = DCA_POLICY_ADVANCE

    # Background loops
    price_tick_seconds: float = 30.0
    dca_tick_seconds: float = 60.0
    interest_accrual_seconds: float = 3600.0
    expiry_sweep_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.dca_price_bound_policy not in DCA_PRICE_BOUND_POLICIES:
            raise ValueError(
                f"dca_price_bound_policy must be one of {DCA_PRICE_BOUND_POLICIES}, "
                f"got {self.dca_price_bound_policy!r}"
            )
        if not 0 < self.origination_ltv < self.liquidation_ltv <= 100:
            raise ValueError("origination_ltv must be positive and below liquidation_ltv (<= 100)")
        if not 0 < self.medium_risk_ltv < self.liquidation_ltv:
            raise ValueError("medium_risk_ltv must be positive and below liquidation_ltv")
        if self.interest_rate < 0:
            raise ValueError("interest_rate must be >= 0")
        if self.buy_multiplier <= 0 or self.sell_multiplier <= 0:
            raise ValueError("rate multipliers must be positive")

    @property
    def limit_order_ttl(self) -> timedelta:
        return timedelta(seconds=self.limit_order_ttl_seconds)

    def with_updates(self, **changes: Any) -> "EngineConfig":
        """Return a copy with `changes` applied and the version bumped."""
        if "version" not in changes:
            changes["version"] = self.version + 1
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from ``BITTRADE_*`` environment variables.

        Unset variables keep their defaults, e.g. ``BITTRADE_INTEREST_RATE=12``.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        overrides: dict[str, Any] = {}
        for name in cls.__dataclass_fields__:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            current = getattr(defaults, name)
            try:
                if isinstance(current, str):
                    overrides[name] = raw.strip().lower()
                elif isinstance(current, float):
                    overrides[name] = float(raw)
                else:
                    overrides[name] = int(raw)
            except ValueError as exc:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from exc
        return cls(**overrides)
