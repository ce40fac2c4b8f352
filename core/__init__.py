"""Core domain modules for the BTC/INR trading platform.

- ledger: per-user balances with a commit log (available and reserved funds)
- market_data: BTC price oracle and INR buy/sell rates
- risk: loan-to-value, liquidation price and interest helpers
- execution: market and limit order execution
- dca: recurring buy/sell plans
- loans: BTC-collateralized INR loans
- scheduling: background loops (price monitor, DCA, interest, expiry)
- persistence: persistence boundary (interfaces)
- storage: in-memory and PostgreSQL implementations
"""
