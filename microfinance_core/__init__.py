"""
Microfinance Core

Loan pricing, per-account ledgers and the loan and savings lifecycles of a
microfinance institution, with Decimal money math and hash-chained audit
trails.
"""

__version__ = "1.0.0"
