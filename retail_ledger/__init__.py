"""
Retail Ledger

The transactional core of a retail banking ledger: accounts, balances and
atomic deposit, withdrawal and transfer operations, with Decimal money,
per-account locking and post-commit audit and low-balance events.
"""

__version__ = "1.0.0"
