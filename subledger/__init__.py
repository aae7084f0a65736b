"""Subledger package initialization.

Subscription lifecycle and credit-ledger reconciliation service.
"""

__version__ = '0.1.0'
