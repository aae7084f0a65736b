"""
Credits Module

Balance mutations paired with append-only ledger rows, and ledger replay.
"""

from .ledger import (
    adjust_credits,
    grant_credits,
    latest_grant,
    list_transactions,
    record_usage,
    replay_ledger,
    validate_usage_amount,
)

__all__ = [
    'adjust_credits',
    'grant_credits',
    'latest_grant',
    'list_transactions',
    'record_usage',
    'replay_ledger',
    'validate_usage_amount',
]
