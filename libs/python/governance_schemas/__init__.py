"""Shared schema exports."""

from .account import AccountStatusView
from .backfill import AddressBackfillRequest, AddressBackfillSummary

__all__ = [
    "AccountStatusView",
    "AddressBackfillRequest",
    "AddressBackfillSummary",
]
