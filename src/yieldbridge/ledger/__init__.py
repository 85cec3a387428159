"""Ledger module for durable transfer records."""

from yieldbridge.ledger.database import Database
from yieldbridge.ledger.models import Base, TransferRow
from yieldbridge.ledger.repository import TransferRepository

__all__ = [
    "Base",
    "Database",
    "TransferRepository",
    "TransferRow",
]
