"""Cross-chain transfer workflows.

Only the record types are re-exported here; the ledger imports them, so
pulling the store or the orchestrator in at package level would make
``yieldbridge.ledger`` and ``yieldbridge.transfers`` import each other.
"""

from yieldbridge.transfers.records import Direction, TransferRecord, TransferStatus

__all__ = [
    "Direction",
    "TransferRecord",
    "TransferStatus",
]
