"""Error taxonomy shared by the transfer components.

Lower layers (registry, locator, attestation, chain client, store) raise
these; only the orchestrator turns a failure into a ``failed`` record.
"""

from typing import Optional, Sequence


class TransferError(Exception):
    """Base class for all transfer errors."""

    pass


class ValidationError(TransferError):
    """Bad input, rejected before any state is created."""

    pass


class NotFoundError(TransferError):
    """No such record, or no position for the user."""

    pass


class TransientExternalError(TransferError):
    """External failure that is worth retrying later."""

    pass


class TerminalExternalError(TransferError):
    """External failure that will not resolve by retrying."""

    pass


class PersistenceUnavailable(TransferError):
    """The durable store could not be reached."""

    pass


class InvalidTransitionError(TransferError):
    """A patch breaks the state graph or a write-once field."""

    pass


class StaleTransitionError(TransferError):
    """The record's status moved before a conditional transition landed."""

    def __init__(self, record_id: str, expected: str, actual: str):
        super().__init__(
            f"Transfer {record_id} is in status {actual}, expected {expected}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


# Attestation service


class AttestationServiceError(TransientExternalError):
    """Attestation service answered 429/5xx or could not be reached."""

    pass


class AttestationTimeout(TransientExternalError):
    """Attestation still pending after the bounded poll loop."""

    pass


# Chain RPC


class ChainRPCError(TransientExternalError):
    """RPC endpoint unreachable or answered with a server error."""

    pass


class ConfirmationTimeout(TransientExternalError):
    """No receipt within the confirmation timeout."""

    def __init__(self, chain: str, tx_hash: str, timeout: float):
        super().__init__(f"Transaction {tx_hash} on {chain} not confirmed after {timeout}s")
        self.chain = chain
        self.tx_hash = tx_hash


class TransactionReverted(TerminalExternalError):
    """Receipt came back with status 0."""

    def __init__(self, chain: str, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} reverted on {chain}")
        self.chain = chain
        self.tx_hash = tx_hash


class TransactionRejected(TerminalExternalError):
    """Node refused to estimate or accept the transaction."""

    pass


class PositionScanIncomplete(TransientExternalError):
    """No position found, but some chains could not be read."""

    def __init__(self, unreachable: Sequence[str], checked: Optional[Sequence[str]] = None):
        super().__init__(
            "Position scan incomplete, unreachable chains: " + ", ".join(unreachable)
        )
        self.unreachable = list(unreachable)
        self.checked = list(checked or [])
