"""CCTP attestation service access."""

from yieldbridge.attestation.client import (
    AttestationClient,
    AttestationPending,
    AttestationReady,
    AttestationResult,
)

__all__ = [
    "AttestationClient",
    "AttestationPending",
    "AttestationReady",
    "AttestationResult",
]
