"""Circle Iris attestation client.

One call, one HTTP request: the caller owns the polling cadence.

Outcomes:
- AttestationPending: burn not attested yet, or not indexed yet (HTTP 404)
- AttestationReady: message + attestation bytes, passed through untouched
- AttestationServiceError: 429/5xx/network trouble (retry later)
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from yieldbridge.chains import ChainRegistry
from yieldbridge.errors import (
    AttestationServiceError,
    TerminalExternalError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_COMPLETE = "complete"
STATUS_NOT_INDEXED = "not_indexed"
ATTESTATION_PLACEHOLDER = "PENDING"


@dataclass(frozen=True)
class AttestationPending:
    """Attestation not available yet."""

    status: str = "pending"

    @property
    def ready(self) -> bool:
        return False


@dataclass(frozen=True)
class AttestationReady:
    """Signed attestation for a burn."""

    message: bytes
    proof: bytes
    event_nonce: Optional[str] = None

    @property
    def ready(self) -> bool:
        return True


AttestationResult = Union[AttestationPending, AttestationReady]


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class AttestationClient:
    """Client for ``GET /v2/messages/{domain}?transactionHash=...``."""

    def __init__(
        self,
        registry: ChainRegistry,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.registry = registry
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def messages_url(self, domain: int) -> str:
        return f"{self.base_url}/v2/messages/{domain}"

    async def poll(self, source_tx_hash: str, source_chain: str) -> AttestationResult:
        """Check once whether the burn in ``source_tx_hash`` is attested.

        Args:
            source_tx_hash: Burn / initWithdraw transaction hash
            source_chain: Registry name of the chain the burn happened on

        Raises:
            ValidationError: malformed hash or unknown chain
            AttestationServiceError: transient service failure
        """
        if not source_tx_hash or len(source_tx_hash) < 10:
            raise ValidationError("Invalid transaction hash provided")
        if not source_tx_hash.startswith("0x"):
            source_tx_hash = f"0x{source_tx_hash}"

        domain = self.registry.domain_for(source_chain)
        url = self.messages_url(domain)

        logger.debug(f"Retrieving attestation for {source_tx_hash} from domain {domain}")

        try:
            response = await self._client.get(
                url,
                params={"transactionHash": source_tx_hash},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AttestationServiceError(f"Failed to retrieve attestation: {e}") from e

        if response.status_code == 404:
            # Iris answers 404 until it has indexed the burn
            logger.debug(f"{source_tx_hash} not indexed on domain {domain} yet")
            return AttestationPending(status=STATUS_NOT_INDEXED)
        if response.status_code == 429 or response.status_code >= 500:
            raise AttestationServiceError(
                f"Attestation service returned HTTP {response.status_code}"
            )
        if response.status_code != 200:
            raise TerminalExternalError(
                f"Attestation service rejected request: HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AttestationServiceError(f"Attestation service returned invalid JSON: {e}") from e

        messages = data.get("messages") or []
        if not messages:
            return AttestationPending()

        msg = messages[0]
        status = msg.get("status", "")
        attestation = msg.get("attestation")
        message = msg.get("message")

        if (
            status != STATUS_COMPLETE
            or not attestation
            or attestation == ATTESTATION_PLACEHOLDER
            or not message
        ):
            logger.debug(f"Attestation for {source_tx_hash} not ready yet (status: {status})")
            return AttestationPending(status=status or "pending")

        logger.info(f"Attestation complete for {source_tx_hash} (domain {domain})")
        nonce = msg.get("eventNonce")
        return AttestationReady(
            message=_hex_to_bytes(message),
            proof=_hex_to_bytes(attestation),
            event_nonce=str(nonce) if nonce is not None else None,
        )
