"""Service wiring.

Builds every long-lived component once and hands them down explicitly;
nothing below this module reaches for a global.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from yieldbridge.attestation.client import AttestationClient
from yieldbridge.chains import ChainRegistry
from yieldbridge.config import Settings
from yieldbridge.onchain.base import ChainClient
from yieldbridge.onchain.factory import get_chain_client
from yieldbridge.onchain.locator import PositionLocator
from yieldbridge.transfers.orchestrator import TransferOrchestrator
from yieldbridge.transfers.scheduler import ResumptionScheduler
from yieldbridge.transfers.store import TransferStore, open_transfer_store
from yieldbridge.utils.locks import AddressLocks

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Running components of one process."""

    settings: Settings
    registry: ChainRegistry
    store: TransferStore
    chain_client: ChainClient
    attestation: AttestationClient
    locator: PositionLocator
    orchestrator: TransferOrchestrator
    scheduler: ResumptionScheduler

    async def close(self) -> None:
        """Stop background work and release connections."""
        await self.scheduler.stop()
        await self.orchestrator.shutdown()
        await self.attestation.close()
        await self.chain_client.close()
        await self.store.close()


async def build_services(
    settings: Settings,
    store: Optional[TransferStore] = None,
    chain_client: Optional[ChainClient] = None,
    attestation: Optional[AttestationClient] = None,
) -> Services:
    """Build the component graph from settings.

    Any component passed in is used as is (tests inject fakes this way).
    """
    registry = ChainRegistry.from_settings(settings)

    if store is None:
        store = await open_transfer_store(settings)
    if chain_client is None:
        chain_client = get_chain_client(settings, registry)
    if attestation is None:
        attestation = AttestationClient(
            registry,
            settings.attestation_base_url,
            timeout=settings.attestation_http_timeout,
        )

    locator = PositionLocator(registry, chain_client)
    orchestrator = TransferOrchestrator(
        store=store,
        registry=registry,
        chain_client=chain_client,
        attestation=attestation,
        locator=locator,
        locks=AddressLocks(),
        poll_attempts=settings.attestation_poll_attempts,
        poll_delay=settings.attestation_poll_delay,
        confirmation_timeout=settings.tx_confirmation_timeout,
    )
    scheduler = ResumptionScheduler(orchestrator, store, interval=settings.scheduler_interval)

    logger.info(
        f"Services ready: store={store.mode}, chains={', '.join(registry.names())}, "
        f"position chains={', '.join(c.name for c in registry.position_chains()) or 'none'}"
    )

    return Services(
        settings=settings,
        registry=registry,
        store=store,
        chain_client=chain_client,
        attestation=attestation,
        locator=locator,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
