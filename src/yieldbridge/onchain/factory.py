"""Factory for the chain client.

In dry-run mode no transaction ever leaves the process.
"""

import logging

from yieldbridge.chains import ChainRegistry
from yieldbridge.config import Settings
from yieldbridge.onchain.base import ChainClient, SimulatedChainClient

logger = logging.getLogger(__name__)


def get_chain_client(settings: Settings, registry: ChainRegistry) -> ChainClient:
    """Build the chain client for the current settings."""
    if settings.dry_run:
        logger.warning("DRY_RUN enabled - using simulated chain client")
        return SimulatedChainClient()

    if not settings.relayer_private_key:
        logger.warning("RELAYER_PRIVATE_KEY not set - on-chain writes will be rejected")

    from yieldbridge.onchain.evm import EVMChainClient

    return EVMChainClient(
        registry,
        private_key=settings.relayer_private_key,
        rpc_timeout=settings.rpc_timeout,
        poll_interval=settings.tx_poll_interval,
    )
