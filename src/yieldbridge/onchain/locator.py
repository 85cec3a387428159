"""Locate a user's open vault position across chains."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from yieldbridge.chains import ChainRegistry
from yieldbridge.errors import PositionScanIncomplete
from yieldbridge.onchain.base import ChainClient, Position

logger = logging.getLogger(__name__)


@dataclass
class LocatedPosition:
    """Position together with the chain it lives on."""

    position: Position
    chain: str
    cctp_domain: int


@dataclass
class PositionScan:
    """Outcome of a full scan.

    ``found`` is None both for "checked and empty" and for "could not
    check"; ``unreachable`` tells the two apart.
    """

    found: Optional[LocatedPosition] = None
    checked: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unreachable


class PositionLocator:
    """Scan position chains in registry order, stop at the first open one.

    A user holds at most one open position system-wide, so there is
    nothing to aggregate.
    """

    def __init__(self, registry: ChainRegistry, chain_client: ChainClient):
        self.registry = registry
        self.chain_client = chain_client

    async def scan(self, user_address: str) -> PositionScan:
        result = PositionScan()

        for chain in self.registry.position_chains():
            try:
                logger.debug(f"Checking position for {user_address} on {chain.name}")
                position = await self.chain_client.read_position(chain.name, user_address)
            except Exception as e:
                logger.error(f"Error checking position on {chain.name}: {e}")
                result.unreachable.append(chain.name)
                continue

            result.checked.append(chain.name)
            if position.is_open:
                logger.info(
                    f"Position found for {user_address} on {chain.name}: pool {position.pool_id}"
                )
                result.found = LocatedPosition(
                    position=position, chain=chain.name, cctp_domain=chain.cctp_domain
                )
                break

        return result

    async def find_position(self, user_address: str) -> Optional[LocatedPosition]:
        """First open position, or None after a complete empty scan.

        Raises:
            PositionScanIncomplete: nothing found and some chains were unreadable
        """
        result = await self.scan(user_address)
        if result.found is not None:
            return result.found
        if result.unreachable:
            raise PositionScanIncomplete(result.unreachable, result.checked)
        return None
