"""On-chain access: YieldManager reads/writes and position lookup."""

from yieldbridge.onchain.base import ChainClient, Position, SimulatedChainClient, TxReceipt
from yieldbridge.onchain.factory import get_chain_client
from yieldbridge.onchain.locator import LocatedPosition, PositionLocator, PositionScan

__all__ = [
    "ChainClient",
    "LocatedPosition",
    "Position",
    "PositionLocator",
    "PositionScan",
    "SimulatedChainClient",
    "TxReceipt",
    "get_chain_client",
]
