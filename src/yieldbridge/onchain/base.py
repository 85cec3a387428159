"""Base interfaces for the vault-manager chain boundary.

Transfer flow on chain:
1. Deposit: CCTP burn happens in the user's wallet; we call
   ``processDeposit(message, attestation)`` on the destination chain.
2. Withdraw: we call ``initWithdraw(user)`` on the chain holding the
   position, then ``processWithdraw(message, attestation)`` on the
   settlement chain once Circle attests the burn.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from yieldbridge.config import ZERO_ADDRESS
from yieldbridge.errors import ConfirmationTimeout

logger = logging.getLogger(__name__)

ZERO_BYTES32 = "0x" + "00" * 32

# Awaited with the signed tx hash right before broadcast
BroadcastHook = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class Position:
    """A user's vault position as returned by ``positions(address)``."""

    pool_id: int
    position_id: str
    owner: str
    principal_amount: str
    shares: str
    vault: str

    @property
    def is_open(self) -> bool:
        return self.pool_id > 0

    @classmethod
    def empty(cls) -> "Position":
        """Zeroed snapshot, stored on records that found no position."""
        return cls(
            pool_id=0,
            position_id=ZERO_BYTES32,
            owner=ZERO_ADDRESS,
            principal_amount="0",
            shares="0",
            vault=ZERO_ADDRESS,
        )

    def to_dict(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "position_id": self.position_id,
            "owner": self.owner,
            "principal_amount": self.principal_amount,
            "shares": self.shares,
            "vault": self.vault,
        }


@dataclass
class TxReceipt:
    """Mined transaction receipt."""

    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class ChainClient(ABC):
    """Abstract read/write access to YieldManager contracts.

    Writes return the broadcast transaction hash; confirmation is a
    separate step.

    Every write takes an optional ``before_broadcast`` hook. It is awaited
    with the signed transaction's hash once every step that can fail
    before broadcast (nonce, gas price, gas estimate, signing) has passed.
    If the hook raises, nothing is broadcast and the error propagates, so
    the caller can claim the record and store the hash in one write.
    """

    @abstractmethod
    async def read_position(self, chain: str, user_address: str) -> Position:
        """Read ``positions(user)`` on a chain.

        Raises:
            ChainRPCError: RPC unreachable or erroring
        """
        pass

    @abstractmethod
    async def submit_init_withdraw(
        self, chain: str, user_address: str, before_broadcast: Optional[BroadcastHook] = None
    ) -> str:
        """Broadcast ``initWithdraw(user)``.

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    async def submit_process_deposit(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        """Broadcast ``processDeposit(message, attestation)``."""
        pass

    @abstractmethod
    async def submit_process_withdraw(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        """Broadcast ``processWithdraw(message, attestation)``."""
        pass

    @abstractmethod
    async def get_receipt(self, chain: str, tx_hash: str) -> Optional[TxReceipt]:
        """Fetch a receipt, or None while the transaction is unmined."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, chain: str, tx_hash: str, timeout: float) -> TxReceipt:
        """Block until mined.

        Raises:
            ConfirmationTimeout: not mined within ``timeout``
            TransactionReverted: mined with status 0
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class SimulatedChainClient(ChainClient):
    """Simulated chain client for dry-run mode.

    Every write "succeeds" with a random hash and every receipt is mined.
    Positions can be seeded with ``set_position``.
    """

    def __init__(self):
        self._positions: dict[tuple[str, str], Position] = {}
        self._sent: dict[str, tuple[str, str]] = {}

    def set_position(self, chain: str, user_address: str, position: Position) -> None:
        self._positions[(chain.lower(), user_address.lower())] = position

    async def read_position(self, chain: str, user_address: str) -> Position:
        return self._positions.get((chain.lower(), user_address.lower()), Position.empty())

    async def _fake_send(
        self, chain: str, method: str, before_broadcast: Optional[BroadcastHook]
    ) -> str:
        tx_hash = f"0x{secrets.token_hex(32)}"
        if before_broadcast is not None:
            await before_broadcast(tx_hash)
        self._sent[tx_hash] = (chain, method)
        logger.info(f"[SIMULATED] {method} on {chain}: {tx_hash}")
        return tx_hash

    async def submit_init_withdraw(
        self, chain: str, user_address: str, before_broadcast: Optional[BroadcastHook] = None
    ) -> str:
        return await self._fake_send(chain, "initWithdraw", before_broadcast)

    async def submit_process_deposit(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        return await self._fake_send(chain, "processDeposit", before_broadcast)

    async def submit_process_withdraw(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        return await self._fake_send(chain, "processWithdraw", before_broadcast)

    async def get_receipt(self, chain: str, tx_hash: str) -> Optional[TxReceipt]:
        if tx_hash not in self._sent:
            return None
        return TxReceipt(tx_hash=tx_hash, success=True, block_number=0, gas_used=0)

    async def wait_for_receipt(self, chain: str, tx_hash: str, timeout: float) -> TxReceipt:
        receipt = await self.get_receipt(chain, tx_hash)
        if receipt is None:
            raise ConfirmationTimeout(chain, tx_hash, timeout)
        return receipt
