"""EVM chain client for YieldManager contracts.

Reads and broadcasts go through plain JSON-RPC over httpx; transactions
are signed locally with eth_account and calldata is ABI-encoded with
eth_abi.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from eth_account import Account
from web3 import Web3

from yieldbridge.chains import ChainRegistry
from yieldbridge.errors import (
    ChainRPCError,
    ConfirmationTimeout,
    TransactionRejected,
    TransactionReverted,
)
from yieldbridge.onchain.base import BroadcastHook, ChainClient, Position, TxReceipt

logger = logging.getLogger(__name__)

POSITION_TYPES = ["uint8", "bytes32", "address", "uint256", "uint256", "address"]

# Headroom on top of eth_estimateGas
GAS_BUFFER_NUM = 12
GAS_BUFFER_DEN = 10


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, types: list[str], args: list[Any]) -> str:
    """ABI-encode a contract call into 0x-prefixed calldata."""
    return "0x" + (_selector(signature) + encode(types, args)).hex()


def decode_position(raw: str) -> Position:
    """Decode the ``positions(address)`` return tuple."""
    payload = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
    if not payload:
        raise ChainRPCError("positions() returned no data (is the contract deployed?)")
    pool, position_id, user, amount, shares, vault = decode(POSITION_TYPES, payload)
    return Position(
        pool_id=int(pool),
        position_id="0x" + bytes(position_id).hex(),
        owner=Web3.to_checksum_address(user),
        principal_amount=str(amount),
        shares=str(shares),
        vault=Web3.to_checksum_address(vault),
    )


class EVMChainClient(ChainClient):
    """JSON-RPC backed client, one relayer key for every chain."""

    def __init__(
        self,
        registry: ChainRegistry,
        private_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rpc_timeout: float = 30.0,
        poll_interval: float = 2.0,
    ):
        self.registry = registry
        self.poll_interval = poll_interval
        self._account = Account.from_key(private_key) if private_key else None
        self._client = http_client or httpx.AsyncClient(timeout=rpc_timeout)
        self._owns_client = http_client is None
        self._nonce_locks: dict[str, asyncio.Lock] = {}
        self._nonce_cache: dict[str, int] = {}

    @property
    def relayer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _rpc(self, chain: str, method: str, params: list, rejectable: bool = False) -> Any:
        """Issue one JSON-RPC request.

        ``rejectable`` calls (gas estimation, broadcast) turn a JSON-RPC
        error object into ``TransactionRejected``; everything else is
        treated as a transient RPC problem.
        """
        rpc_url = self.registry.get(chain).rpc_url
        try:
            response = await self._client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
            )
        except httpx.HTTPError as e:
            raise ChainRPCError(f"{method} on {chain} failed: {e}") from e

        if response.status_code != 200:
            raise ChainRPCError(f"{method} on {chain} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ChainRPCError(f"{method} on {chain} returned invalid JSON") from e

        if "error" in data:
            message = data["error"].get("message", str(data["error"]))
            if rejectable:
                raise TransactionRejected(f"{method} on {chain} rejected: {message}")
            raise ChainRPCError(f"{method} on {chain} error: {message}")

        return data.get("result")

    async def read_position(self, chain: str, user_address: str) -> Position:
        contract = self.registry.vault_manager_for(chain)
        data = encode_call(
            "positions(address)", ["address"], [Web3.to_checksum_address(user_address)]
        )
        result = await self._rpc(chain, "eth_call", [{"to": contract, "data": data}, "latest"])
        return decode_position(result or "0x")

    async def submit_init_withdraw(
        self, chain: str, user_address: str, before_broadcast: Optional[BroadcastHook] = None
    ) -> str:
        data = encode_call(
            "initWithdraw(address)", ["address"], [Web3.to_checksum_address(user_address)]
        )
        return await self._send(chain, data, "initWithdraw", before_broadcast)

    async def submit_process_deposit(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        data = encode_call(
            "processDeposit(bytes,bytes)", ["bytes", "bytes"], [message, attestation]
        )
        return await self._send(chain, data, "processDeposit", before_broadcast)

    async def submit_process_withdraw(
        self,
        chain: str,
        message: bytes,
        attestation: bytes,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        data = encode_call(
            "processWithdraw(bytes,bytes)", ["bytes", "bytes"], [message, attestation]
        )
        return await self._send(chain, data, "processWithdraw", before_broadcast)

    def _lock_for(self, chain: str) -> asyncio.Lock:
        if chain not in self._nonce_locks:
            self._nonce_locks[chain] = asyncio.Lock()
        return self._nonce_locks[chain]

    async def _next_nonce(self, chain: str, address: str) -> int:
        """Pending nonce from chain, never below what we handed out last."""
        result = await self._rpc(chain, "eth_getTransactionCount", [address, "pending"])
        chain_nonce = int(result, 16)
        return max(chain_nonce, self._nonce_cache.get(chain, 0))

    async def _send(
        self,
        chain: str,
        data: str,
        label: str,
        before_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        """Estimate, sign and broadcast a call to the chain's YieldManager.

        Every RPC failure up to and including signing leaves nothing on the
        wire. Only ``eth_sendRawTransaction`` itself can be ambiguous.
        """
        if self._account is None:
            raise TransactionRejected("Relayer private key not configured")

        config = self.registry.get(chain)
        contract = Web3.to_checksum_address(self.registry.vault_manager_for(chain))
        sender = self._account.address

        async with self._lock_for(config.name):
            nonce = await self._next_nonce(config.name, sender)
            gas_price = int(await self._rpc(chain, "eth_gasPrice", []), 16)
            estimate = await self._rpc(
                chain,
                "eth_estimateGas",
                [{"from": sender, "to": contract, "data": data}],
                rejectable=True,
            )
            gas_limit = int(estimate, 16) * GAS_BUFFER_NUM // GAS_BUFFER_DEN

            tx = {
                "nonce": nonce,
                "gasPrice": gas_price,
                "gas": gas_limit,
                "to": contract,
                "value": 0,
                "data": data,
                "chainId": config.chain_id,
            }
            signed = self._account.sign_transaction(tx)
            raw_tx = "0x" + bytes(signed.raw_transaction).hex()
            tx_hash = "0x" + bytes(signed.hash).hex()

            if before_broadcast is not None:
                await before_broadcast(tx_hash)

            node_hash = await self._rpc(
                chain, "eth_sendRawTransaction", [raw_tx], rejectable=True
            )
            self._nonce_cache[config.name] = nonce + 1

        if node_hash and node_hash.lower() != tx_hash:
            logger.warning(f"{config.name} node reported {node_hash} for {label} {tx_hash}")

        logger.info(f"{label} sent on {config.name}: {tx_hash} (nonce {nonce})")
        return tx_hash

    async def get_receipt(self, chain: str, tx_hash: str) -> Optional[TxReceipt]:
        result = await self._rpc(chain, "eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None

        return TxReceipt(
            tx_hash=tx_hash,
            success=int(result.get("status", "0x0"), 16) == 1,
            block_number=int(result["blockNumber"], 16) if result.get("blockNumber") else None,
            gas_used=int(result["gasUsed"], 16) if result.get("gasUsed") else None,
        )

    async def wait_for_receipt(self, chain: str, tx_hash: str, timeout: float) -> TxReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self.get_receipt(chain, tx_hash)
            except ChainRPCError as e:
                logger.warning(f"Receipt lookup for {tx_hash} on {chain} failed: {e}")
                receipt = None

            if receipt is not None:
                if not receipt.success:
                    raise TransactionReverted(chain, tx_hash)
                logger.info(f"{tx_hash} confirmed on {chain} in block {receipt.block_number}")
                return receipt

            if loop.time() >= deadline:
                raise ConfirmationTimeout(chain, tx_hash, timeout)

            await asyncio.sleep(self.poll_interval)
