"""Pytest configuration and fixtures."""

import os
from typing import Optional, Union

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DRY_RUN"] = "true"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["DEBUG"] = "false"

from yieldbridge.attestation.client import AttestationPending, AttestationReady
from yieldbridge.chains import ChainRegistry
from yieldbridge.config import Settings
from yieldbridge.errors import ChainRPCError, ConfirmationTimeout, TransactionReverted
from yieldbridge.ledger.database import Database
from yieldbridge.onchain.base import BroadcastHook, ChainClient, Position, TxReceipt
from yieldbridge.transfers.orchestrator import TransferOrchestrator
from yieldbridge.transfers.store import MemoryTransferStore, SQLTransferStore

USER = "0x1111111111111111111111111111111111111111"
OTHER_USER = "0x4444444444444444444444444444444444444444"
POOL = "0x2222222222222222222222222222222222222222"
VAULT = "0x3333333333333333333333333333333333333333"
BURN_TX = "0x" + "ab" * 32

MESSAGE = bytes.fromhex("0000000a" + "11" * 60)
PROOF = bytes.fromhex("22" * 65)


def make_position(pool_id: int = 2, owner: str = USER) -> Position:
    return Position(
        pool_id=pool_id,
        position_id="0x" + "01" * 32,
        owner=owner,
        principal_amount="1000000",
        shares="990000",
        vault=VAULT,
    )


class FakeChainClient(ChainClient):
    """Scriptable chain client that records every write.

    ``reject_with`` fails a write before anything is signed; the broadcast
    hook then never runs.
    """

    def __init__(self):
        self.positions: dict[tuple[str, str], Position] = {}
        self.unreachable: set[str] = set()
        self.submissions: list[tuple[str, str]] = []
        self.reverted: set[str] = set()
        self.unconfirmed: set[str] = set()
        self.reject_with: Optional[Exception] = None
        self._counter = 0

    def set_position(self, chain: str, user: str, position: Position) -> None:
        self.positions[(chain, user.lower())] = position

    def methods(self) -> list[str]:
        return [method for method, _ in self.submissions]

    async def read_position(self, chain: str, user_address: str) -> Position:
        if chain in self.unreachable:
            raise ChainRPCError(f"{chain} RPC unreachable")
        return self.positions.get((chain, user_address.lower()), Position.empty())

    async def _send(self, method: str, chain: str, before_broadcast: Optional[BroadcastHook]) -> str:
        if self.reject_with is not None:
            raise self.reject_with
        tx_hash = f"0x{self._counter + 1:064x}"
        if before_broadcast is not None:
            await before_broadcast(tx_hash)
        self._counter += 1
        self.submissions.append((method, chain))
        return tx_hash

    async def submit_init_withdraw(
        self, chain: str, user_address: str, before_broadcast: Optional[BroadcastHook] = None
    ) -> str:
        return await self._send("initWithdraw", chain, before_broadcast)

    async def submit_process_deposit(
        self, chain: str, message: bytes, attestation: bytes, before_broadcast=None
    ) -> str:
        return await self._send("processDeposit", chain, before_broadcast)

    async def submit_process_withdraw(
        self, chain: str, message: bytes, attestation: bytes, before_broadcast=None
    ) -> str:
        return await self._send("processWithdraw", chain, before_broadcast)

    async def get_receipt(self, chain: str, tx_hash: str) -> Optional[TxReceipt]:
        if tx_hash in self.unconfirmed:
            return None
        return TxReceipt(tx_hash=tx_hash, success=tx_hash not in self.reverted, block_number=1)

    async def wait_for_receipt(self, chain: str, tx_hash: str, timeout: float) -> TxReceipt:
        receipt = await self.get_receipt(chain, tx_hash)
        if receipt is None:
            raise ConfirmationTimeout(chain, tx_hash, timeout)
        if not receipt.success:
            raise TransactionReverted(chain, tx_hash)
        return receipt


class FakeAttestationClient:
    """Attestation client answering from a script.

    ``script`` entries are consumed in order; once exhausted the last
    outcome repeats. Exceptions in the script are raised.
    """

    def __init__(self, *script: Union[AttestationPending, AttestationReady, Exception]):
        self.script = list(script) or [AttestationPending()]
        self.calls: list[tuple[str, str]] = []

    async def poll(self, source_tx_hash: str, source_chain: str):
        self.calls.append((source_tx_hash, source_chain))
        outcome = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        pass


def ready() -> AttestationReady:
    return AttestationReady(message=MESSAGE, proof=PROOF)


@pytest.fixture
def settings() -> Settings:
    """Settings with every chain wired to a vault manager."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        dry_run=True,
        scheduler_enabled=False,
        admin_token="test-admin-token",
        yield_manager_ethereum="0x00000000000000000000000000000000000000e1",
        yield_manager_optimism="0x00000000000000000000000000000000000000e2",
        yield_manager_arbitrum="0x00000000000000000000000000000000000000e3",
        yield_manager_base="0x00000000000000000000000000000000000000e4",
        yield_manager_world="0x00000000000000000000000000000000000000e5",
        attestation_poll_attempts=3,
        attestation_poll_delay=0,
        tx_confirmation_timeout=1,
        tx_poll_interval=0,
    )


@pytest.fixture
def registry(settings) -> ChainRegistry:
    return ChainRegistry.from_settings(settings)


@pytest_asyncio.fixture
async def db(tmp_path):
    """File-backed database so concurrent sessions see the same data."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/transfers.db")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def memory_store() -> MemoryTransferStore:
    return MemoryTransferStore()


@pytest_asyncio.fixture
async def sql_store(db) -> SQLTransferStore:
    return SQLTransferStore(db)


@pytest_asyncio.fixture(params=["sql", "memory"])
async def store(request, tmp_path):
    """Each store variant in turn."""
    if request.param == "memory":
        yield MemoryTransferStore()
        return

    database = Database(f"sqlite+aiosqlite:///{tmp_path}/store.db")
    await database.init()
    yield SQLTransferStore(database)
    await database.close()


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def attestation() -> FakeAttestationClient:
    return FakeAttestationClient(ready())


@pytest.fixture
def orchestrator(store, registry, chain_client, attestation) -> TransferOrchestrator:
    return TransferOrchestrator(
        store=store,
        registry=registry,
        chain_client=chain_client,
        attestation=attestation,
        poll_attempts=3,
        poll_delay=0,
        confirmation_timeout=1,
    )
