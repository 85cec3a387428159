"""Transfer orchestrator.

Drives deposits and withdraws through burn/init, attestation and
settlement, persisting every step so any process can pick a record up
again with ``resume``.

Deposit flow:
1. User burns USDC on the source chain and hands us the tx hash
2. Record created in pending_attestation
3. Poll Circle for the attestation
4. processDeposit(message, attestation) on the destination chain

Withdraw flow:
1. Locate the user's open position
2. initWithdraw(user) on the position chain
3. Poll Circle for the attestation of that burn
4. processWithdraw(message, attestation) on the settlement chain

Every on-chain write is signed first; its status claim and tx hash land in
one compare-and-set right before broadcast, so a failed or lost claim
never puts anything on chain.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from yieldbridge.attestation.client import AttestationClient
from yieldbridge.chains import ChainRegistry
from yieldbridge.errors import (
    AttestationServiceError,
    AttestationTimeout,
    ConfirmationTimeout,
    InvalidTransitionError,
    NotFoundError,
    StaleTransitionError,
    TransientExternalError,
    ValidationError,
)
from yieldbridge.onchain.base import ChainClient, Position
from yieldbridge.onchain.locator import PositionLocator
from yieldbridge.transfers.records import (
    Direction,
    TransferRecord,
    TransferStatus,
    VaultProtocol,
    is_tx_hash,
    require_address,
)
from yieldbridge.transfers.store import TransferStore
from yieldbridge.utils.locks import AddressLocks, LockTimeoutError

logger = logging.getLogger(__name__)

NO_POSITION_MESSAGE = "No position found for this user"


@dataclass
class DepositRequest:
    """A user's request to settle a CCTP burn into a vault."""

    source_chain_id: int
    dest_chain_id: int
    user_address: str
    amount: Union[int, str]
    protocol: int
    pool_address: str
    source_tx_hash: str
    opportunity_chain_id: Optional[int] = None


def _to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def _from_hex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def normalize_tx_hash(value: Optional[str]) -> str:
    """Lower-case, 0x-prefixed transaction hash.

    Raises:
        ValidationError: not a 32-byte hex hash
    """
    if not value:
        raise ValidationError("Transaction hash is required")
    value = value.strip()
    if not value.startswith("0x"):
        value = f"0x{value}"
    if not is_tx_hash(value):
        raise ValidationError(f"Invalid transaction hash format: {value!r}")
    return value.lower()


class TransferOrchestrator:
    """Owns every status change of a transfer record.

    Args:
        store: Transfer store
        registry: Chain registry
        chain_client: Vault-manager reads and writes
        attestation: Circle attestation client
        locator: Position locator
        locks: Per-address locks serializing withdraw initiation
        poll_attempts: Attestation polls per resume, unless overridden
        poll_delay: Seconds between attestation polls
        confirmation_timeout: Seconds to wait for each on-chain write
    """

    def __init__(
        self,
        store: TransferStore,
        registry: ChainRegistry,
        chain_client: ChainClient,
        attestation: AttestationClient,
        locator: Optional[PositionLocator] = None,
        locks: Optional[AddressLocks] = None,
        poll_attempts: int = 60,
        poll_delay: float = 10.0,
        confirmation_timeout: float = 60.0,
    ):
        self.store = store
        self.registry = registry
        self.chain_client = chain_client
        self.attestation = attestation
        self.locator = locator or PositionLocator(registry, chain_client)
        self.locks = locks or AddressLocks()
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self.confirmation_timeout = confirmation_timeout
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def initiate_deposit(self, request: DepositRequest) -> TransferRecord:
        """Register a burned deposit; idempotent on its source tx hash.

        Raises:
            ValidationError: bad address, chain, amount, protocol or hash
        """
        user_address = require_address(request.user_address, "user address")
        pool_address = require_address(request.pool_address, "pool address")
        source = self.registry.by_chain_id(request.source_chain_id)
        dest = self.registry.by_chain_id(request.dest_chain_id)

        if source.name == dest.name:
            raise ValidationError("Source and destination chains must differ")
        if (
            request.opportunity_chain_id is not None
            and request.opportunity_chain_id != dest.chain_id
        ):
            raise ValidationError("Opportunity chain does not match destination chain")

        # Settlement needs a vault manager on the destination
        self.registry.vault_manager_for(dest.name)

        try:
            amount = int(request.amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid amount: {request.amount!r}")
        if amount <= 0:
            raise ValidationError("Amount must be positive")

        try:
            protocol = VaultProtocol(int(request.protocol))
        except (TypeError, ValueError):
            raise ValidationError(f"Unknown protocol: {request.protocol!r}")

        source_tx_hash = normalize_tx_hash(request.source_tx_hash)

        draft = TransferRecord.new(
            Direction.DEPOSIT,
            user_address,
            dest_chain=dest.name,
            source_chain=source.name,
            amount=str(amount),
            protocol=protocol.value,
            pool_address=pool_address,
            source_tx_hash=source_tx_hash,
        )
        record, created = await self.store.create_deposit_or_get(draft)

        if created:
            logger.info(
                f"Deposit {record.id} registered: {amount} from {source.name} "
                f"to {dest.name} ({protocol.name}) tx={source_tx_hash}"
            )
        else:
            if record.user_address != user_address:
                logger.warning(
                    f"Deposit tx {source_tx_hash} re-submitted by {user_address}, "
                    f"registered to {record.user_address}"
                )
            logger.info(f"Deposit tx {source_tx_hash} already tracked as {record.id}")

        return record

    # ------------------------------------------------------------------
    # Withdraws
    # ------------------------------------------------------------------

    async def initiate_withdraw(self, user_address: str) -> TransferRecord:
        """Find the user's position and submit initWithdraw.

        Returns as soon as the burn is confirmed (pending_attestation), or
        earlier with the tx still unconfirmed; ``resume`` finishes the job.

        Raises:
            ValidationError: malformed address
            NotFoundError: no open position on any chain
            PositionScanIncomplete: no position found, some chains unreadable
            TransientExternalError: initWithdraw could not be signed or sent;
                the record stays in position_found for a retry
        """
        user_address = require_address(user_address, "user address")

        async with self.locks.hold(user_address, operation="initiate_withdraw"):
            active = await self.store.get_active_for_user(user_address, Direction.WITHDRAW)
            if active is not None and active.status == TransferStatus.POSITION_FOUND:
                # Located earlier, initWithdraw never went out
                logger.info(f"Withdraw {active.id}: retrying initWithdraw for {user_address}")
                return await self._run_initiation(
                    active.id, lambda: self._submit_init_withdraw(active)
                )
            if active is not None:
                logger.info(
                    f"Withdraw already in progress for {user_address}: "
                    f"{active.id} ({active.status.value})"
                )
                return active

            located = await self.locator.find_position(user_address)

            record = await self.store.create(
                TransferRecord.new(
                    Direction.WITHDRAW,
                    user_address,
                    dest_chain=self.registry.settlement_chain.name,
                )
            )

            if located is None:
                await self.store.transition(
                    record.id,
                    {
                        "status": TransferStatus.FAILED,
                        "position": Position.empty(),
                        "error_message": NO_POSITION_MESSAGE,
                    },
                )
                logger.info(f"Withdraw {record.id}: no position for {user_address}")
                raise NotFoundError(NO_POSITION_MESSAGE)

            logger.info(
                f"Withdraw {record.id} for {user_address}: position on {located.chain} "
                f"(pool {located.position.pool_id}, {located.position.principal_amount} USDC)"
            )

            async def start() -> TransferRecord:
                current = await self.store.transition(
                    record.id,
                    {
                        "status": TransferStatus.POSITION_FOUND,
                        "position": located.position,
                        "source_chain": located.chain,
                    },
                    expected_status=TransferStatus.CHECKING_POSITION,
                )
                return await self._submit_init_withdraw(current)

            return await self._run_initiation(record.id, start)

    async def _run_initiation(
        self, transfer_id: str, step: Callable[[], Awaitable[TransferRecord]]
    ) -> TransferRecord:
        try:
            return await self._guarded(transfer_id, step)
        except ConfirmationTimeout as e:
            logger.warning(f"Withdraw {transfer_id}: {e}; will resume later")
            return await self._fresh(transfer_id)

    async def _submit_init_withdraw(self, record: TransferRecord) -> TransferRecord:
        """Sign initWithdraw, claim initiating_withdraw with its hash, broadcast.

        Failures before the claim leave the record in position_found with
        nothing sent, so the next resume or initiation simply tries again.
        """

        async def claim(tx_hash: str) -> None:
            await self.store.transition(
                record.id,
                {"status": TransferStatus.INITIATING_WITHDRAW, "pending_tx_hash": tx_hash},
                expected_status=TransferStatus.POSITION_FOUND,
            )

        tx_hash = await self.chain_client.submit_init_withdraw(
            record.source_chain, record.user_address, before_broadcast=claim
        )
        logger.info(f"Withdraw {record.id}: initWithdraw sent on {record.source_chain}: {tx_hash}")
        return await self._confirm_init_withdraw(await self._fresh(record.id))

    async def _confirm_init_withdraw(self, record: TransferRecord) -> TransferRecord:
        tx_hash = record.pending_tx_hash
        await self.chain_client.wait_for_receipt(
            record.source_chain, tx_hash, self.confirmation_timeout
        )
        record = await self.store.transition(
            record.id,
            {
                "status": TransferStatus.WITHDRAW_INITIATED,
                "source_tx_hash": tx_hash,
                "pending_tx_hash": None,
            },
            expected_status=TransferStatus.INITIATING_WITHDRAW,
        )
        record = await self.store.transition(
            record.id,
            {"status": TransferStatus.PENDING_ATTESTATION},
            expected_status=TransferStatus.WITHDRAW_INITIATED,
        )
        logger.info(f"Withdraw {record.id}: initWithdraw confirmed, awaiting attestation")
        return record

    # ------------------------------------------------------------------
    # Resumption
    # ------------------------------------------------------------------

    async def resume(self, transfer_id: str, max_attempts: Optional[int] = None) -> TransferRecord:
        """Advance a record as far as it can go right now.

        Safe to call repeatedly and concurrently; terminal records are
        returned untouched.

        Args:
            transfer_id: Record id
            max_attempts: Attestation polls for this call (default: configured)

        Raises:
            ValidationError: ``max_attempts`` below 1
            NotFoundError: unknown id
            TransientExternalError: retry later, record unchanged
            TerminalExternalError: record has been marked failed
        """
        attempts = self.poll_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValidationError(f"max_attempts must be at least 1, got {max_attempts}")

        record = await self.store.get(transfer_id)
        if record is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        if record.is_terminal:
            return record

        return await self._guarded(transfer_id, lambda: self._drive(record, attempts))

    async def _drive(self, record: TransferRecord, attempts: int) -> TransferRecord:
        while not record.is_terminal:
            status = record.status

            if status in (TransferStatus.CHECKING_POSITION, TransferStatus.POSITION_FOUND):
                record = await self._recover_initiation(record)
                if record.status in (
                    TransferStatus.CHECKING_POSITION,
                    TransferStatus.POSITION_FOUND,
                    TransferStatus.INITIATING_WITHDRAW,
                ):
                    return record

            elif status == TransferStatus.INITIATING_WITHDRAW:
                if not record.pending_tx_hash:
                    logger.warning(f"Transfer {record.id}: no initWithdraw hash recorded")
                    return record
                record = await self._confirm_init_withdraw(record)

            elif status == TransferStatus.WITHDRAW_INITIATED:
                record = await self.store.transition(
                    record.id, {"status": TransferStatus.PENDING_ATTESTATION},
                    expected_status=TransferStatus.WITHDRAW_INITIATED,
                )

            elif status == TransferStatus.PENDING_ATTESTATION:
                record = await self._await_attestation(record, attempts)

            elif status == TransferStatus.ATTESTATION_RECEIVED:
                submitted = await self._submit_destination(record)
                if submitted is None:
                    return await self._fresh(record.id)
                record = submitted

            elif status in (TransferStatus.PROCESSING_DEPOSIT, TransferStatus.PROCESSING_WITHDRAW):
                if not record.dest_tx_hash and not record.pending_tx_hash:
                    logger.warning(f"Transfer {record.id}: no settlement hash recorded")
                    return record
                record = await self._confirm_destination(record)

            elif status == TransferStatus.DEPOSIT_CONFIRMED:
                record = await self._complete(record, {})

            else:
                raise InvalidTransitionError(f"Cannot resume transfer in status {status.value}")

        return record

    async def _recover_initiation(self, record: TransferRecord) -> TransferRecord:
        """Pick up a located withdraw whose initWithdraw never went out."""
        try:
            async with self.locks.hold(record.user_address, operation="recover_withdraw"):
                return await self._recover_initiation_locked(record.id)
        except LockTimeoutError:
            logger.info(f"Withdraw {record.id}: initiation still running elsewhere")
            return record

    async def _recover_initiation_locked(self, transfer_id: str) -> TransferRecord:
        record = await self._fresh(transfer_id)
        if record.status == TransferStatus.CHECKING_POSITION:
            await self._fail(
                record.id, "Withdraw initiation interrupted before the position was recorded"
            )
            return await self._fresh(record.id)
        if record.status == TransferStatus.POSITION_FOUND:
            logger.info(f"Withdraw {record.id}: resuming interrupted initiation")
            return await self._submit_init_withdraw(record)
        return record

    async def _await_attestation(self, record: TransferRecord, attempts: int) -> TransferRecord:
        """Bounded attestation poll loop."""
        if not record.source_tx_hash:
            raise InvalidTransitionError(f"Transfer {record.id} has no source transaction")

        for attempt in range(1, attempts + 1):
            try:
                result = await self.attestation.poll(record.source_tx_hash, record.source_chain)
            except AttestationServiceError as e:
                logger.warning(
                    f"Transfer {record.id}: attestation poll {attempt}/{attempts} failed: {e}"
                )
            else:
                if result.ready:
                    record = await self.store.transition(
                        record.id,
                        {
                            "status": TransferStatus.ATTESTATION_RECEIVED,
                            "attestation_message": _to_hex(result.message),
                            "attestation_proof": _to_hex(result.proof),
                        },
                        expected_status=TransferStatus.PENDING_ATTESTATION,
                    )
                    logger.info(f"Transfer {record.id}: attestation received")
                    return record
                logger.debug(
                    f"Transfer {record.id}: attestation {result.status} "
                    f"(attempt {attempt}/{attempts})"
                )

            if attempt < attempts:
                await asyncio.sleep(self.poll_delay)

        raise AttestationTimeout(
            f"Attestation for {record.source_tx_hash} not ready after {attempts} attempts"
        )

    async def _submit_destination(self, record: TransferRecord) -> Optional[TransferRecord]:
        """Sign the settlement call, claim processing_* with its hash, broadcast.

        The claim is a compare-and-set on attestation_received. Returns None
        when another worker won it; nothing is sent in that case. Failures
        before the claim leave the record in attestation_received.
        """
        message = _from_hex(record.attestation_message)
        proof = _from_hex(record.attestation_proof)
        if record.direction == Direction.DEPOSIT:
            target, method = TransferStatus.PROCESSING_DEPOSIT, "processDeposit"
            submit = self.chain_client.submit_process_deposit
        else:
            target, method = TransferStatus.PROCESSING_WITHDRAW, "processWithdraw"
            submit = self.chain_client.submit_process_withdraw

        async def claim(tx_hash: str) -> None:
            await self.store.transition(
                record.id,
                {"status": target, "pending_tx_hash": tx_hash},
                expected_status=TransferStatus.ATTESTATION_RECEIVED,
            )

        try:
            tx_hash = await submit(record.dest_chain, message, proof, before_broadcast=claim)
        except StaleTransitionError as e:
            logger.info(f"Transfer {record.id}: claim lost ({e.actual}), not submitting")
            return None

        logger.info(f"Transfer {record.id}: {method} sent on {record.dest_chain}: {tx_hash}")
        return await self._confirm_destination(await self._fresh(record.id))

    async def _confirm_destination(self, record: TransferRecord) -> TransferRecord:
        tx_hash = record.dest_tx_hash or record.pending_tx_hash
        if not record.dest_tx_hash:
            await self.chain_client.wait_for_receipt(
                record.dest_chain, tx_hash, self.confirmation_timeout
            )

        if record.direction == Direction.DEPOSIT:
            record = await self.store.transition(
                record.id,
                {
                    "status": TransferStatus.DEPOSIT_CONFIRMED,
                    "dest_tx_hash": tx_hash,
                    "pending_tx_hash": None,
                },
                expected_status=TransferStatus.PROCESSING_DEPOSIT,
            )
            return await self._complete(record, {})

        return await self._complete(record, {"dest_tx_hash": tx_hash, "pending_tx_hash": None})

    async def _complete(self, record: TransferRecord, patch: dict) -> TransferRecord:
        record = await self.store.transition(
            record.id,
            {"status": TransferStatus.COMPLETED, **patch},
            expected_status=record.status,
        )
        logger.info(
            f"Transfer {record.id} completed ({record.direction.value}, "
            f"dest tx {record.dest_tx_hash})"
        )
        return record

    # ------------------------------------------------------------------
    # Error policy
    # ------------------------------------------------------------------

    async def _guarded(
        self, transfer_id: str, step: Callable[[], Awaitable[TransferRecord]]
    ) -> TransferRecord:
        """Run a workflow step under the failure policy.

        Transient errors leave the record as is; anything else fails it.
        """
        try:
            return await step()
        except StaleTransitionError as e:
            logger.info(f"Transfer {transfer_id}: {e}; another worker advanced it")
            return await self._fresh(transfer_id)
        except TransientExternalError as e:
            logger.warning(f"Transfer {transfer_id} deferred: {e}")
            raise
        except Exception as e:
            await self._fail(transfer_id, str(e) or type(e).__name__)
            raise

    async def _fail(self, transfer_id: str, message: str) -> Optional[TransferRecord]:
        try:
            record = await self.store.transition(
                transfer_id, {"status": TransferStatus.FAILED, "error_message": message}
            )
        except (InvalidTransitionError, StaleTransitionError, NotFoundError) as e:
            logger.error(f"Transfer {transfer_id}: could not record failure ({message}): {e}")
            return None
        logger.error(f"Transfer {transfer_id} failed: {message}")
        return record

    async def _fresh(self, transfer_id: str) -> TransferRecord:
        record = await self.store.get(transfer_id)
        if record is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return record

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def spawn_resume(self, transfer_id: str) -> asyncio.Task:
        """Resume a record on its own task, at most one task per record."""
        task = self._tasks.get(transfer_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.resume(transfer_id), name=f"resume-{transfer_id}")
        self._tasks[transfer_id] = task
        task.add_done_callback(lambda t: self._on_resume_done(transfer_id, t))
        return task

    def _on_resume_done(self, transfer_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(transfer_id) is task:
            del self._tasks[transfer_id]
        if task.cancelled():
            return

        exc = task.exception()
        if exc is None:
            record = task.result()
            logger.debug(f"Background resume of {transfer_id} ended in {record.status.value}")
        elif isinstance(exc, TransientExternalError):
            logger.info(f"Background resume of {transfer_id} deferred: {exc}")
        else:
            logger.error(f"Background resume of {transfer_id} failed: {exc}")

    @property
    def in_flight(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        """Cancel background resumes; records stay resumable."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
