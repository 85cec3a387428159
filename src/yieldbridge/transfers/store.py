"""Transfer store: durable (SQL) and degraded (in-memory) variants.

Both variants validate every patch with ``apply_patch`` and commit it as a
compare-and-set on the status read just before, so concurrent workers can
never both move a record out of the same state.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from yieldbridge.config import Settings
from yieldbridge.errors import (
    NotFoundError,
    PersistenceUnavailable,
    StaleTransitionError,
    ValidationError,
)
from yieldbridge.ledger.database import Database
from yieldbridge.ledger.repository import TransferRepository
from yieldbridge.transfers.records import (
    TERMINAL_STATUSES,
    Direction,
    TransferRecord,
    TransferStatus,
    apply_patch,
)

logger = logging.getLogger(__name__)

MAX_TRANSITION_RETRIES = 5

CONFIRMATION_STATUSES = (
    TransferStatus.INITIATING_WITHDRAW,
    TransferStatus.PROCESSING_DEPOSIT,
    TransferStatus.PROCESSING_WITHDRAW,
)

# Ready for an on-chain write that has not gone out yet
SUBMISSION_STATUSES = (
    TransferStatus.POSITION_FOUND,
    TransferStatus.ATTESTATION_RECEIVED,
)


class TransferStore(ABC):
    """Persistence for transfer records."""

    durable = True

    @property
    def mode(self) -> str:
        return "durable" if self.durable else "memory"

    @abstractmethod
    async def create(self, record: TransferRecord) -> TransferRecord:
        """Insert a new record.

        Raises:
            ValidationError: a record with the same natural key exists
        """
        pass

    @abstractmethod
    async def create_deposit_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        """Insert a deposit unless its source tx is already known.

        Returns:
            (record, created)
        """
        pass

    @abstractmethod
    async def get(self, transfer_id: str) -> Optional[TransferRecord]:
        pass

    @abstractmethod
    async def get_by_source_tx(
        self, direction: Direction, source_tx_hash: str
    ) -> Optional[TransferRecord]:
        pass

    @abstractmethod
    async def get_active_for_user(
        self, user_address: str, direction: Direction
    ) -> Optional[TransferRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        transfer_id: str,
        patch: dict[str, Any],
        expected_status: Optional[TransferStatus] = None,
    ) -> TransferRecord:
        """Apply ``patch`` atomically.

        Raises:
            NotFoundError: unknown id
            InvalidTransitionError: illegal move or write-once overwrite
            StaleTransitionError: status is not ``expected_status``
        """
        pass

    @abstractmethod
    async def list_for_user(
        self, user_address: str, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        pass

    @abstractmethod
    async def list_awaiting_attestation(
        self, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        """``pending_attestation`` records with a source tx, oldest first."""
        pass

    @abstractmethod
    async def list_awaiting_confirmation(self) -> list[TransferRecord]:
        """Records with a broadcast write whose receipt was never seen."""
        pass

    @abstractmethod
    async def list_awaiting_submission(self) -> list[TransferRecord]:
        """Located withdraws and attested transfers whose write never went out."""
        pass

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        pass

    async def get_by_natural_key(
        self, direction: Direction, key: str
    ) -> Optional[TransferRecord]:
        """Deposits by source tx hash, withdraws by user address."""
        if direction == Direction.DEPOSIT:
            return await self.get_by_source_tx(direction, key)
        return await self.get_active_for_user(key, direction)

    async def close(self) -> None:
        pass


class SQLTransferStore(TransferStore):
    """Store backed by the ``transfers`` table."""

    durable = True

    def __init__(self, db: Database):
        self.db = db

    async def create(self, record: TransferRecord) -> TransferRecord:
        try:
            async with self.db.session() as session:
                return await TransferRepository(session).add(record)
        except IntegrityError as e:
            raise ValidationError(
                f"Transfer with source tx {record.source_tx_hash} already exists"
            ) from e

    async def create_deposit_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        existing = await self.get_by_source_tx(record.direction, record.source_tx_hash)
        if existing is not None:
            return existing, False

        try:
            async with self.db.session() as session:
                await TransferRepository(session).add(record)
            return record, True
        except IntegrityError:
            # Lost the insert race to a concurrent request
            existing = await self.get_by_source_tx(record.direction, record.source_tx_hash)
            if existing is None:
                raise
            return existing, False

    async def get(self, transfer_id: str) -> Optional[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).get(transfer_id)

    async def get_by_source_tx(
        self, direction: Direction, source_tx_hash: str
    ) -> Optional[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).get_by_source_tx(direction, source_tx_hash)

    async def get_active_for_user(
        self, user_address: str, direction: Direction
    ) -> Optional[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).get_active_for_user(user_address, direction)

    async def transition(
        self,
        transfer_id: str,
        patch: dict[str, Any],
        expected_status: Optional[TransferStatus] = None,
    ) -> TransferRecord:
        for attempt in range(MAX_TRANSITION_RETRIES):
            async with self.db.session() as session:
                repo = TransferRepository(session)
                current = await repo.get(transfer_id)
                if current is None:
                    raise NotFoundError(f"Transfer {transfer_id} not found")
                if expected_status is not None and current.status != expected_status:
                    raise StaleTransitionError(
                        transfer_id, expected_status.value, current.status.value
                    )

                updated = apply_patch(current, patch)
                if await repo.update_if_status(updated, current.status):
                    if updated.status != current.status:
                        logger.debug(
                            f"Transfer {transfer_id}: {current.status.value} -> "
                            f"{updated.status.value}"
                        )
                    return updated

            logger.debug(f"Transfer {transfer_id} changed underneath (attempt {attempt + 1})")

        current = await self.get(transfer_id)
        raise StaleTransitionError(
            transfer_id,
            expected_status.value if expected_status else "a stable status",
            current.status.value if current else "missing",
        )

    async def list_for_user(
        self, user_address: str, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).list_for_user(user_address, direction)

    async def list_awaiting_attestation(
        self, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).list_by_status(
                [TransferStatus.PENDING_ATTESTATION], direction=direction, with_source_tx=True
            )

    async def list_awaiting_confirmation(self) -> list[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).list_by_status(
                CONFIRMATION_STATUSES, with_pending_tx=True
            )

    async def list_awaiting_submission(self) -> list[TransferRecord]:
        async with self.db.session() as session:
            return await TransferRepository(session).list_by_status(SUBMISSION_STATUSES)

    async def count_by_status(self) -> dict[str, int]:
        async with self.db.session() as session:
            return await TransferRepository(session).count_by_status()

    async def close(self) -> None:
        await self.db.close()


class MemoryTransferStore(TransferStore):
    """Process-local store used when the database is unreachable.

    Same rules as the SQL store; nothing survives a restart.
    """

    durable = False

    def __init__(self):
        self._records: dict[str, TransferRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TransferRecord) -> TransferRecord:
        async with self._lock:
            if record.source_tx_hash and self._find_source_tx(
                record.direction, record.source_tx_hash
            ):
                raise ValidationError(
                    f"Transfer with source tx {record.source_tx_hash} already exists"
                )
            self._records[record.id] = record
            return record

    async def create_deposit_or_get(self, record: TransferRecord) -> tuple[TransferRecord, bool]:
        async with self._lock:
            existing = self._find_source_tx(record.direction, record.source_tx_hash)
            if existing is not None:
                return existing, False
            self._records[record.id] = record
            return record, True

    def _find_source_tx(self, direction: Direction, source_tx_hash: str) -> Optional[TransferRecord]:
        for record in self._records.values():
            if record.direction == direction and record.source_tx_hash == source_tx_hash:
                return record
        return None

    async def get(self, transfer_id: str) -> Optional[TransferRecord]:
        return self._records.get(transfer_id)

    async def get_by_source_tx(
        self, direction: Direction, source_tx_hash: str
    ) -> Optional[TransferRecord]:
        return self._find_source_tx(direction, source_tx_hash)

    async def get_active_for_user(
        self, user_address: str, direction: Direction
    ) -> Optional[TransferRecord]:
        active = [
            r
            for r in self._records.values()
            if r.user_address == user_address
            and r.direction == direction
            and r.status not in TERMINAL_STATUSES
        ]
        if not active:
            return None
        return max(active, key=lambda r: r.created_at)

    async def transition(
        self,
        transfer_id: str,
        patch: dict[str, Any],
        expected_status: Optional[TransferStatus] = None,
    ) -> TransferRecord:
        async with self._lock:
            current = self._records.get(transfer_id)
            if current is None:
                raise NotFoundError(f"Transfer {transfer_id} not found")
            if expected_status is not None and current.status != expected_status:
                raise StaleTransitionError(
                    transfer_id, expected_status.value, current.status.value
                )
            updated = apply_patch(current, patch)
            self._records[transfer_id] = updated
            return updated

    async def list_for_user(
        self, user_address: str, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        records = [
            r
            for r in self._records.values()
            if r.user_address == user_address and (direction is None or r.direction == direction)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def list_awaiting_attestation(
        self, direction: Optional[Direction] = None
    ) -> list[TransferRecord]:
        records = [
            r
            for r in self._records.values()
            if r.status == TransferStatus.PENDING_ATTESTATION
            and r.source_tx_hash
            and (direction is None or r.direction == direction)
        ]
        return sorted(records, key=lambda r: r.created_at)

    async def list_awaiting_confirmation(self) -> list[TransferRecord]:
        records = [
            r
            for r in self._records.values()
            if r.status in CONFIRMATION_STATUSES and r.pending_tx_hash
        ]
        return sorted(records, key=lambda r: r.created_at)

    async def list_awaiting_submission(self) -> list[TransferRecord]:
        records = [r for r in self._records.values() if r.status in SUBMISSION_STATUSES]
        return sorted(records, key=lambda r: r.created_at)

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._records.values():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts


async def open_transfer_store(settings: Settings) -> TransferStore:
    """Open the durable store, falling back to memory if it is unreachable."""
    db = Database(settings.database_url, echo=settings.debug and not settings.is_production)
    try:
        try:
            await db.init()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceUnavailable(f"Database init failed: {e}") from e
        await db.ping()
    except PersistenceUnavailable as e:
        logger.warning(
            f"{e}. Running in DEGRADED mode with an in-memory transfer store: "
            "records will not survive a restart"
        )
        await db.close()
        return MemoryTransferStore()

    logger.info(f"Transfer store ready ({settings._redact_url(db.url)})")
    return SQLTransferStore(db)
