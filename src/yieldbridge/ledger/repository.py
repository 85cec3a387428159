"""Repository for transfer rows."""

from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from yieldbridge.ledger.models import TransferRow
from yieldbridge.onchain.base import Position
from yieldbridge.transfers.records import (
    Direction,
    TransferRecord,
    TransferStatus,
    position_columns,
)

ROW_FIELDS = (
    "id",
    "direction",
    "user_address",
    "source_chain",
    "dest_chain",
    "status",
    "amount",
    "protocol",
    "pool_address",
    "source_tx_hash",
    "attestation_message",
    "attestation_proof",
    "dest_tx_hash",
    "pending_tx_hash",
    "error_message",
    "created_at",
    "updated_at",
)


def row_values(record: TransferRecord) -> dict:
    """Column values for a record."""
    values = {name: getattr(record, name) for name in ROW_FIELDS}
    values["direction"] = record.direction.value
    values["status"] = record.status.value
    values.update(position_columns(record.position))
    return values


def row_to_record(row: TransferRow) -> TransferRecord:
    position = None
    if row.pool_id is not None:
        position = Position(
            pool_id=row.pool_id,
            position_id=row.position_id,
            owner=row.position_owner,
            principal_amount=row.principal_amount,
            shares=row.shares,
            vault=row.vault_address,
        )
    return TransferRecord(
        id=row.id,
        direction=Direction(row.direction),
        user_address=row.user_address,
        source_chain=row.source_chain,
        dest_chain=row.dest_chain,
        status=TransferStatus(row.status),
        amount=row.amount,
        protocol=row.protocol,
        pool_address=row.pool_address,
        position=position,
        source_tx_hash=row.source_tx_hash,
        attestation_message=row.attestation_message,
        attestation_proof=row.attestation_proof,
        dest_tx_hash=row.dest_tx_hash,
        pending_tx_hash=row.pending_tx_hash,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class TransferRepository:
    """Repository for all transfer-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: TransferRecord) -> TransferRecord:
        """Insert a new row. Flushes so unique violations surface here."""
        self.session.add(TransferRow(**row_values(record)))
        await self.session.flush()
        return record

    async def get(self, transfer_id: str) -> Optional[TransferRecord]:
        """Get transfer by ID."""
        stmt = select(TransferRow).where(TransferRow.id == transfer_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return row_to_record(row) if row else None

    async def get_by_source_tx(
        self, direction: Direction, source_tx_hash: str
    ) -> Optional[TransferRecord]:
        """Get transfer by its source-chain transaction hash."""
        stmt = select(TransferRow).where(
            TransferRow.direction == direction.value,
            TransferRow.source_tx_hash == source_tx_hash,
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return row_to_record(row) if row else None

    async def get_active_for_user(
        self, user_address: str, direction: Direction
    ) -> Optional[TransferRecord]:
        """Newest non-terminal transfer for a user."""
        stmt = (
            select(TransferRow)
            .where(
                TransferRow.user_address == user_address,
                TransferRow.direction == direction.value,
                TransferRow.status.notin_(
                    [TransferStatus.COMPLETED.value, TransferStatus.FAILED.value]
                ),
            )
            .order_by(TransferRow.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return row_to_record(row) if row else None

    async def list_for_user(
        self,
        user_address: str,
        direction: Optional[Direction] = None,
        limit: Optional[int] = None,
    ) -> list[TransferRecord]:
        """User's transfers, newest first."""
        stmt = select(TransferRow).where(TransferRow.user_address == user_address)
        if direction is not None:
            stmt = stmt.where(TransferRow.direction == direction.value)
        stmt = stmt.order_by(TransferRow.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [row_to_record(row) for row in result.scalars().all()]

    async def list_by_status(
        self,
        statuses: Sequence[TransferStatus],
        direction: Optional[Direction] = None,
        with_source_tx: bool = False,
        with_pending_tx: bool = False,
        limit: Optional[int] = None,
    ) -> list[TransferRecord]:
        """Transfers in any of ``statuses``, oldest first.

        Unbounded unless ``limit`` is given; the resumption sweep reads the
        whole backlog.
        """
        stmt = select(TransferRow).where(TransferRow.status.in_([s.value for s in statuses]))
        if direction is not None:
            stmt = stmt.where(TransferRow.direction == direction.value)
        if with_source_tx:
            stmt = stmt.where(TransferRow.source_tx_hash.is_not(None))
        if with_pending_tx:
            stmt = stmt.where(TransferRow.pending_tx_hash.is_not(None))
        stmt = stmt.order_by(TransferRow.created_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [row_to_record(row) for row in result.scalars().all()]

    async def update_if_status(
        self, record: TransferRecord, read_status: TransferStatus
    ) -> bool:
        """Write ``record`` only if the row is still in ``read_status``.

        Returns:
            True if the row was updated
        """
        values = row_values(record)
        del values["id"]
        del values["created_at"]
        stmt = (
            update(TransferRow)
            .where(TransferRow.id == record.id, TransferRow.status == read_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count_by_status(self) -> dict[str, int]:
        """Row counts per status, for health reporting."""
        stmt = select(TransferRow.status, func.count()).group_by(TransferRow.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}
