"""SQLAlchemy models for the transfer ledger."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransferRow(Base):
    """One deposit or withdraw workflow.

    uint256 amounts are kept as decimal strings; they overflow NUMERIC on
    some backends.
    """

    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    source_chain: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    dest_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    # Deposit payload
    amount: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    protocol: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pool_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # Withdraw position snapshot
    pool_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position_id: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    position_owner: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    principal_amount: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    shares: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    vault_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # Bridge progress
    source_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    attestation_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attestation_proof: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dest_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    pending_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        # NULL source hashes (withdraws before initWithdraw) never collide
        Index("ix_transfers_direction_source_tx", "direction", "source_tx_hash", unique=True),
        Index("ix_transfers_user_direction", "user_address", "direction"),
        Index("ix_transfers_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Transfer {self.id} {self.direction} {self.status}>"
