"""LedgerEntry model for credit accounting."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base

ENTRY_KIND_TOP_UP = "top-up"
ENTRY_KIND_SESSION_CHARGE = "session-charge"
ENTRY_KIND_REFUND = "refund"
ENTRY_KINDS = (ENTRY_KIND_TOP_UP, ENTRY_KIND_SESSION_CHARGE, ENTRY_KIND_REFUND)

ENTRY_STATUS_PENDING = "pending"
ENTRY_STATUS_COMPLETED = "completed"
ENTRY_STATUS_FAILED = "failed"


class LedgerEntry(Base):
    """Signed balance change. Immutable once completed or failed."""

    __tablename__ = "ledger_entries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 4), nullable=False)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ENTRY_STATUS_COMPLETED)
    external_reference = Column(String, nullable=True, index=True)
    # "<kind>:<reference>" on completed top-ups and refunds only; NULL otherwise.
    settlement_key = Column(String, nullable=True, unique=True)
    session_id = Column(String, ForeignKey("sandbox_sessions.id"), nullable=True)
    description = Column(String, nullable=True)
    balance_after = Column(Numeric(14, 4), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="ledger_entries")

    __table_args__ = (
        Index("ix_ledger_entries_account_status", "account_id", "status"),
    )
