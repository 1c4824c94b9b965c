"""Account model."""

from decimal import Decimal
import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Credit-holding user account.

    ``balance`` is a cached projection of the completed ledger entries.
    ``version`` is bumped on every balance write and checked by the ORM, so a
    writer holding a stale copy fails instead of overwriting a newer balance.
    """

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    balance = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    version = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    ledger_entries = relationship("LedgerEntry", back_populates="account")
    sandbox_sessions = relationship("SandboxSession", back_populates="account")

    __mapper_args__ = {"version_id_col": version}
