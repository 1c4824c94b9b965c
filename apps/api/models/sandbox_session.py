"""SandboxSession model for metered compute sessions."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base

SESSION_STATUS_RUNNING = "running"
SESSION_STATUS_STOPPED = "stopped"


class SandboxSession(Base):
    """One metered usage period. Rates are snapshotted at start."""

    __tablename__ = "sandbox_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=SESSION_STATUS_RUNNING)
    # Equals account_id while running and NULL once stopped; unique, so an
    # account can hold at most one running session.
    running_key = Column(String, nullable=True, unique=True)
    hourly_rate = Column(Numeric(14, 4), nullable=False)
    daily_rate = Column(Numeric(14, 4), nullable=False)
    cpu = Column(Integer, nullable=True)
    memory_gb = Column(Integer, nullable=True)
    storage_gb = Column(Integer, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    final_cost = Column(Numeric(14, 4), nullable=True)
    charged_amount = Column(Numeric(14, 4), nullable=True)
    unpaid_amount = Column(Numeric(14, 4), nullable=True)
    charge_entry_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="sandbox_sessions")
