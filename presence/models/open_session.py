"""
OpenSessionRecord model - durable checkpoint of in-progress sessions.

Mirrors the ephemeral session store so that a process that lost its
JSON snapshot can rebuild "who is online" from the database. One row per
(category, callsign), maintained with upserts.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from presence.models.base import Base


class OpenSessionRecord(Base):
    """Checkpoint of an open session."""

    __tablename__ = 'open_sessions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    category: Mapped[str] = mapped_column(String(12), nullable=False)
    callsign: Mapped[str] = mapped_column(String(32), nullable=False)
    cid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    frequency: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    facility: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    departure: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    arrival: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    aircraft: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    fir: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,  # Index for stale-session queries
    )

    __table_args__ = (
        UniqueConstraint('category', 'callsign', name='uq_open_sessions_identity'),
    )

    def __repr__(self) -> str:
        return f'<OpenSessionRecord {self.category}:{self.callsign}>'
