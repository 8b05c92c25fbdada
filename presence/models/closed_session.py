"""
ClosedSessionRecord model - long-term session history.

One row per finished session, for both categories. The ``session_key``
column holds the deterministic session id (identity + start time) and is
unique, which turns every insert into insert-or-ignore: the live loop, a
manual backfill and the synchronizer can all write the same session
concurrently without creating duplicates.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from presence.models.base import Base


class ClosedSessionRecord(Base):
    """Historical session record (controller or pilot)."""

    __tablename__ = 'closed_sessions'

    # Surrogate primary key for efficient inserts
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment='Surrogate key'
    )

    session_key: Mapped[str] = mapped_column(
        String(96),
        nullable=False,
        unique=True,
        comment='Deterministic id: <atc|pilot>-<callsign>-<start ISO>'
    )

    category: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        comment='controller or pilot'
    )

    callsign: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment='Callsign (e.g., OPKC_TWR, PIA301)'
    )

    cid: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment='Network member id, if known'
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment='Display name at time of session'
    )

    # Controller attributes
    frequency: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    facility: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    # Pilot attributes
    departure: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    arrival: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    aircraft: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    fir: Mapped[Optional[str]] = mapped_column(
        String(8),
        nullable=True,
        comment='FIR inferred from callsign or position'
    )

    start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment='First observation'
    )

    end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment='Last observation'
    )

    minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment='Duration in minutes (>= 1)'
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        comment='Record creation time'
    )

    __table_args__ = (
        # Per-member session listings and last-callsign lookups
        Index('ix_closed_sessions_cid_start', 'cid', 'start'),
        # Per-position history
        Index('ix_closed_sessions_category_callsign', 'category', 'callsign'),
    )

    def __repr__(self) -> str:
        return f'<ClosedSessionRecord {self.session_key} {self.minutes}m>'
