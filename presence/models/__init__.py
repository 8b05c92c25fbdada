"""
Database models for the durable store.

Schema priorities:
1. Idempotent inserts keyed by deterministic session ids
2. Per-member and per-period queries over closed sessions
3. Crash recovery of in-progress sessions
"""

from presence.models.base import (
    Base,
    engine,
    SessionLocal,
    build_engine,
    build_session_factory,
)
from presence.models.closed_session import ClosedSessionRecord
from presence.models.open_session import OpenSessionRecord

__all__ = [
    'Base',
    'engine',
    'SessionLocal',
    'build_engine',
    'build_session_factory',
    'ClosedSessionRecord',
    'OpenSessionRecord',
]
