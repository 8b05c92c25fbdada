"""
Storage layer.

Ephemeral (JSON, survives restarts, fast reads for the API):
- SessionStore: open sessions
- HistoryStore: capped closed-session history + counters
- MemberRoster: per-member totals

Durable (SQLAlchemy):
- SqlDurableStore: long-term closed sessions and open checkpoints

BestEffortWriter moves durable/roster writes off the poll loop.
"""

from presence.store.session_store import SessionStore
from presence.store.history_store import HistoryStore
from presence.store.durable import ClosedSessionFilter, SqlDurableStore
from presence.store.roster import Member, MemberRoster
from presence.store.writer import BestEffortWriter

__all__ = [
    'SessionStore',
    'HistoryStore',
    'ClosedSessionFilter',
    'SqlDurableStore',
    'Member',
    'MemberRoster',
    'BestEffortWriter',
]
