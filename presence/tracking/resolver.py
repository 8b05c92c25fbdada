"""
Last active callsign lookup.

A member's "last callsign" must never be an excluded pseudo-position
(e.g. an ATIS broadcast). When the callsign just seen is excluded, the
resolver looks for the most recent real one, first hit wins:

1. open sessions in the session store (latest last_seen first)
2. closed sessions in the history store (already most recent first)
3. the durable store
"""

import logging
from typing import TYPE_CHECKING, Optional

from presence.errors import DurableStoreError
from presence.tracking.models import ExclusionRule

if TYPE_CHECKING:
    from presence.store.durable import SqlDurableStore
    from presence.store.history_store import HistoryStore
    from presence.store.session_store import SessionStore

logger = logging.getLogger(__name__)


class LastCallsignResolver:
    """Finds a member's most recent non-excluded callsign."""

    def __init__(
        self,
        session_store: Optional['SessionStore'] = None,
        history_store: Optional['HistoryStore'] = None,
        durable: Optional['SqlDurableStore'] = None,
        exclusion: Optional[ExclusionRule] = None,
    ):
        self.session_store = session_store
        self.history_store = history_store
        self.durable = durable
        self.exclusion = exclusion or ExclusionRule()

    def resolve(self, cid: int) -> Optional[str]:
        """Return the callsign, or None if no store knows one."""
        if not cid:
            return None

        if self.session_store is not None:
            open_sessions = [
                s for s in self.session_store.list_all()
                if s.cid == cid and not self.exclusion.excludes_session(s)
            ]
            if open_sessions:
                latest = max(open_sessions, key=lambda s: (s.last_seen_at, s.started_at))
                return latest.callsign

        if self.history_store is not None:
            for session in self.history_store.for_member(cid):
                if not self.exclusion.excludes_session(session):
                    return session.callsign

        if self.durable is not None:
            try:
                return self.durable.latest_callsign(cid, self.exclusion)
            except DurableStoreError as e:
                logger.warning(f'Durable lookup of last callsign for {cid} failed: {e}')

        return None

    def choose(self, cid: int, callsign: Optional[str], current: Optional[str] = None) -> Optional[str]:
        """
        Apply the last-callsign rule to a freshly seen callsign.

        A non-excluded callsign is taken as-is. An excluded one is
        replaced by the resolved callsign, falling back to ``current``
        (the value held before) when nothing is found.
        """
        if callsign and not self.exclusion.is_excluded_callsign(callsign):
            return callsign
        return self.resolve(cid) or current
