"""
History store - closed sessions plus denormalized counters.

Persisted as:

    {"last_updated": "...", "sessions": [ClosedSession, ...], "stats": {...}}

Sessions are kept most-recent-first (by end time) and capped; the oldest
entries fall off on overflow. ``stats`` is recomputed as a fold over the
full list after every mutation, never incremented, so it cannot drift
from the records it summarizes.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from presence.analytics.aggregator import totals
from presence.errors import StoreIOError
from presence.store.jsonfile import read_json, write_json_atomic
from presence.tracking.models import (
    ClosedSession,
    ExclusionRule,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


def _recency_key(session: ClosedSession):
    return (session.end_time, session.start_time, session.session_id)


class HistoryStore:
    """Append-only, retention-bounded list of closed sessions."""

    def __init__(
        self,
        path: Optional[str] = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        exclusion: Optional[ExclusionRule] = None,
    ):
        self.path = path
        self.limit = limit
        self.exclusion = exclusion or ExclusionRule()

        self._sessions: List[ClosedSession] = []
        self._ids: Set[str] = set()
        self._stats: dict = totals([], self.exclusion)
        self._lock = threading.RLock()
        self._last_updated: Optional[datetime] = None
        self._write_errors = 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def all(self) -> List[ClosedSession]:
        """All sessions, most recent first."""
        with self._lock:
            return list(self._sessions)

    def recent(self, limit: int = 50) -> List[ClosedSession]:
        with self._lock:
            return self._sessions[:max(0, limit)]

    def for_member(self, cid: int) -> List[ClosedSession]:
        with self._lock:
            return [s for s in self._sessions if s.cid == cid]

    def contains(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._ids

    def ids(self) -> Set[str]:
        with self._lock:
            return set(self._ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def stats(self) -> dict:
        """Counters as of the last mutation (a copy)."""
        with self._lock:
            return {name: dict(values) for name, values in self._stats.items()}

    @property
    def last_updated(self) -> Optional[datetime]:
        with self._lock:
            return self._last_updated

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add(self, sessions: Iterable[ClosedSession], persist: bool = True) -> List[ClosedSession]:
        """
        Insert sessions not already present (dedup by session id).

        Returns the sessions actually retained. Sessions pushed past the
        retention cap by the insert are dropped, oldest first.
        """
        with self._lock:
            inserted = []
            for session in sessions:
                if session.session_id in self._ids:
                    continue
                self._sessions.append(session)
                self._ids.add(session.session_id)
                inserted.append(session)

            if not inserted:
                return []

            self._sessions.sort(key=_recency_key, reverse=True)
            if len(self._sessions) > self.limit:
                for dropped in self._sessions[self.limit:]:
                    self._ids.discard(dropped.session_id)
                del self._sessions[self.limit:]
                # Older than everything retained: nothing changed for these
                inserted = [s for s in inserted if s.session_id in self._ids]
                if not inserted:
                    return []

            self.recompute_stats()
            self._last_updated = utcnow()

            if persist:
                self._write_through()

            return inserted

    def recompute_stats(self) -> dict:
        """Rebuild counters from the records."""
        with self._lock:
            self._stats = totals(self._sessions, self.exclusion)
            return self.stats

    def _write_through(self) -> None:
        try:
            self.persist_to_disk()
        except StoreIOError as e:
            self._write_errors += 1
            logger.error(f'History store write failed, keeping in-memory state: {e}')

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def persist_to_disk(self) -> None:
        """Write the full document. Raises StoreIOError on failure."""
        if not self.path:
            return

        with self._lock:
            document = {
                'last_updated': format_timestamp(self._last_updated or utcnow()),
                'sessions': [s.to_dict() for s in self._sessions],
                'stats': self._stats,
            }
            write_json_atomic(self.path, document)

    def load_from_disk(self) -> int:
        """
        Replace in-memory state with the on-disk document.

        Stored counters are ignored and recomputed from the loaded
        sessions. Returns count of sessions loaded.
        """
        if not self.path:
            return 0

        try:
            document = read_json(self.path)
        except StoreIOError as e:
            logger.error(f'Error loading history cache, starting empty: {e}')
            document = None

        sessions: Dict[str, ClosedSession] = {}
        last_updated = None
        if isinstance(document, dict):
            for raw in document.get('sessions') or []:
                try:
                    session = ClosedSession.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f'Skipping unreadable history entry: {e}')
                    continue
                sessions.setdefault(session.session_id, session)
            try:
                last_updated = parse_timestamp(document.get('last_updated'))
            except ValueError:
                last_updated = None

        with self._lock:
            self._sessions = sorted(sessions.values(), key=_recency_key, reverse=True)[:self.limit]
            self._ids = {s.session_id for s in self._sessions}
            self._last_updated = last_updated
            self.recompute_stats()

        logger.info(f'Loaded {len(self._sessions)} history sessions from {self.path}')
        return len(self._sessions)

    @property
    def store_stats(self) -> dict:
        """Get store statistics."""
        with self._lock:
            return {
                'sessions': len(self._sessions),
                'limit': self.limit,
                'last_updated': format_timestamp(self._last_updated) if self._last_updated else None,
                'write_errors': self._write_errors,
            }
