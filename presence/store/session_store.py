"""
Session store - the "currently believed online" state.

Holds one OpenSession per participant key. Survives process restarts via
a JSON snapshot written through on every mutation:

    {"last_updated": "...", "sessions": {"atc-OPKC_TWR": {...}, ...}}

Design notes:
- Thread-safe: the poll loop is the only writer, Flask request threads
  read through the same lock and always receive copies.
- A failed disk write never loses state. Memory stays authoritative and
  the store is marked dirty so the next mutation retries the write.
- ``deferred()`` batches a whole reconciliation cycle into one write.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from presence.errors import StoreIOError
from presence.store.jsonfile import read_json, write_json_atomic
from presence.tracking.models import OpenSession, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Key -> OpenSession mapping with write-through JSON persistence.

    Pass ``path=None`` for a purely in-memory store (tests, one-off jobs).
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path

        self._sessions: Dict[str, OpenSession] = {}
        self._lock = threading.RLock()
        self._last_updated: Optional[datetime] = None

        # Write-through bookkeeping
        self._defer_depth = 0
        self._dirty = False
        self._write_errors = 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Optional[OpenSession]:
        with self._lock:
            return self._sessions.get(key)

    def list_all(self) -> List[OpenSession]:
        """All open sessions, oldest start first."""
        with self._lock:
            sessions = list(self._sessions.values())
        sessions.sort(key=lambda s: (s.started_at, s.key))
        return sessions

    def snapshot(self) -> Dict[str, OpenSession]:
        """Consistent copy of the mapping for one reconciliation cycle."""
        with self._lock:
            return dict(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._sessions

    @property
    def last_updated(self) -> Optional[datetime]:
        with self._lock:
            return self._last_updated

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def upsert(self, session: OpenSession) -> None:
        with self._lock:
            self._sessions[session.key] = session
            self._mark_changed()

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(key, None) is not None
            if removed:
                self._mark_changed()
            return removed

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._mark_changed()

    @contextmanager
    def deferred(self) -> Iterator['SessionStore']:
        """Suspend write-through; persist once when the outermost block exits."""
        with self._lock:
            self._defer_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._defer_depth -= 1
                if self._defer_depth == 0 and self._dirty:
                    self._write_through()

    def _mark_changed(self) -> None:
        self._dirty = True
        self._last_updated = utcnow()
        if self._defer_depth == 0:
            self._write_through()

    def _write_through(self) -> None:
        try:
            self.persist_to_disk()
        except StoreIOError as e:
            self._write_errors += 1
            logger.error(f'Session store write failed, keeping in-memory state: {e}')

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def persist_to_disk(self) -> None:
        """Write the full snapshot. Raises StoreIOError on failure."""
        if not self.path:
            self._dirty = False
            return

        with self._lock:
            last_updated = self._last_updated or utcnow()
            document = {
                'last_updated': format_timestamp(last_updated),
                'sessions': {key: s.to_dict() for key, s in self._sessions.items()},
            }
            write_json_atomic(self.path, document)
            self._dirty = False

    def load_from_disk(self) -> int:
        """
        Replace in-memory state with the on-disk snapshot.

        A missing file yields an empty store. An unreadable file is logged
        and also yields an empty store; the synchronizer can rebuild it
        from the durable store. Returns count of sessions loaded.
        """
        if not self.path:
            return 0

        try:
            document = read_json(self.path)
        except StoreIOError as e:
            logger.error(f'Error loading sessions cache, starting empty: {e}')
            document = None

        sessions: Dict[str, OpenSession] = {}
        last_updated = None
        if isinstance(document, dict):
            for key, raw in (document.get('sessions') or {}).items():
                try:
                    session = OpenSession.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f'Skipping unreadable open session {key}: {e}')
                    continue
                sessions[session.key] = session
            try:
                last_updated = parse_timestamp(document.get('last_updated'))
            except ValueError:
                last_updated = None

        with self._lock:
            self._sessions = sessions
            self._last_updated = last_updated
            self._dirty = False

        logger.info(f'Loaded {len(sessions)} open sessions from {self.path}')
        return len(sessions)

    @property
    def stats(self) -> dict:
        """Get store statistics."""
        with self._lock:
            return {
                'open_sessions': len(self._sessions),
                'last_updated': format_timestamp(self._last_updated) if self._last_updated else None,
                'dirty': self._dirty,
                'write_errors': self._write_errors,
            }
