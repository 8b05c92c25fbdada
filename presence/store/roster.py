"""
Member roster - per-member activity totals.

Persisted as ``{"last_updated": "...", "members": {"<cid>": Member}}``.
Members are registered on first sight (source ``auto-detected``) or
added manually. The roster keeps:

- display name (placeholders are replaced once a real name is seen)
- last seen time and last active callsign
- controller/pilot minutes and session count from closed sessions

Pseudo-sessions (e.g. ATIS) never add minutes and never become a
member's last callsign; the injected resolver finds the most recent
real callsign instead.
"""

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set

from presence.analytics.aggregator import format_minutes
from presence.errors import StoreIOError
from presence.store.jsonfile import read_json, write_json_atomic
from presence.tracking.models import (
    UNKNOWN,
    Category,
    ClosedSession,
    ExclusionRule,
    format_timestamp,
    utcnow,
)
from presence.tracking.resolver import LastCallsignResolver

logger = logging.getLogger(__name__)

SOURCE_MANUAL = 'manual'
SOURCE_AUTO = 'auto-detected'

PLACEHOLDER_NAMES = ('', UNKNOWN, 'Not Tracked')

DEFAULT_POSITION_TOKENS = ('DEL', 'GND', 'TWR', 'APP', 'DEP', 'CTR', 'FSS', 'ATIS')


@dataclass
class Member:
    cid: int
    name: str = UNKNOWN
    source: str = SOURCE_AUTO
    added_at: Optional[str] = None
    last_seen: Optional[str] = None
    last_callsign: Optional[str] = None
    controller_minutes: int = 0
    pilot_minutes: int = 0
    sessions_count: int = 0

    @property
    def total_minutes(self) -> int:
        return self.controller_minutes + self.pilot_minutes

    def to_dict(self) -> dict:
        data = asdict(self)
        data['controller_hours'] = format_minutes(self.controller_minutes)
        data['pilot_hours'] = format_minutes(self.pilot_minutes)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Member':
        return cls(
            cid=int(data['cid']),
            name=data.get('name') or UNKNOWN,
            source=data.get('source') or SOURCE_AUTO,
            added_at=data.get('added_at'),
            last_seen=data.get('last_seen'),
            last_callsign=data.get('last_callsign'),
            controller_minutes=int(data.get('controller_minutes') or 0),
            pilot_minutes=int(data.get('pilot_minutes') or 0),
            sessions_count=int(data.get('sessions_count') or 0),
        )


class MemberRoster:
    """JSON-backed member roster, thread-safe."""

    def __init__(
        self,
        path: Optional[str] = None,
        exclusion: Optional[ExclusionRule] = None,
        resolver: Optional[LastCallsignResolver] = None,
        position_tokens=DEFAULT_POSITION_TOKENS,
    ):
        self.path = path
        self.exclusion = exclusion or ExclusionRule()
        self.resolver = resolver or LastCallsignResolver(exclusion=self.exclusion)
        self._position_pattern = re.compile(
            rf'^({"|".join(re.escape(t) for t in position_tokens)})$', re.IGNORECASE
        )

        self._members: Dict[int, Member] = {}
        # Ids of closed sessions already added to the totals
        self._counted: Set[str] = set()
        self._lock = threading.RLock()
        self._last_updated: Optional[datetime] = None
        self._defer_depth = 0
        self._dirty = False

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, cid: int) -> Optional[Member]:
        with self._lock:
            return self._members.get(cid)

    def members(self) -> List[Member]:
        """Members by total minutes, most active first."""
        with self._lock:
            members = list(self._members.values())
        return sorted(members, key=lambda m: (-m.total_minutes, m.cid))

    def summary(self) -> dict:
        members = self.members()
        controller_minutes = sum(m.controller_minutes for m in members)
        pilot_minutes = sum(m.pilot_minutes for m in members)
        return {
            'total_members': len(members),
            'auto_detected': sum(1 for m in members if m.source == SOURCE_AUTO),
            'total_controller_minutes': controller_minutes,
            'total_controller_hours': format_minutes(controller_minutes),
            'total_pilot_minutes': pilot_minutes,
            'total_pilot_hours': format_minutes(pilot_minutes),
            'total_sessions': sum(m.sessions_count for m in members),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def _is_real_name(self, cid: int, name: Optional[str]) -> bool:
        if not name or not name.strip() or name in PLACEHOLDER_NAMES:
            return False
        if name.strip() == str(cid):
            return False
        return not self._position_pattern.match(name.strip())

    def add_member(self, cid: int, name: Optional[str] = None, source: str = SOURCE_MANUAL) -> Member:
        """Register a member; an existing entry is returned unchanged."""
        with self._lock:
            member = self._members.get(cid)
            if member is None:
                member = Member(
                    cid=cid,
                    name=name if self._is_real_name(cid, name) else UNKNOWN,
                    source=source,
                    added_at=format_timestamp(utcnow()),
                )
                self._members[cid] = member
                self._mark_changed()
                logger.info(f'Added member {cid} to roster ({source})')
            return member

    def remove_member(self, cid: int) -> bool:
        with self._lock:
            removed = self._members.pop(cid, None) is not None
            if removed:
                self._mark_changed()
            return removed

    def notify_observed(self, cid: int, name: Optional[str], callsign: Optional[str]) -> None:
        """A member was seen online under ``callsign``."""
        if not cid:
            return
        with self._lock:
            member = self.add_member(cid, name, source=SOURCE_AUTO)
            if member.name in PLACEHOLDER_NAMES and self._is_real_name(cid, name):
                member.name = name.strip()
            member.last_seen = format_timestamp(utcnow())
            member.last_callsign = self.resolver.choose(cid, callsign, member.last_callsign)
            self._mark_changed()

    def record_closed(self, session: ClosedSession) -> bool:
        """
        Add a finished session to the member's totals.

        Idempotent per session id: a session closed twice (e.g. reopened
        from a stale checkpoint) is counted once. Returns True if counted.
        """
        if not session.cid:
            return False
        with self._lock:
            if session.session_id in self._counted:
                logger.debug(f'Session {session.session_id} already counted for {session.cid}')
                return False
            member = self.add_member(session.cid, session.name, source=SOURCE_AUTO)
            member.last_seen = format_timestamp(utcnow())
            member.last_callsign = self.resolver.choose(
                session.cid, session.callsign, member.last_callsign
            )
            if not self.exclusion.excludes_session(session):
                if session.category is Category.CONTROLLER:
                    member.controller_minutes += session.duration_minutes
                else:
                    member.pilot_minutes += session.duration_minutes
                member.sessions_count += 1
            self._counted.add(session.session_id)
            self._mark_changed()
            return True

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @contextmanager
    def deferred(self) -> Iterator['MemberRoster']:
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
            logger.error(f'Roster write failed, keeping in-memory state: {e}')

    def persist_to_disk(self) -> None:
        if not self.path:
            self._dirty = False
            return
        with self._lock:
            document = {
                'last_updated': format_timestamp(self._last_updated or utcnow()),
                'members': {str(cid): asdict(m) for cid, m in self._members.items()},
                'counted_sessions': sorted(self._counted),
            }
            write_json_atomic(self.path, document)
            self._dirty = False

    def load_from_disk(self) -> int:
        if not self.path:
            return 0
        try:
            document = read_json(self.path)
        except StoreIOError as e:
            logger.error(f'Error loading roster, starting empty: {e}')
            document = None

        members: Dict[int, Member] = {}
        if isinstance(document, dict):
            for key, raw in (document.get('members') or {}).items():
                try:
                    member = Member.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f'Skipping unreadable roster entry {key}: {e}')
                    continue
                members[member.cid] = member

        counted: Set[str] = set()
        if isinstance(document, dict):
            counted = {str(i) for i in document.get('counted_sessions') or []}

        with self._lock:
            self._members = members
            self._counted = counted
            self._dirty = False

        logger.info(f'Loaded {len(members)} roster members from {self.path}')
        return len(members)
