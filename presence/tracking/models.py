"""
Domain types for session lifecycle tracking.

A participant is identified by (category, callsign). The numeric network
id (cid) is carried as metadata only: two snapshot rows with the same
callsign and category are the same logical participant even when the cid
is momentarily missing.

Lifecycle:
    ABSENT --observed--> OPEN --observed--> OPEN (refresh)
    OPEN --absent, <= threshold--> OPEN (grace, unchanged)
    OPEN --absent, > threshold--> CLOSED (history record)
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

UNKNOWN = 'Unknown'
NOT_AVAILABLE = 'N/A'


class Category(str, Enum):
    """
    Participant category.

    - CONTROLLER: a staffed ATC position (frequency, facility)
    - PILOT: an aircraft (departure, arrival, aircraft type)
    """
    CONTROLLER = 'controller'
    PILOT = 'pilot'

    @property
    def key_prefix(self) -> str:
        return 'atc' if self is Category.CONTROLLER else 'pilot'

    @classmethod
    def from_key_prefix(cls, prefix: str) -> 'Category':
        return cls.CONTROLLER if prefix == 'atc' else cls.PILOT


# Category-specific attribute names carried on sessions
CATEGORY_ATTRIBUTES: Dict[Category, Tuple[str, ...]] = {
    Category.CONTROLLER: ('frequency', 'facility', 'fir'),
    Category.PILOT: ('departure', 'arrival', 'aircraft', 'fir'),
}


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------

def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds (the persisted precision)."""
    return truncate_to_millis(datetime.now(timezone.utc))


def truncate_to_millis(dt: datetime) -> datetime:
    dt = ensure_utc(dt)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (e.g. from SQLite) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format as ISO-8601 with millisecond precision and a Z suffix."""
    dt = ensure_utc(dt)
    return dt.strftime('%Y-%m-%dT%H:%M:%S') + f'.{dt.microsecond // 1000:03d}Z'


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string (with 'Z' or an offset) into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        raise ValueError(f'Invalid timestamp: {value!r}')
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return ensure_utc(datetime.fromisoformat(text))


def duration_minutes(start: datetime, end: datetime) -> int:
    """
    Session length in whole minutes, rounded half-up and clamped to >= 1.

    The clamp absorbs clock skew and sub-minute flaps.
    """
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return max(1, int(math.floor(seconds / 60.0 + 0.5)))


# -------------------------------------------------------------------------
# Identity and classified snapshot rows
# -------------------------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    """(category, callsign) pair; the only key for a participant."""
    category: Category
    callsign: str

    @property
    def key(self) -> str:
        return f'{self.category.key_prefix}-{self.callsign}'

    @classmethod
    def from_key(cls, key: str) -> 'Identity':
        prefix, _, callsign = key.partition('-')
        if not callsign:
            raise ValueError(f'Invalid identity key: {key!r}')
        return cls(Category.from_key_prefix(prefix), callsign)


@dataclass
class ClassifiedEntry:
    """One snapshot row that passed the inclusion rules."""
    identity: Identity
    cid: int = 0
    name: str = UNKNOWN
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def category(self) -> Category:
        return self.identity.category

    @property
    def callsign(self) -> str:
        return self.identity.callsign


# -------------------------------------------------------------------------
# Pseudo-session exclusion
# -------------------------------------------------------------------------

@dataclass(frozen=True)
class ExclusionRule:
    """
    Marks broadcast/auxiliary controller positions (e.g. ``*_ATIS``).

    Excluded sessions are kept for display but never counted in
    duration/session aggregates or used as a member's last callsign.
    """
    suffixes: Tuple[str, ...] = ('_ATIS',)

    def is_excluded_callsign(self, callsign: Optional[str]) -> bool:
        if not callsign:
            return False
        upper = callsign.upper()
        return any(upper.endswith(suffix.upper()) for suffix in self.suffixes)

    def excludes(self, category: Category, callsign: Optional[str]) -> bool:
        return category is Category.CONTROLLER and self.is_excluded_callsign(callsign)

    def excludes_session(self, session: Any) -> bool:
        """Works for OpenSession, ClosedSession and ClassifiedEntry."""
        return self.excludes(session.category, session.callsign)


# -------------------------------------------------------------------------
# Sessions
# -------------------------------------------------------------------------

def session_id_for(identity: Identity, started_at: datetime) -> str:
    """Deterministic closed-session id used for deduplication everywhere."""
    return f'{identity.key}-{format_timestamp(started_at)}'


def _attributes_from(data: Dict[str, Any], category: Category) -> Dict[str, str]:
    return {
        name: str(data[name])
        for name in CATEGORY_ATTRIBUTES[category]
        if data.get(name) is not None
    }


@dataclass
class OpenSession:
    """
    In-progress presence record, owned by the session store.

    Invariant: last_seen_at >= started_at.
    """
    identity: Identity
    started_at: datetime
    last_seen_at: datetime
    cid: int = 0
    name: str = UNKNOWN
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def category(self) -> Category:
        return self.identity.category

    @property
    def callsign(self) -> str:
        return self.identity.callsign

    @classmethod
    def start(cls, entry: ClassifiedEntry, now: datetime) -> 'OpenSession':
        return cls(
            identity=entry.identity,
            started_at=now,
            last_seen_at=now,
            cid=entry.cid,
            name=entry.name,
            attributes=dict(entry.attributes),
        )

    def refreshed(self, entry: ClassifiedEntry, now: datetime) -> 'OpenSession':
        """
        Copy with a new heartbeat and the entry's mutable attributes.

        started_at is preserved and last_seen_at never moves backwards.
        A missing cid in the new row does not erase a known one.
        """
        attributes = dict(self.attributes)
        attributes.update(entry.attributes)
        return replace(
            self,
            last_seen_at=max(self.last_seen_at, now),
            cid=entry.cid or self.cid,
            name=entry.name if entry.name and entry.name != UNKNOWN else self.name,
            attributes=attributes,
        )

    def close(self) -> 'ClosedSession':
        """Convert to a history record ending at the last observation."""
        return ClosedSession(
            session_id=session_id_for(self.identity, self.started_at),
            category=self.category,
            callsign=self.callsign,
            cid=self.cid,
            name=self.name,
            attributes=dict(self.attributes),
            start_time=self.started_at,
            end_time=self.last_seen_at,
            duration_minutes=duration_minutes(self.started_at, self.last_seen_at),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.key,
            'type': self.category.value,
            'cid': self.cid,
            'name': self.name,
            'callsign': self.callsign,
            **self.attributes,
            'start_time': format_timestamp(self.started_at),
            'last_seen': format_timestamp(self.last_seen_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OpenSession':
        category = Category(data['type'])
        started_at = parse_timestamp(data['start_time'])
        last_seen_at = parse_timestamp(data.get('last_seen') or data['start_time'])
        return cls(
            identity=Identity(category, data['callsign']),
            started_at=started_at,
            last_seen_at=max(started_at, last_seen_at),
            cid=int(data.get('cid') or 0),
            name=data.get('name') or UNKNOWN,
            attributes=_attributes_from(data, category),
        )


@dataclass(frozen=True)
class ClosedSession:
    """Immutable history record derived from an evicted OpenSession."""
    session_id: str
    category: Category
    callsign: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    cid: int = 0
    name: str = UNKNOWN
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> Identity:
        return Identity(self.category, self.callsign)

    @property
    def date(self) -> str:
        """UTC calendar date of the session start (YYYY-MM-DD)."""
        return ensure_utc(self.start_time).strftime('%Y-%m-%d')

    @classmethod
    def from_times(
        cls,
        identity: Identity,
        start_time: datetime,
        end_time: datetime,
        cid: int = 0,
        name: str = UNKNOWN,
        attributes: Optional[Dict[str, str]] = None,
        minutes: Optional[int] = None,
    ) -> 'ClosedSession':
        """Build a record from imported data (durable rows, backfill items)."""
        start_time = truncate_to_millis(start_time)
        end_time = max(start_time, truncate_to_millis(end_time))
        return cls(
            session_id=session_id_for(identity, start_time),
            category=identity.category,
            callsign=identity.callsign,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=max(1, minutes) if minutes else duration_minutes(start_time, end_time),
            cid=cid or 0,
            name=name or UNKNOWN,
            attributes=dict(attributes or {}),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.session_id,
            'type': self.category.value,
            'cid': self.cid,
            'name': self.name,
            'callsign': self.callsign,
            **self.attributes,
            'start_time': format_timestamp(self.start_time),
            'end_time': format_timestamp(self.end_time),
            'duration_minutes': self.duration_minutes,
            'date': self.date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClosedSession':
        category = Category(data['type'])
        identity = Identity(category, data['callsign'])
        start_time = parse_timestamp(data['start_time'])
        return cls(
            session_id=data.get('id') or session_id_for(identity, start_time),
            category=category,
            callsign=data['callsign'],
            start_time=start_time,
            end_time=parse_timestamp(data['end_time']),
            duration_minutes=max(1, int(data.get('duration_minutes') or 1)),
            cid=int(data.get('cid') or 0),
            name=data.get('name') or UNKNOWN,
            attributes=_attributes_from(data, category),
        )
