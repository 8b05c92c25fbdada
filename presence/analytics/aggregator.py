"""
Period aggregation and duration statistics over closed sessions.

Every number produced here is a pure fold over the session records:
nothing is incremented in place, so re-running an aggregation on
unchanged history always yields identical output, and stored counters
can always be rebuilt from the records they summarize.

Pseudo-sessions (see ExclusionRule) are filtered out in every function
of this module, not only at ingestion time, so that history written
before an exclusion rule existed is still reported correctly.
"""

import logging
from datetime import date, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING

import numpy as np

from presence.tracking.models import Category, ClosedSession, ExclusionRule

if TYPE_CHECKING:
    from presence.store.history_store import HistoryStore

logger = logging.getLogger(__name__)


class GroupBy(str, Enum):
    """Aggregation period."""
    DAY = 'day'
    WEEK = 'week'
    MONTH = 'month'
    YEAR = 'year'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'GroupBy':
        """Parse a query-string value; None means DAY. Raises ValueError."""
        if value is None or value == '':
            return cls.DAY
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = ', '.join(g.value for g in cls)
            raise ValueError(f'Invalid group_by {value!r}; expected one of: {allowed}')


def period_key(session_date: str, group_by: GroupBy) -> str:
    """
    Map a session date (YYYY-MM-DD) to its period bucket.

    - DAY:   the date itself
    - WEEK:  Monday of the ISO week containing the date
    - MONTH: YYYY-MM
    - YEAR:  YYYY
    """
    if group_by is GroupBy.DAY:
        return session_date
    if group_by is GroupBy.WEEK:
        d = date.fromisoformat(session_date)
        return (d - timedelta(days=d.weekday())).isoformat()
    if group_by is GroupBy.MONTH:
        return session_date[:7]
    return session_date[:4]


def countable(
    sessions: Iterable[ClosedSession],
    exclusion: ExclusionRule,
) -> List[ClosedSession]:
    """Sessions that count toward aggregates."""
    return [s for s in sessions if not exclusion.excludes_session(s)]


def _empty_counts() -> Dict[str, int]:
    counts = {}
    for category in Category:
        counts[f'{category.value}_minutes'] = 0
        counts[f'{category.value}_sessions'] = 0
    return counts


def totals(sessions: Iterable[ClosedSession], exclusion: ExclusionRule) -> dict:
    """
    Fold sessions into per-category totals.

    Returns {'total_minutes': {category: int}, 'total_sessions': {category: int}}.
    """
    minutes = {category.value: 0 for category in Category}
    count = {category.value: 0 for category in Category}
    for session in countable(sessions, exclusion):
        minutes[session.category.value] += session.duration_minutes
        count[session.category.value] += 1
    return {'total_minutes': minutes, 'total_sessions': count}


def aggregate(
    sessions: Iterable[ClosedSession],
    group_by: GroupBy,
    exclusion: ExclusionRule,
) -> List[dict]:
    """
    Bucket sessions by period.

    Returns a list of {'period', '<category>_minutes', '<category>_sessions'}
    sorted ascending by period. Periods containing only excluded sessions
    still appear, with zero counts, so the display timeline has no gaps.
    """
    grouped: Dict[str, Dict[str, int]] = {}
    for session in sessions:
        period = period_key(session.date, group_by)
        bucket = grouped.setdefault(period, _empty_counts())
        if exclusion.excludes_session(session):
            continue
        bucket[f'{session.category.value}_minutes'] += session.duration_minutes
        bucket[f'{session.category.value}_sessions'] += 1

    return [
        {'period': period, **counts}
        for period, counts in sorted(grouped.items(), key=lambda item: item[0])
    ]


def duration_statistics(sessions: Iterable[ClosedSession], exclusion: ExclusionRule) -> dict:
    """
    Distribution of session durations per category (minutes).

    Uses NumPy for the order statistics. Categories with no countable
    sessions report count 0 and None for every statistic.
    """
    by_category: Dict[str, List[int]] = {category.value: [] for category in Category}
    for session in countable(sessions, exclusion):
        by_category[session.category.value].append(session.duration_minutes)

    result = {}
    for category, values in by_category.items():
        if not values:
            result[category] = {
                'count': 0,
                'total': 0,
                'mean': None,
                'median': None,
                'p90': None,
                'max': None,
            }
            continue

        arr = np.asarray(values, dtype=np.float64)
        result[category] = {
            'count': int(arr.size),
            'total': int(arr.sum()),
            'mean': round(float(np.mean(arr)), 2),
            'median': float(np.median(arr)),
            'p90': round(float(np.percentile(arr, 90)), 2),
            'max': int(arr.max()),
        }
    return result


def format_minutes(total_minutes: float) -> str:
    """Format minutes as HHH:MM:SS."""
    total_seconds = int(total_minutes * 60)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f'{hours:03d}:{minutes:02d}:{seconds:02d}'


class Aggregator:
    """
    Read-only statistics over a history store.

    The store is injected so tests can aggregate synthetic history.
    """

    def __init__(self, history: 'HistoryStore', exclusion: Optional[ExclusionRule] = None):
        self.history = history
        self.exclusion = exclusion or history.exclusion

    def get_aggregated_stats(self, group_by: GroupBy = GroupBy.DAY) -> List[dict]:
        return aggregate(self.history.all(), group_by, self.exclusion)

    def get_totals(self) -> dict:
        return totals(self.history.all(), self.exclusion)

    def get_duration_statistics(self) -> dict:
        return duration_statistics(self.history.all(), self.exclusion)
