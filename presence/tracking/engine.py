"""
Reconciliation engine - snapshot diffing into session lifecycle events.

Each poll cycle hands the engine the full list of classified entries
currently online. The engine diffs it against the open sessions:

1. Observed, not open      -> start a session (started_at = last_seen = now)
2. Observed, already open  -> refresh heartbeat and mutable attributes
3. Open, not observed      -> keep it while now - last_seen <= threshold,
                              close it once the gap exceeds the threshold

The diff itself (``reconcile``) is a pure function over plain values.
``ReconciliationEngine`` applies its result to the injected stores and
hands durable/roster writes to a best-effort writer so that a slow or
failing database never stalls the loop.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional

from presence.tracking.models import (
    ClassifiedEntry,
    ClosedSession,
    ExclusionRule,
    OpenSession,
    format_timestamp,
    truncate_to_millis,
    utcnow,
)

if TYPE_CHECKING:
    from presence.store.durable import SqlDurableStore
    from presence.store.history_store import HistoryStore
    from presence.store.roster import MemberRoster
    from presence.store.session_store import SessionStore
    from presence.store.writer import BestEffortWriter

logger = logging.getLogger(__name__)

DEFAULT_STALE_THRESHOLD = timedelta(seconds=120)


@dataclass
class ReconcileResult:
    """Outcome of one diff; ``updated_open`` replaces the previous mapping."""
    updated_open: Dict[str, OpenSession] = field(default_factory=dict)
    started: List[OpenSession] = field(default_factory=list)
    refreshed: List[OpenSession] = field(default_factory=list)
    closed: List[ClosedSession] = field(default_factory=list)
    in_grace: List[OpenSession] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        return {
            'open': len(self.updated_open),
            'started': len(self.started),
            'refreshed': len(self.refreshed),
            'closed': len(self.closed),
            'in_grace': len(self.in_grace),
        }


def reconcile(
    previous_open: Mapping[str, OpenSession],
    observed: Iterable[ClassifiedEntry],
    now: datetime,
    stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
) -> ReconcileResult:
    """
    Diff one snapshot against the open sessions.

    Pure: neither ``previous_open`` nor the sessions in it are modified.
    Duplicate rows for one identity collapse into one (the last row wins).
    A session is closed iff it is absent and ``now - last_seen_at`` is
    strictly greater than ``stale_threshold``; its end time is its last
    observation, not ``now``.
    """
    now = truncate_to_millis(now)
    result = ReconcileResult()

    observed_by_key: Dict[str, ClassifiedEntry] = {}
    for entry in observed:
        observed_by_key[entry.key] = entry

    for key, entry in observed_by_key.items():
        prior = previous_open.get(key)
        if prior is None:
            session = OpenSession.start(entry, now)
            result.started.append(session)
        else:
            session = prior.refreshed(entry, now)
            result.refreshed.append(session)
        result.updated_open[key] = session

    for key, prior in previous_open.items():
        if key in observed_by_key:
            continue
        if now - prior.last_seen_at > stale_threshold:
            result.closed.append(prior.close())
        else:
            result.updated_open[key] = prior
            result.in_grace.append(prior)

    return result


class ReconciliationEngine:
    """
    Applies reconcile() results to the stores.

    Collaborators are injected; only the session and history stores are
    required. Durable and roster side effects are best-effort: failures
    are logged and counted, never raised into the poll loop.
    """

    def __init__(
        self,
        session_store: 'SessionStore',
        history_store: 'HistoryStore',
        durable: Optional['SqlDurableStore'] = None,
        roster: Optional['MemberRoster'] = None,
        writer: Optional['BestEffortWriter'] = None,
        exclusion: Optional[ExclusionRule] = None,
        stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
    ):
        self.session_store = session_store
        self.history_store = history_store
        self.durable = durable
        self.roster = roster
        self.writer = writer
        self.exclusion = exclusion or ExclusionRule()
        self.stale_threshold = stale_threshold

        # One cycle at a time per process
        self._lock = threading.Lock()

        self._cycle_count = 0
        self._started_total = 0
        self._closed_total = 0
        self._side_effect_errors = 0
        self._last_cycle_at: Optional[datetime] = None

    def run_cycle(
        self,
        observed: Iterable[ClassifiedEntry],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Reconcile one snapshot and apply the result.

        ``now`` is captured once per cycle; every session started,
        refreshed or closed in this cycle uses the same instant.
        """
        observed = list(observed)
        now = truncate_to_millis(now or utcnow())

        with self._lock:
            previous = self.session_store.snapshot()
            result = reconcile(previous, observed, now, self.stale_threshold)

            with self.session_store.deferred():
                for session in result.started:
                    self.session_store.upsert(session)
                for session in result.refreshed:
                    self.session_store.upsert(session)
                for closed in result.closed:
                    self.session_store.delete(closed.identity.key)

            if result.closed:
                self.history_store.add(result.closed)

            self._cycle_count += 1
            self._started_total += len(result.started)
            self._closed_total += len(result.closed)
            self._last_cycle_at = now

        self._dispatch_side_effects(result, observed)

        for closed in result.closed:
            logger.info(
                f'Closed {closed.category.value} session {closed.callsign} '
                f'({closed.duration_minutes} min, ended {format_timestamp(closed.end_time)})'
            )
        logger.info(
            f'Cycle at {format_timestamp(now)}: {len(observed)} observed, '
            f'{len(result.started)} started, {len(result.refreshed)} refreshed, '
            f'{len(result.closed)} closed, {len(result.in_grace)} in grace'
        )
        return result

    # -------------------------------------------------------------------------
    # Best-effort side effects
    # -------------------------------------------------------------------------

    def _submit(self, description: str, fn: Callable[..., Any], *args: Any) -> None:
        if self.writer is not None:
            self.writer.submit(description, fn, *args)
            return
        try:
            fn(*args)
        except Exception as e:
            self._side_effect_errors += 1
            logger.error(f'Side effect failed ({description}): {e}')

    def _dispatch_side_effects(
        self,
        result: ReconcileResult,
        observed: List[ClassifiedEntry],
    ) -> None:
        if self.durable is not None:
            for session in result.started + result.refreshed:
                self._submit(
                    f'checkpoint {session.key}',
                    self.durable.upsert_open_session,
                    session,
                )
            for closed in result.closed:
                self._submit(f'persist {closed.session_id}', self._persist_closed, closed)

        if self.roster is not None and (observed or result.closed):
            self._submit('roster update', self._update_roster, observed, result.closed)

    def _persist_closed(self, closed: ClosedSession) -> None:
        """Insert the history row first so a crash in between loses nothing."""
        self.durable.insert_closed_session(closed)
        self.durable.delete_open_session(closed.identity)

    def _update_roster(
        self,
        observed: List[ClassifiedEntry],
        closed: List[ClosedSession],
    ) -> None:
        with self.roster.deferred():
            for entry in observed:
                if entry.cid:
                    self.roster.notify_observed(entry.cid, entry.name, entry.callsign)
            for session in closed:
                self.roster.record_closed(session)

    @property
    def stats(self) -> dict:
        """Get engine statistics."""
        return {
            'cycles': self._cycle_count,
            'sessions_started': self._started_total,
            'sessions_closed': self._closed_total,
            'side_effect_errors': self._side_effect_errors,
            'last_cycle_at': format_timestamp(self._last_cycle_at) if self._last_cycle_at else None,
            'stale_threshold_seconds': int(self.stale_threshold.total_seconds()),
        }
