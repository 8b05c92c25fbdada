"""
Synchronizer - reconciles the durable store with the ephemeral stores.

pull (durable -> ephemeral):
    1. Read every closed session row, recompute its stable id and insert
       the ones the history store lacks. Counters are refolded by the
       history store, so repeated runs are idempotent.
    2. Read every open-session checkpoint and create it in the session
       store if absent, or move last_seen forward if present. Checkpoints
       whose session id is already closed are ignored.

push (ephemeral -> durable), the retry path for fire-and-forget writes
that were dropped or failed:
    1. Insert every history session (insert-or-ignore).
    2. Checkpoint every open session.
    3. Drop checkpoint rows whose session is already closed.

Run as a job:
    python -m presence.tracking.synchronizer [--pull-only | --push-only]
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, List, Optional

from presence.errors import DurableStoreError
from presence.tracking.models import Category, ClosedSession, session_id_for

if TYPE_CHECKING:
    from presence.store.durable import SqlDurableStore
    from presence.store.history_store import HistoryStore
    from presence.store.session_store import SessionStore

logger = logging.getLogger(__name__)


def _per_category() -> Dict[str, int]:
    return {c.value: 0 for c in Category}


@dataclass
class SyncReport:
    """Counts produced by one synchronizer run."""
    inserted: Dict[str, int] = field(default_factory=_per_category)
    skipped: Dict[str, int] = field(default_factory=_per_category)
    open_created: int = 0
    open_refreshed: int = 0
    open_already_closed: int = 0
    pushed_closed: int = 0
    pushed_duplicates: int = 0
    pushed_open: int = 0
    pruned_open: int = 0

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())

    def to_dict(self) -> dict:
        return {
            'inserted': dict(self.inserted),
            'skipped': dict(self.skipped),
            'total_inserted': self.total_inserted,
            'total_skipped': self.total_skipped,
            'open_created': self.open_created,
            'open_refreshed': self.open_refreshed,
            'open_already_closed': self.open_already_closed,
            'pushed_closed': self.pushed_closed,
            'pushed_duplicates': self.pushed_duplicates,
            'pushed_open': self.pushed_open,
            'pruned_open': self.pruned_open,
        }


class Synchronizer:
    """Moves sessions between the durable store and the ephemeral stores."""

    def __init__(
        self,
        durable: 'SqlDurableStore',
        session_store: 'SessionStore',
        history_store: 'HistoryStore',
    ):
        self.durable = durable
        self.session_store = session_store
        self.history_store = history_store

    def pull(self, report: Optional[SyncReport] = None) -> SyncReport:
        """
        Import durable rows into the ephemeral stores.

        Raises DurableStoreError if the durable store cannot be read;
        nothing is modified in that case.
        """
        report = report or SyncReport()

        closed_rows = self.durable.list_closed_sessions()
        open_rows = self.durable.list_open_sessions()

        known_ids = self.history_store.ids()
        candidates: List[ClosedSession] = []
        for closed in closed_rows:
            category = closed.category.value
            if closed.session_id in known_ids:
                report.skipped[category] += 1
                continue
            known_ids.add(closed.session_id)
            candidates.append(closed)

        inserted = _count_by_category(self.history_store.add(candidates))
        # Rows rejected by the store itself (e.g. raced in) count as skipped
        for category, count in _count_by_category(candidates).items():
            report.inserted[category] += inserted[category]
            report.skipped[category] += count - inserted[category]

        # CLOSED is terminal: a checkpoint left behind by a failed delete
        # must not reopen its session. push() removes those rows.
        closed_ids = self.history_store.ids()
        closed_ids.update(closed.session_id for closed in closed_rows)

        with self.session_store.deferred():
            for checkpoint in open_rows:
                if session_id_for(checkpoint.identity, checkpoint.started_at) in closed_ids:
                    report.open_already_closed += 1
                    continue
                existing = self.session_store.get(checkpoint.key)
                if existing is None:
                    self.session_store.upsert(checkpoint)
                    report.open_created += 1
                elif checkpoint.last_seen_at > existing.last_seen_at:
                    self.session_store.upsert(replace(existing, last_seen_at=checkpoint.last_seen_at))
                    report.open_refreshed += 1

        logger.info(
            f'Pull complete: {report.total_inserted} closed sessions imported '
            f'({report.inserted}), {report.total_skipped} already present, '
            f'{report.open_created} open created, {report.open_refreshed} open refreshed, '
            f'{report.open_already_closed} checkpoints of closed sessions ignored'
        )
        return report

    def push(self, report: Optional[SyncReport] = None) -> SyncReport:
        """
        Write ephemeral state back to the durable store.

        Raises DurableStoreError (or DurableWriteError) on failure.
        """
        report = report or SyncReport()

        history = self.history_store.all()
        inserted, duplicates = self.durable.insert_closed_sessions(history)
        report.pushed_closed += inserted
        report.pushed_duplicates += duplicates

        open_sessions = self.session_store.list_all()
        for session in open_sessions:
            self.durable.upsert_open_session(session)
            report.pushed_open += 1

        open_keys = {s.key for s in open_sessions}
        closed_ids = self.history_store.ids()
        for checkpoint in self.durable.list_open_sessions():
            if checkpoint.key in open_keys:
                continue
            if session_id_for(checkpoint.identity, checkpoint.started_at) in closed_ids:
                if self.durable.delete_open_session(checkpoint.identity):
                    report.pruned_open += 1

        logger.info(
            f'Push complete: {inserted} closed sessions written '
            f'({duplicates} already present), {report.pushed_open} open checkpoints, '
            f'{report.pruned_open} stale checkpoints removed'
        )
        return report

    def run(self) -> SyncReport:
        """Pull then push."""
        report = self.pull()
        return self.push(report)


def _count_by_category(sessions: List[ClosedSession]) -> Dict[str, int]:
    counts = _per_category()
    for session in sessions:
        counts[session.category.value] += 1
    return counts


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``presence-sync``."""
    parser = argparse.ArgumentParser(description='Synchronize the durable store with the local caches.')
    direction = parser.add_mutually_exclusive_group()
    direction.add_argument('--pull-only', action='store_true', help='durable -> local caches only')
    direction.add_argument('--push-only', action='store_true', help='local caches -> durable only')
    args = parser.parse_args(argv)

    from presence.log import configure_logging
    from presence.wiring import build_services

    configure_logging()
    services = build_services(load_state=True)
    synchronizer = Synchronizer(services.durable, services.session_store, services.history_store)

    try:
        if args.pull_only:
            report = synchronizer.pull()
        elif args.push_only:
            report = synchronizer.push()
        else:
            report = synchronizer.run()
    except DurableStoreError as e:
        logger.error(f'Synchronization aborted, durable store unavailable: {e}')
        return 1

    logger.info(f'Synchronization finished: {report.to_dict()}')
    return 0


if __name__ == '__main__':
    sys.exit(main())
