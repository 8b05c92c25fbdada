"""
Object graph construction.

Every entry point (API server, ingest loop, synchronizer) builds the same
set of collaborators here and passes them down explicitly. Nothing in
the tracking core reads configuration or module-level singletons.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from presence.analytics.aggregator import Aggregator
from presence.config import AppConfig, config as default_config
from presence.errors import DurableStoreError
from presence.store.durable import SqlDurableStore
from presence.store.history_store import HistoryStore
from presence.store.roster import MemberRoster
from presence.store.session_store import SessionStore
from presence.store.writer import BestEffortWriter
from presence.tracking.engine import ReconciliationEngine
from presence.tracking.models import ExclusionRule
from presence.tracking.resolver import LastCallsignResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """All long-lived collaborators of one process."""
    exclusion: ExclusionRule
    session_store: SessionStore
    history_store: HistoryStore
    durable: Optional[SqlDurableStore]
    resolver: LastCallsignResolver
    roster: MemberRoster
    writer: BestEffortWriter
    engine: ReconciliationEngine
    aggregator: Aggregator

    def shutdown(self) -> None:
        """Drain pending background writes."""
        self.writer.stop()


def build_services(
    cfg: Optional[AppConfig] = None,
    load_state: bool = True,
    durable: Optional[SqlDurableStore] = None,
    use_durable: bool = True,
    synchronous_writes: bool = False,
) -> Services:
    """
    Build the collaborators from configuration.

    Args:
        cfg: configuration (defaults to the process-wide config)
        load_state: load the JSON caches from disk
        durable: durable store to use instead of one built from DATABASE_URL
        use_durable: set False to run on the JSON caches alone
        synchronous_writes: run durable/roster writes inline (batch jobs, tests)
    """
    cfg = cfg or default_config
    exclusion = ExclusionRule(suffixes=cfg.tracking.excluded_suffixes or ('_ATIS',))

    if use_durable and durable is None:
        if cfg.database.url == default_config.database.url:
            from presence.models import SessionLocal
            durable = SqlDurableStore(SessionLocal)
        else:
            durable = SqlDurableStore.from_url(cfg.database.url, echo=cfg.debug)
    if not use_durable:
        durable = None

    if durable is not None:
        try:
            durable.init_schema()
        except DurableStoreError as e:
            # Writes will fail and be logged; the synchronizer repairs later
            logger.error(f'Durable store unavailable at startup: {e}')

    session_store = SessionStore(cfg.storage.sessions_path)
    history_store = HistoryStore(
        cfg.storage.history_path,
        limit=cfg.tracking.history_limit,
        exclusion=exclusion,
    )
    resolver = LastCallsignResolver(session_store, history_store, durable, exclusion)
    roster = MemberRoster(
        cfg.storage.roster_path,
        exclusion=exclusion,
        resolver=resolver,
        position_tokens=cfg.classifier.controller_positions,
    )

    if load_state:
        session_store.load_from_disk()
        history_store.load_from_disk()
        roster.load_from_disk()

    writer = BestEffortWriter(
        max_size=cfg.tracking.writer_queue_size,
        synchronous=synchronous_writes,
    )

    engine = ReconciliationEngine(
        session_store,
        history_store,
        durable=durable,
        roster=roster,
        writer=writer,
        exclusion=exclusion,
        stale_threshold=timedelta(seconds=cfg.tracking.stale_threshold_seconds),
    )

    return Services(
        exclusion=exclusion,
        session_store=session_store,
        history_store=history_store,
        durable=durable,
        resolver=resolver,
        roster=roster,
        writer=writer,
        engine=engine,
        aggregator=Aggregator(history_store, exclusion),
    )
