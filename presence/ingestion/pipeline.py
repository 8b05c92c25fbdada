"""
Ingestion pipeline - orchestrates the live poll loop.

Pipeline stages (one cycle):
1. Fetch: download the full feed snapshot
2. Classify: keep tracked controllers and pilots
3. Reconcile: start/refresh/close sessions against the session store
4. Notify: invoke update callbacks with the cycle result

A feed failure aborts the cycle before reconciliation, so an outage
never looks like everyone logging off. Any other error is logged and
counted; the loop keeps going.

Run standalone:
    python -m presence.ingestion.pipeline          # continuous
    python -m presence.ingestion.pipeline --once   # single cycle (cron)
"""

import argparse
import logging
import sys
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from presence.errors import FeedUnavailable
from presence.ingestion.classifier import Classifier
from presence.ingestion.feed_client import FeedClient
from presence.tracking.engine import ReconcileResult, ReconciliationEngine
from presence.tracking.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 15.0


class IngestionPipeline:
    """
    Manages the live ingestion lifecycle.

    Coordinates fetching, classification and reconciliation.
    run_cycle() is usable on its own (cron); start_background() polls forever.
    """

    def __init__(
        self,
        client: FeedClient,
        classifier: Classifier,
        engine: ReconciliationEngine,
        interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            client: feed client used for every fetch
            classifier: inclusion rules for snapshot rows
            engine: reconciliation engine bound to the stores
            interval: seconds between cycle starts
            clock: source of the per-cycle ``now`` (injectable for tests)
        """
        self.client = client
        self.classifier = classifier
        self.engine = engine
        self.interval = interval
        self.clock = clock

        # State tracking
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_cycle_at: Optional[datetime] = None
        self._last_success_at: Optional[datetime] = None
        self._cycle_count: int = 0
        self._error_count: int = 0
        self._feed_error_count: int = 0
        self._last_result: Optional[dict] = None

        # Invoked with each successful ReconcileResult
        self._on_update_callbacks: List[Callable[[ReconcileResult], None]] = []

    def add_update_callback(self, callback: Callable[[ReconcileResult], None]) -> None:
        """
        Register callback to be invoked after each successful cycle.

        Callback receives the cycle's ReconcileResult.
        """
        self._on_update_callbacks.append(callback)

    def run_cycle(self) -> Optional[ReconcileResult]:
        """
        Fetch, classify and reconcile once.

        Returns the reconcile result, or None if the cycle was aborted.
        """
        now = self.clock()
        self._last_cycle_at = now
        self._cycle_count += 1

        try:
            # Stage 1: Fetch
            snapshot = self.client.fetch()
        except FeedUnavailable as e:
            self._feed_error_count += 1
            logger.warning(f'Feed unavailable, skipping cycle: {e}')
            return None

        try:
            # Stage 2: Classify
            observed = self.classifier.classify(snapshot)

            # Stage 3: Reconcile
            result = self.engine.run_cycle(observed, now)
        except Exception as e:
            self._error_count += 1
            logger.exception(f'Ingestion error: {e}')
            return None

        self._last_success_at = now
        self._last_result = result.summary

        # Stage 4: Notify callbacks
        for callback in self._on_update_callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.error(f'Update callback error: {e}')

        return result

    def run_continuous(self, interval: Optional[float] = None) -> None:
        """
        Poll until stop() is called.

        Blocks the calling thread.
        Cycles start on a fixed cadence; a slow cycle shortens the wait
        before the next one instead of drifting the schedule.
        """
        interval = interval or self.interval
        self._stop_event.clear()

        logger.info(f'Starting continuous ingestion (interval={interval}s)')

        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, interval - elapsed))

        logger.info('Ingestion stopped')

    def start_background(self, interval: Optional[float] = None) -> None:
        """Run the poll loop in a daemon thread."""
        if self._thread and self._thread.is_alive():
            logger.warning('Ingestion already running')
            return

        self._thread = threading.Thread(
            target=self.run_continuous,
            args=(interval,),
            name='presence-ingestion',
            daemon=True,
        )
        self._thread.start()
        logger.info('Background ingestion started')

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to stop and wait for the current cycle."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info('Ingestion stopped')

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop_event.is_set())

    @property
    def stats(self) -> dict:
        """Cycle counters and the last cycle summary."""
        return {
            'cycle_count': self._cycle_count,
            'error_count': self._error_count,
            'feed_error_count': self._feed_error_count,
            'last_cycle_at': format_timestamp(self._last_cycle_at) if self._last_cycle_at else None,
            'last_success_at': format_timestamp(self._last_success_at) if self._last_success_at else None,
            'last_result': self._last_result,
            'interval_seconds': self.interval,
            'running': self.running,
        }


def build_pipeline(services) -> IngestionPipeline:
    """Pipeline over an already wired set of services."""
    from presence.config import config

    return IngestionPipeline(
        client=FeedClient.from_config(),
        classifier=Classifier.from_config(config.classifier),
        engine=services.engine,
        interval=config.tracking.poll_interval,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``presence-ingest``."""
    parser = argparse.ArgumentParser(description='Poll the live feed and track sessions.')
    parser.add_argument('--once', action='store_true', help='run a single cycle and exit')
    args = parser.parse_args(argv)

    from presence.log import configure_logging
    from presence.wiring import build_services

    configure_logging()
    services = build_services(load_state=True)
    pipeline = build_pipeline(services)

    try:
        if args.once:
            result = pipeline.run_cycle()
            return 0 if result is not None else 1
        pipeline.run_continuous()
    except KeyboardInterrupt:
        logger.info('Interrupted')
    finally:
        services.shutdown()
    return 0


if __name__ == '__main__':
    sys.exit(main())
