"""
Backfill controller sessions from the network's ATC history API.

    GET {ATC_HISTORY_URL}/v2/atc/history?limit=100&offset=N
    X-API-Key: <VATSIM_API_KEY>

    {"count": 1234, "items": [{"connection_id": {
        "callsign": "OPKC_TWR", "vatsim_id": 1234567,
        "start": "2024-01-01T10:00:00Z", "end": "2024-01-01T11:30:00Z"}}, ...]}

Items are filtered with the same controller rule as the live loop and
converted with the same session id and duration rules, then inserted
into the durable store with insert-or-ignore. Re-running the backfill
(or running it while the live loop writes) never duplicates a session.
Run the synchronizer afterwards to pull the imported rows into the
local history cache.

    python -m presence.ingestion.backfill [--since 2020-01-01T00:00:00Z]
"""

import argparse
import logging
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Tuple

import requests

from presence.errors import FeedUnavailable, MalformedEntry
from presence.ingestion.classifier import Classifier
from presence.tracking.models import (
    Category,
    ClosedSession,
    Identity,
    UNKNOWN,
    parse_timestamp,
)

if TYPE_CHECKING:
    from presence.store.durable import SqlDurableStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


@dataclass
class BackfillReport:
    pages: int = 0
    seen: int = 0
    matched: int = 0
    imported: int = 0
    duplicates: int = 0
    malformed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AtcHistoryClient:
    """Pages through the ATC history endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 20.0,
        page_size: int = PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        self.session.headers.update({'X-API-Key': api_key, 'Accept': 'application/json'})

    def get_page(self, offset: int) -> Tuple[List[Any], Optional[int]]:
        """
        Fetch one page.

        Returns (items, total count or None). Raises FeedUnavailable on
        any transport or decoding error.
        """
        url = f'{self.base_url}/v2/atc/history'
        params = {'limit': self.page_size, 'offset': offset}
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise FeedUnavailable(f'ATC history request failed at offset {offset}: {e}') from e
        except ValueError as e:
            raise FeedUnavailable(f'ATC history returned invalid JSON at offset {offset}: {e}') from e

        if not isinstance(data, dict):
            raise FeedUnavailable(f'Unexpected ATC history document at offset {offset}')

        count = data.get('count')
        return list(data.get('items') or []), int(count) if count is not None else None

    def iter_pages(self, max_pages: Optional[int] = None) -> Iterator[List[Any]]:
        """Yield pages until an empty page, the reported count or ``max_pages``."""
        offset = 0
        pages = 0
        while max_pages is None or pages < max_pages:
            items, count = self.get_page(offset)
            if not items:
                return
            yield items
            pages += 1
            offset += self.page_size
            if count is not None and offset >= count:
                return


def session_from_history_item(item: Any, classifier: Classifier) -> Optional[ClosedSession]:
    """
    Convert one history item.

    Returns None for untracked callsigns; raises MalformedEntry when a
    tracked item lacks usable times.
    """
    if not isinstance(item, dict):
        raise MalformedEntry(f'History item is not an object: {item!r}')
    connection = item.get('connection_id') or {}
    if not isinstance(connection, dict):
        raise MalformedEntry('History item without connection data')

    callsign = str(connection.get('callsign') or '').strip().upper()
    if not classifier.is_tracked_controller(callsign):
        return None

    try:
        start = parse_timestamp(connection.get('start'))
        end = parse_timestamp(connection.get('end'))
        cid = int(connection.get('vatsim_id') or 0)
    except (TypeError, ValueError) as e:
        raise MalformedEntry(f'Unusable history item for {callsign}: {e}') from e

    return ClosedSession.from_times(
        Identity(Category.CONTROLLER, callsign),
        start,
        end,
        cid=cid,
        name=UNKNOWN,
        attributes={'fir': classifier.infer_fir(callsign)},
    )


def run_backfill(
    client: AtcHistoryClient,
    classifier: Classifier,
    durable: 'SqlDurableStore',
    since: datetime,
    max_pages: Optional[int] = None,
) -> BackfillReport:
    """Import every tracked history item starting at or after ``since``."""
    report = BackfillReport()

    for items in client.iter_pages(max_pages=max_pages):
        report.pages += 1
        report.seen += len(items)

        sessions = []
        for item in items:
            try:
                session = session_from_history_item(item, classifier)
            except MalformedEntry as e:
                report.malformed += 1
                logger.warning(f'Skipping history item: {e}')
                continue
            if session is None or session.start_time < since:
                continue
            sessions.append(session)

        report.matched += len(sessions)
        if sessions:
            imported, duplicates = durable.insert_closed_sessions(sessions)
            report.imported += imported
            report.duplicates += duplicates
            logger.info(
                f'Page {report.pages}: imported {imported} sessions '
                f'({duplicates} already present)'
            )

    logger.info(
        f'Backfill complete: {report.imported} imported, {report.duplicates} duplicates, '
        f'{report.malformed} malformed, {report.seen} items scanned'
    )
    return report


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``presence-backfill``."""
    from presence.config import config
    from presence.errors import DurableStoreError
    from presence.log import configure_logging
    from presence.store.durable import SqlDurableStore

    parser = argparse.ArgumentParser(description='Backfill controller sessions from the ATC history API.')
    parser.add_argument('--since', default=config.feed.backfill_since, help='ISO-8601 lower bound')
    parser.add_argument('--max-pages', type=int, default=None)
    args = parser.parse_args(argv)

    configure_logging()

    if not config.feed.can_backfill:
        logger.error('VATSIM_API_KEY missing; cannot backfill')
        return 1

    durable = SqlDurableStore.from_url(config.database.url, echo=config.debug)
    client = AtcHistoryClient(
        base_url=config.feed.history_api_url,
        api_key=config.feed.api_key,
        timeout=config.feed.timeout_seconds,
    )

    try:
        durable.init_schema()
        run_backfill(
            client,
            Classifier.from_config(config.classifier),
            durable,
            since=parse_timestamp(args.since),
            max_pages=args.max_pages,
        )
    except (FeedUnavailable, DurableStoreError) as e:
        logger.error(f'Backfill aborted: {e}')
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
