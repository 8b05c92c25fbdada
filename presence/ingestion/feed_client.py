"""
Network data feed client.

Fetches the full "who is online" document. Relevant top-level keys of
the v3 JSON feed:

    general      - metadata, including update_timestamp
    controllers  - staffed ATC positions
    atis         - ATIS broadcasts (same row shape as controllers)
    pilots       - connected aircraft, each with an optional flight_plan

Controller row: callsign, cid, name, frequency, facility (numeric index)
Pilot row:      callsign, cid, name, latitude, longitude,
                flight_plan {departure, arrival, aircraft_short}

Any transport, HTTP or decoding problem is raised as FeedUnavailable so
the caller can skip the cycle without touching session state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from presence.config import config
from presence.errors import FeedUnavailable
from presence.tracking.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """
    One fetched feed document.

    ``controllers`` already includes the ATIS rows; the classifier decides
    what to keep. ``fetched_at`` is the local receive time.
    """
    controllers: List[Dict[str, Any]] = field(default_factory=list)
    pilots: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: Optional[datetime] = None
    feed_updated: Optional[str] = None

    @classmethod
    def from_document(cls, data: Any, fetched_at: Optional[datetime] = None) -> 'Snapshot':
        """
        Build a snapshot from a decoded feed document.

        Raises FeedUnavailable if the document is not a JSON object.
        Missing lists are treated as empty.
        """
        if not isinstance(data, dict):
            raise FeedUnavailable(f'Unexpected feed document type: {type(data).__name__}')

        controllers = list(data.get('controllers') or []) + list(data.get('atis') or [])
        pilots = list(data.get('pilots') or [])
        general = data.get('general') or {}

        return cls(
            controllers=controllers,
            pilots=pilots,
            fetched_at=fetched_at or utcnow(),
            feed_updated=general.get('update_timestamp') if isinstance(general, dict) else None,
        )


class FeedClient:
    """
    Client for the live data feed.

    Handles:
    - GET of the full feed document with a bounded timeout
    - Connection reuse through a requests Session
    - Error normalization into FeedUnavailable
    """

    def __init__(
        self,
        url: str,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault('Accept', 'application/json')

        self._fetch_count = 0
        self._error_count = 0

    @classmethod
    def from_config(cls) -> 'FeedClient':
        """Create client from application configuration."""
        return cls(url=config.feed.url, timeout=config.feed.timeout_seconds)

    def fetch(self) -> Snapshot:
        """
        Fetch and decode the current feed.

        Raises:
            FeedUnavailable on timeout, connection error, non-2xx status
            or undecodable body
        """
        logger.debug(f'Fetching feed: {self.url}')

        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            self._error_count += 1
            logger.error(f'Feed timeout after {self.timeout}s')
            raise FeedUnavailable(f'Feed timeout: {e}') from e
        except requests.exceptions.HTTPError as e:
            self._error_count += 1
            status = e.response.status_code if e.response is not None else 'unknown'
            logger.error(f'Feed HTTP error: {status}')
            raise FeedUnavailable(f'Feed HTTP error {status}') from e
        except requests.exceptions.RequestException as e:
            self._error_count += 1
            logger.error(f'Feed request failed: {e}')
            raise FeedUnavailable(f'Feed request failed: {e}') from e
        except ValueError as e:
            self._error_count += 1
            logger.error(f'Feed returned invalid JSON: {e}')
            raise FeedUnavailable(f'Invalid feed JSON: {e}') from e

        snapshot = Snapshot.from_document(data)
        self._fetch_count += 1

        logger.info(
            f'Received {len(snapshot.controllers)} controllers/ATIS and '
            f'{len(snapshot.pilots)} pilots from feed'
        )
        return snapshot

    @property
    def stats(self) -> dict:
        return {
            'fetch_count': self._fetch_count,
            'error_count': self._error_count,
        }
