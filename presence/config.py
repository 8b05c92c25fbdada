"""
Configuration management for the presence tracker.

Settings come from environment variables (and a .env file), one frozen
dataclass per concern. Core components never import this module
directly; they receive plain values through their constructors and
``presence.wiring`` bridges the two.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


# (lat_min, lat_max, lon_min, lon_max) per region name
Regions = Dict[str, Tuple[float, float, float, float]]

# Approximate boxes around the Karachi and Lahore FIRs. First match wins,
# so the southern FIR is listed first.
DEFAULT_GEOFENCE_REGIONS = 'OPKR:23.0,30.0,60.5,71.5;OPLR:28.0,37.5,66.0,78.0'


def _parse_list(value: str) -> Tuple[str, ...]:
    """Parse 'A,B,C' into an upper-cased tuple, dropping blanks."""
    return tuple(part.strip().upper() for part in value.split(',') if part.strip())


def _parse_regions(value: str) -> Regions:
    """
    Parse 'NAME:lat_min,lat_max,lon_min,lon_max;NAME2:...' into a dict.

    Malformed regions are skipped rather than failing startup.
    """
    regions: Regions = {}
    if not value:
        return regions
    for chunk in value.split(';'):
        if ':' not in chunk:
            continue
        name, bounds = chunk.split(':', 1)
        try:
            lat_min, lat_max, lon_min, lon_max = (float(b.strip()) for b in bounds.split(','))
        except ValueError:
            continue
        regions[name.strip().upper()] = (lat_min, lat_max, lon_min, lon_max)
    return regions


@dataclass(frozen=True)
class FeedConfig:
    """Live data feed and ATC history API."""
    url: str = os.getenv('FEED_URL', 'https://data.vatsim.net/v3/vatsim-data.json')
    timeout_seconds: float = float(os.getenv('FEED_TIMEOUT_SECONDS', '20'))
    history_api_url: str = os.getenv('ATC_HISTORY_URL', 'https://api.vatsim.net')
    api_key: Optional[str] = os.getenv('VATSIM_API_KEY') or None
    backfill_since: str = os.getenv('BACKFILL_SINCE', '2020-01-01T00:00:00Z')

    @property
    def can_backfill(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class DatabaseConfig:
    """Durable store configuration."""
    url: str = os.getenv('DATABASE_URL', 'sqlite:///presence.db')

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')


@dataclass(frozen=True)
class TrackingConfig:
    """Session lifecycle settings."""
    poll_interval: int = int(os.getenv('POLL_INTERVAL_SECONDS', '15'))

    # One threshold for every ingestion path. Absent participants are closed
    # once now - last_seen exceeds this.
    stale_threshold_seconds: int = int(os.getenv('STALE_THRESHOLD_SECONDS', '120'))

    history_limit: int = int(os.getenv('HISTORY_LIMIT', '1000'))
    excluded_suffixes: Tuple[str, ...] = _parse_list(
        os.getenv('EXCLUDED_CALLSIGN_SUFFIXES', '_ATIS')
    )
    writer_queue_size: int = int(os.getenv('WRITER_QUEUE_SIZE', '1000'))


@dataclass(frozen=True)
class ClassifierConfig:
    """Inclusion rules for snapshot rows."""
    controller_prefix: str = os.getenv('CONTROLLER_PREFIX', 'OP').upper()
    controller_positions: Tuple[str, ...] = _parse_list(
        os.getenv('CONTROLLER_POSITIONS', 'DEL,GND,TWR,APP,DEP,CTR,FSS,ATIS')
    )
    controller_firs: Tuple[str, ...] = _parse_list(os.getenv('CONTROLLER_FIRS', 'OPKR,OPLR'))
    pilot_airport_prefixes: Tuple[str, ...] = _parse_list(
        os.getenv('PILOT_AIRPORT_PREFIXES', 'OP')
    )
    geofence_regions: str = os.getenv('GEOFENCE_REGIONS', DEFAULT_GEOFENCE_REGIONS)

    @property
    def regions(self) -> Regions:
        return _parse_regions(self.geofence_regions)


@dataclass(frozen=True)
class StorageConfig:
    """Ephemeral JSON store locations."""
    data_dir: str = os.getenv('DATA_DIR', 'data')
    sessions_file: str = 'sessions.json'
    history_file: str = 'history.json'
    roster_file: str = 'roster.json'

    @property
    def sessions_path(self) -> str:
        return os.path.join(self.data_dir, self.sessions_file)

    @property
    def history_path(self) -> str:
        return os.path.join(self.data_dir, self.history_file)

    @property
    def roster_path(self) -> str:
        return os.path.join(self.data_dir, self.roster_file)


@dataclass(frozen=True)
class AppConfig:
    """Process-wide configuration."""
    feed: FeedConfig
    database: DatabaseConfig
    tracking: TrackingConfig
    classifier: ClassifierConfig
    storage: StorageConfig

    # Flask settings
    secret_key: str
    debug: bool
    port: int
    log_level: str


def load_config() -> AppConfig:
    """Read every section from the environment."""
    return AppConfig(
        feed=FeedConfig(),
        database=DatabaseConfig(),
        tracking=TrackingConfig(),
        classifier=ClassifierConfig(),
        storage=StorageConfig(),
        secret_key=os.getenv('SECRET_KEY', 'dev-key-change-in-prod'),
        debug=os.getenv('FLASK_DEBUG', '0') == '1',
        port=int(os.getenv('PORT', '5000')),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )


# Singleton instance
config = load_config()
