"""
Snapshot classifier - decides which feed rows are tracked participants.

Controllers (feed ``controllers`` + ``atis``):
    callsign must look like ``<prefix><2+ alnum>_<position>``, e.g.
    OPKC_TWR, OPLA_APP, OPKR_CTR, OPRN_ATIS (case-insensitive).

Pilots:
    tracked when the aircraft is inside one of the geofence regions OR
    the flight plan departs from / arrives at an airport with a tracked
    ICAO prefix.

Optional fields fall back to sentinels (``N/A``, ``Unknown``, cid 0).
Rows that cannot be interpreted at all are logged and skipped; the rest
of the snapshot is still classified.

The geofence is a set of approximate bounding boxes, one per FIR.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from presence.config import ClassifierConfig, Regions
from presence.errors import MalformedEntry
from presence.ingestion.feed_client import Snapshot
from presence.tracking.models import (
    NOT_AVAILABLE,
    UNKNOWN,
    Category,
    ClassifiedEntry,
    Identity,
)

logger = logging.getLogger(__name__)

# Numeric facility index used by the feed
FACILITY_NAMES = ('OBS', 'FSS', 'DEL', 'GND', 'TWR', 'APP', 'CTR')
UNKNOWN_FACILITY = 'UNK'

DEFAULT_POSITIONS = ('DEL', 'GND', 'TWR', 'APP', 'DEP', 'CTR', 'FSS', 'ATIS')


@dataclass
class BoundingBox:
    """
    Geographic bounding box.

    Longitudes are not wrapped; boxes crossing the antimeridian are not
    supported.
    """
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    @classmethod
    def from_bounds(cls, bounds: Tuple[float, float, float, float]) -> 'BoundingBox':
        lat_min, lat_max, lon_min, lon_max = bounds
        return cls(
            lat_min=min(lat_min, lat_max),
            lat_max=max(lat_min, lat_max),
            lon_min=min(lon_min, lon_max),
            lon_max=max(lon_min, lon_max),
        )

    def contains(self, lat: float, lon: float) -> bool:
        return self.lat_min <= lat <= self.lat_max and self.lon_min <= lon <= self.lon_max


class RegionGeofence:
    """Named regions checked in order; the first containing region wins."""

    def __init__(self, regions: Optional[Dict[str, BoundingBox]] = None):
        self.regions: Dict[str, BoundingBox] = dict(regions or {})

    @classmethod
    def from_bounds(cls, regions: Regions) -> 'RegionGeofence':
        return cls({name: BoundingBox.from_bounds(b) for name, b in regions.items()})

    def locate(self, lat: Any, lon: Any) -> Optional[str]:
        """Region name containing the point, or None (also for missing coordinates)."""
        try:
            lat = float(lat)
            lon = float(lon)
        except (TypeError, ValueError):
            return None
        for name, box in self.regions.items():
            if box.contains(lat, lon):
                return name
        return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ''


def _parse_cid(value: Any) -> int:
    if value in (None, ''):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedEntry(f'Invalid cid {value!r}') from e


def facility_name(value: Any) -> str:
    """Map the feed's numeric facility to a short name (0 and unknowns are 'UNK')."""
    try:
        index = int(value)
    except (TypeError, ValueError):
        return UNKNOWN_FACILITY
    if 0 < index < len(FACILITY_NAMES):
        return FACILITY_NAMES[index]
    return UNKNOWN_FACILITY


def position_suffix(callsign: str) -> str:
    """'OPKC_TWR' -> 'TWR'."""
    return callsign.rsplit('_', 1)[-1] if '_' in callsign else callsign


class Classifier:
    """Pure filter + normalizer from raw feed rows to ClassifiedEntry."""

    def __init__(
        self,
        controller_prefix: str = 'OP',
        controller_positions: Iterable[str] = DEFAULT_POSITIONS,
        controller_firs: Iterable[str] = ('OPKR', 'OPLR'),
        pilot_airport_prefixes: Iterable[str] = ('OP',),
        geofence: Optional[RegionGeofence] = None,
    ):
        self.controller_prefix = controller_prefix.upper()
        self.controller_positions = tuple(p.upper() for p in controller_positions)
        self.controller_firs = tuple(f.upper() for f in controller_firs)
        self.pilot_airport_prefixes = tuple(p.upper() for p in pilot_airport_prefixes)
        self.geofence = geofence or RegionGeofence()

        positions = '|'.join(re.escape(p) for p in self.controller_positions)
        self._controller_pattern = re.compile(
            rf'^{re.escape(self.controller_prefix)}[A-Z0-9]{{2,}}_({positions})$',
            re.IGNORECASE,
        )

    @classmethod
    def from_config(cls, cfg: ClassifierConfig) -> 'Classifier':
        return cls(
            controller_prefix=cfg.controller_prefix,
            controller_positions=cfg.controller_positions,
            controller_firs=cfg.controller_firs,
            pilot_airport_prefixes=cfg.pilot_airport_prefixes,
            geofence=RegionGeofence.from_bounds(cfg.regions),
        )

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def is_tracked_controller(self, callsign: Optional[str]) -> bool:
        return bool(callsign) and bool(self._controller_pattern.match(callsign.strip()))

    def infer_fir(self, callsign: str) -> str:
        """FIR from an '<FIR>_' callsign prefix (e.g. OPKR_CTR), else N/A."""
        upper = callsign.upper()
        for fir in self.controller_firs:
            if upper.startswith(f'{fir}_'):
                return fir
        return NOT_AVAILABLE

    def has_tracked_airport(self, *icao_codes: str) -> bool:
        return any(
            code.startswith(prefix)
            for code in icao_codes if code
            for prefix in self.pilot_airport_prefixes
        )

    @staticmethod
    def display_name(name: Any, cid: int, callsign: str) -> str:
        """Controller name, or the position suffix when the feed has none."""
        text = _text(name)
        if not text or text == str(cid):
            return position_suffix(callsign)
        return text

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def classify_controller(self, row: Any) -> Optional[ClassifiedEntry]:
        """
        Classify one controller/ATIS row.

        Returns None when the row is not tracked; raises MalformedEntry
        when it cannot be interpreted.
        """
        if not isinstance(row, dict):
            raise MalformedEntry(f'Controller row is not an object: {row!r}')
        callsign = _text(row.get('callsign')).upper()
        if not callsign:
            raise MalformedEntry('Controller row without callsign')
        if not self.is_tracked_controller(callsign):
            return None

        cid = _parse_cid(row.get('cid'))
        return ClassifiedEntry(
            identity=Identity(Category.CONTROLLER, callsign),
            cid=cid,
            name=self.display_name(row.get('name'), cid, callsign),
            attributes={
                'frequency': _text(row.get('frequency')) or NOT_AVAILABLE,
                'facility': facility_name(row.get('facility')),
                'fir': self.infer_fir(callsign),
            },
        )

    def classify_pilot(self, row: Any) -> Optional[ClassifiedEntry]:
        """Classify one pilot row; None when not tracked."""
        if not isinstance(row, dict):
            raise MalformedEntry(f'Pilot row is not an object: {row!r}')
        callsign = _text(row.get('callsign')).upper()
        if not callsign:
            raise MalformedEntry('Pilot row without callsign')

        flight_plan = row.get('flight_plan') or {}
        if not isinstance(flight_plan, dict):
            flight_plan = {}
        departure = _text(flight_plan.get('departure')).upper()
        arrival = _text(flight_plan.get('arrival')).upper()

        region = self.geofence.locate(row.get('latitude'), row.get('longitude'))
        if region is None and not self.has_tracked_airport(departure, arrival):
            return None

        return ClassifiedEntry(
            identity=Identity(Category.PILOT, callsign),
            cid=_parse_cid(row.get('cid')),
            name=_text(row.get('name')) or UNKNOWN,
            attributes={
                'departure': departure or NOT_AVAILABLE,
                'arrival': arrival or NOT_AVAILABLE,
                'aircraft': _text(flight_plan.get('aircraft_short')) or NOT_AVAILABLE,
                'fir': region or NOT_AVAILABLE,
            },
        )

    def classify(self, snapshot: Snapshot) -> List[ClassifiedEntry]:
        """All tracked entries of a snapshot, controllers first."""
        entries: List[ClassifiedEntry] = []
        skipped = 0

        for rows, classify_row in (
            (snapshot.controllers, self.classify_controller),
            (snapshot.pilots, self.classify_pilot),
        ):
            for row in rows:
                try:
                    entry = classify_row(row)
                except MalformedEntry as e:
                    skipped += 1
                    logger.warning(f'Skipping malformed feed row: {e}')
                    continue
                if entry is not None:
                    entries.append(entry)

        logger.debug(
            f'Classified {len(entries)} tracked entries '
            f'({skipped} malformed rows skipped)'
        )
        return entries
