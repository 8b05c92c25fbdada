"""Feed ingestion: fetch, classify, reconcile, backfill."""

from presence.ingestion.feed_client import FeedClient, Snapshot
from presence.ingestion.classifier import BoundingBox, Classifier, RegionGeofence
from presence.ingestion.pipeline import IngestionPipeline

__all__ = [
    'FeedClient',
    'Snapshot',
    'BoundingBox',
    'Classifier',
    'RegionGeofence',
    'IngestionPipeline',
]
