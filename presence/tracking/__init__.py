"""
Session lifecycle tracking.

Turns successive full snapshots of "who is online" into discrete
sessions. One engine serves the live loop, the backfill job and the
synchronizer.
"""

from presence.tracking.models import (
    Category,
    ClassifiedEntry,
    ClosedSession,
    ExclusionRule,
    Identity,
    OpenSession,
)
from presence.tracking.engine import ReconcileResult, ReconciliationEngine, reconcile
from presence.tracking.resolver import LastCallsignResolver
from presence.tracking.synchronizer import Synchronizer, SyncReport

__all__ = [
    'Category',
    'ClassifiedEntry',
    'ClosedSession',
    'ExclusionRule',
    'Identity',
    'OpenSession',
    'ReconcileResult',
    'ReconciliationEngine',
    'reconcile',
    'LastCallsignResolver',
    'Synchronizer',
    'SyncReport',
]
