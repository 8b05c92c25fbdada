"""
Analytics module for the presence tracker.

Provides period-bucketed activity statistics over closed sessions and
NumPy-based duration distributions. Pseudo-sessions are excluded from
every figure.
"""

from presence.analytics.aggregator import (
    Aggregator,
    GroupBy,
    aggregate,
    duration_statistics,
    format_minutes,
    totals,
)

__all__ = [
    'Aggregator',
    'GroupBy',
    'aggregate',
    'duration_statistics',
    'format_minutes',
    'totals',
]
