"""
API module for the presence tracker.

Provides REST endpoints for:
- Open and closed sessions
- Aggregated statistics and roster
- Data status
"""

from presence.api.sessions import sessions_bp
from presence.api.stats import stats_bp

__all__ = ['sessions_bp', 'stats_bp']
