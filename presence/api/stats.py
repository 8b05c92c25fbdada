"""
Statistics and status API endpoints.

Provides endpoints for:
- GET /api/stats/history - Totals plus per-period aggregates
- GET /api/stats/durations - Session duration distribution
- GET /api/stats/roster - Member roster and totals
- POST /api/stats/roster - Add members manually (single or bulk)
- DELETE /api/stats/roster?cid= - Remove a member
- GET /api/stats/status - Cache, durable store and ingestion status
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, jsonify, request

from presence.analytics.aggregator import GroupBy, format_minutes
from presence.config import config
from presence.errors import DurableStoreError
from presence.tracking.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)

stats_bp = Blueprint('stats', __name__, url_prefix='/api/stats')

# Cache older than this is reported as "no recent update"
STALE_DATA_AFTER = timedelta(minutes=5)


def _services():
    return current_app.config['SERVICES']


def _with_hours(minutes_by_category: dict) -> dict:
    return {category: format_minutes(m) for category, m in minutes_by_category.items()}


@stats_bp.route('/history', methods=['GET'])
def history_stats():
    """
    Aggregated activity.

    Query params:
    - group_by: day (default), week, month or year

    Pseudo-sessions are excluded from every number.
    """
    start_time = time.perf_counter()

    try:
        group_by = GroupBy.parse(request.args.get('group_by'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    aggregator = _services().aggregator
    totals = aggregator.get_totals()
    periods = aggregator.get_aggregated_stats(group_by)

    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'group_by': group_by.value,
        'totals': {
            **totals,
            'total_hours': _with_hours(totals['total_minutes']),
        },
        'periods': periods,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })


@stats_bp.route('/durations', methods=['GET'])
def duration_stats():
    """Count, mean, median, p90 and max session length per category."""
    start_time = time.perf_counter()

    stats = _services().aggregator.get_duration_statistics()

    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'durations': stats,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })


@stats_bp.route('/roster', methods=['GET'])
def roster_stats():
    """Members sorted by total minutes, plus roster totals."""
    start_time = time.perf_counter()

    roster = _services().roster
    members = [m.to_dict() for m in roster.members()]

    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'members': members,
        'summary': roster.summary(),
        'query_time_ms': round(query_time_ms, 2),
    })


@stats_bp.route('/roster', methods=['POST'])
def add_roster_members():
    """
    Register members manually.

    Body: ``{"cid": 123, "name": "..."}`` or ``{"members": [{...}, ...]}``
    for a bulk import. Existing members are left unchanged.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({'error': 'Expected a JSON object'}), 400

    entries = payload.get('members') if 'members' in payload else [payload]
    if not isinstance(entries, list):
        return jsonify({'error': 'members must be a list'}), 400

    parsed = []
    for entry in entries:
        try:
            cid = int(entry['cid'])
        except (KeyError, TypeError, ValueError):
            return jsonify({'error': f'Invalid member entry: {entry!r}'}), 400
        if cid <= 0:
            return jsonify({'error': f'Invalid cid: {cid}'}), 400
        parsed.append((cid, entry.get('name')))

    roster = _services().roster
    added = []
    existing = []
    with roster.deferred():
        for cid, name in parsed:
            if roster.get(cid) is not None:
                existing.append(cid)
                continue
            roster.add_member(cid, name)
            added.append(cid)

    logger.info(f'Roster: {len(added)} members added manually, {len(existing)} already present')
    return jsonify({
        'added': added,
        'existing': existing,
        'summary': roster.summary(),
    }), 201 if added else 200


@stats_bp.route('/roster', methods=['DELETE'])
def remove_roster_member():
    """Remove a member. Query params: cid (required)."""
    cid = request.args.get('cid', type=int)
    if not cid:
        return jsonify({'error': 'cid query parameter required'}), 400

    if not _services().roster.remove_member(cid):
        return jsonify({'error': f'Member {cid} not found'}), 404

    logger.info(f'Roster: removed member {cid}')
    return jsonify({'removed': cid})


@stats_bp.route('/status', methods=['GET'])
def data_status():
    """
    Data freshness and storage health.

    Returns:
    - Cache counters (recomputed, pseudo-sessions excluded)
    - Durable store connectivity and counts
    - Ingestion pipeline and background writer stats

    A cache that has not changed recently is reported as
    ``no recent update``, not as an error.
    """
    start_time = time.perf_counter()
    services = _services()

    history_last = services.history_store.last_updated
    sessions_last = services.session_store.last_updated
    candidates = [t for t in (history_last, sessions_last) if t is not None]
    last_updated = max(candidates) if candidates else None

    if last_updated is None:
        freshness = 'no data'
    elif utcnow() - last_updated > STALE_DATA_AFTER:
        freshness = 'no recent update'
    else:
        freshness = 'fresh'

    database = {
        'configured': services.durable is not None,
        'connected': False,
        'type': 'sqlite' if config.database.is_sqlite else 'postgresql',
    }
    if services.durable is not None:
        try:
            database.update(services.durable.counts(services.exclusion))
            database['connected'] = True
        except DurableStoreError as e:
            logger.error(f'Database status check failed: {e}')

    pipeline = current_app.config.get('INGESTION_PIPELINE')
    pipeline_stats = pipeline.stats if pipeline else {'running': False}

    totals = services.history_store.stats
    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'status': 'healthy' if database['connected'] and pipeline_stats.get('running') else 'degraded',
        'freshness': freshness,
        'cache': {
            'active_sessions': len(services.session_store),
            'history_sessions': len(services.history_store),
            'total_sessions': totals['total_sessions'],
            'total_minutes': totals['total_minutes'],
            'last_updated': format_timestamp(last_updated) if last_updated else None,
            'sessions_store': services.session_store.stats,
            'history_store': services.history_store.store_stats,
        },
        'database': database,
        'ingestion': pipeline_stats,
        'engine': services.engine.stats,
        'writer': services.writer.stats,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })
