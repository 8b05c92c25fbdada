"""
Session API endpoints.

Provides endpoints for:
- GET /api/sessions - Currently open sessions
- GET /api/sessions/recent - Most recently closed sessions
- GET /api/sessions/member/<cid> - All sessions of one member
"""

import logging
import time
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from presence.analytics.aggregator import format_minutes
from presence.errors import DurableStoreError
from presence.store.durable import ClosedSessionFilter
from presence.tracking.models import Category, format_timestamp

logger = logging.getLogger(__name__)

sessions_bp = Blueprint('sessions', __name__, url_prefix='/api/sessions')

MAX_RECENT = 500


def _services():
    return current_app.config['SERVICES']


@sessions_bp.route('', methods=['GET'])
def list_open_sessions():
    """
    List all currently open sessions.

    Query params:
    - type: 'controller' or 'pilot' (optional)

    Pseudo-sessions (e.g. ATIS) are included and flagged.
    """
    start_time = time.perf_counter()
    services = _services()

    category = request.args.get('type')
    if category and category not in {c.value for c in Category}:
        return jsonify({'error': f'Invalid type {category!r}'}), 400

    sessions = services.session_store.list_all()
    if category:
        sessions = [s for s in sessions if s.category.value == category]

    results = []
    for session in sessions:
        data = session.to_dict()
        data['excluded'] = services.exclusion.excludes_session(session)
        results.append(data)

    query_time_ms = (time.perf_counter() - start_time) * 1000
    last_updated = services.session_store.last_updated

    return jsonify({
        'sessions': results,
        'count': len(results),
        'controllers': sum(1 for s in sessions if s.category is Category.CONTROLLER),
        'pilots': sum(1 for s in sessions if s.category is Category.PILOT),
        'last_updated': format_timestamp(last_updated) if last_updated else None,
        'query_time_ms': round(query_time_ms, 2),
    })


@sessions_bp.route('/recent', methods=['GET'])
def list_recent_sessions():
    """
    Most recently closed sessions, newest first.

    Query params:
    - limit: max results (default 50, max 500)
    """
    start_time = time.perf_counter()

    limit = request.args.get('limit', 50, type=int)
    limit = max(1, min(limit, MAX_RECENT))

    sessions = _services().history_store.recent(limit)

    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'sessions': [s.to_dict() for s in sessions],
        'count': len(sessions),
        'query_time_ms': round(query_time_ms, 2),
    })


@sessions_bp.route('/member/<int:cid>', methods=['GET'])
def member_sessions(cid: int):
    """
    All sessions for a member, newest first.

    Merges the durable store with the local history cache; a session
    present in both is listed once. Pseudo-sessions are listed but not
    counted in the totals.
    """
    start_time = time.perf_counter()
    services = _services()

    merged = {}
    durable_ok = services.durable is not None
    if services.durable is not None:
        try:
            for session in services.durable.list_closed_sessions(ClosedSessionFilter(cid=cid)):
                merged[session.session_id] = ('database', session)
        except DurableStoreError as e:
            durable_ok = False
            logger.error(f'Durable query for member {cid} failed: {e}')

    for session in services.history_store.for_member(cid):
        merged.setdefault(session.session_id, ('cache', session))

    ordered = sorted(merged.values(), key=lambda item: item[1].start_time, reverse=True)

    results = []
    totals = {c.value: 0 for c in Category}
    for source, session in ordered:
        excluded = services.exclusion.excludes_session(session)
        data = session.to_dict()
        data['hours'] = format_minutes(session.duration_minutes)
        data['source'] = source
        data['excluded'] = excluded
        results.append(data)
        if not excluded:
            totals[session.category.value] += session.duration_minutes

    active = [
        s.to_dict() for s in services.session_store.list_all()
        if s.cid == cid
    ]

    member = services.roster.get(cid)
    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'cid': cid,
        'member': member.to_dict() if member else None,
        'active': active,
        'sessions': results,
        'count': len(results),
        'total_minutes': totals,
        'total_hours': {k: format_minutes(v) for k, v in totals.items()},
        'durable_available': durable_ok,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })
