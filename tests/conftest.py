# ==============================================================================
# Shared Test Fixtures
# ==============================================================================
"""
Pytest fixtures shared across all test modules.

Provides:
- A fixed reference time and helpers to build entries/sessions
- JSON-backed stores in a temporary data directory
- An in-memory SQLite durable store (StaticPool, one shared connection)
- A fully wired Services graph with synchronous background writes
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from presence.config import StorageConfig, config
from presence.models import build_session_factory
from presence.store.durable import SqlDurableStore
from presence.store.history_store import HistoryStore
from presence.store.session_store import SessionStore
from presence.tracking.models import (
    Category,
    ClassifiedEntry,
    ClosedSession,
    ExclusionRule,
    Identity,
)
from presence.wiring import build_services


T0 = datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def t0():
    """Fixed cycle time: Monday 2024-03-04 12:00:00 UTC."""
    return T0


@pytest.fixture()
def at():
    """Offset helper: at(90) is T0 + 90 seconds."""
    def _at(seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)
    return _at


@pytest.fixture()
def exclusion():
    return ExclusionRule()


@pytest.fixture()
def controller():
    """Factory for classified controller entries."""
    def _controller(callsign='OPKC_TWR', cid=1000001, name='Ali Khan', **attributes):
        attrs = {'frequency': '118.300', 'facility': 'TWR', 'fir': 'N/A'}
        attrs.update(attributes)
        return ClassifiedEntry(Identity(Category.CONTROLLER, callsign), cid, name, attrs)
    return _controller


@pytest.fixture()
def pilot():
    """Factory for classified pilot entries."""
    def _pilot(callsign='PIA301', cid=2000001, name='Sara Ahmed', **attributes):
        attrs = {'departure': 'OPKC', 'arrival': 'OPLA', 'aircraft': 'A320', 'fir': 'OPKR'}
        attrs.update(attributes)
        return ClassifiedEntry(Identity(Category.PILOT, callsign), cid, name, attrs)
    return _pilot


@pytest.fixture()
def closed():
    """Factory for closed sessions: closed('OPKC_TWR', start, minutes=60)."""
    def _closed(callsign='OPKC_TWR', start=T0, minutes=60, cid=1000001,
                category=Category.CONTROLLER, name='Ali Khan'):
        return ClosedSession.from_times(
            Identity(category, callsign),
            start,
            start + timedelta(minutes=minutes),
            cid=cid,
            name=name,
        )
    return _closed


@pytest.fixture()
def session_store(tmp_path):
    return SessionStore(str(tmp_path / 'sessions.json'))


@pytest.fixture()
def history_store(tmp_path, exclusion):
    return HistoryStore(str(tmp_path / 'history.json'), limit=1000, exclusion=exclusion)


@pytest.fixture()
def durable():
    """Durable store on a private in-memory SQLite database."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    store = SqlDurableStore(build_session_factory(engine))
    store.init_schema()
    yield store
    engine.dispose()


@pytest.fixture()
def app_config(tmp_path):
    """Process config with the JSON caches redirected to tmp_path."""
    return dataclasses.replace(config, storage=StorageConfig(data_dir=str(tmp_path)))


@pytest.fixture()
def services(app_config, durable):
    """Wired collaborators; background writes run inline."""
    services = build_services(
        app_config,
        load_state=False,
        durable=durable,
        synchronous_writes=True,
    )
    yield services
    services.shutdown()
