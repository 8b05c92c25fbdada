# ==============================================================================
# Tests for the Ephemeral Stores
# ==============================================================================
"""
Unit tests for SessionStore, HistoryStore and the atomic JSON helpers.

Tests cover:
- Write-through persistence and reload
- Corrupt or missing files yield an empty store
- Failed writes keep in-memory state authoritative
- History dedup by id, recency ordering and the retention cap
- Counters recomputed by fold (idempotent, ignore stale stored stats)
"""

import json
from datetime import timedelta

import pytest

from presence.errors import StoreIOError
from presence.store.history_store import HistoryStore
from presence.store.jsonfile import read_json, write_json_atomic
from presence.store.session_store import SessionStore
from presence.tracking.models import Category, OpenSession


# ==============================================================================
# JSON helpers
# ==============================================================================


class TestJsonFile:
    """Tests for read_json / write_json_atomic."""

    def test_missing_file_is_none(self, tmp_path):
        assert read_json(str(tmp_path / 'nope.json')) is None

    def test_write_creates_directories(self, tmp_path):
        path = tmp_path / 'nested' / 'doc.json'
        write_json_atomic(str(path), {'a': 1})
        assert json.loads(path.read_text()) == {'a': 1}

    def test_no_temp_files_left(self, tmp_path):
        write_json_atomic(str(tmp_path / 'doc.json'), {'a': 1})
        assert [p.name for p in tmp_path.iterdir()] == ['doc.json']

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / 'bad.json'
        path.write_text('{not json')
        with pytest.raises(StoreIOError):
            read_json(str(path))

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('x')
        with pytest.raises(StoreIOError):
            write_json_atomic(str(blocker / 'doc.json'), {})


# ==============================================================================
# SessionStore
# ==============================================================================


class TestSessionStore:
    """Tests for SessionStore."""

    def test_upsert_and_reload(self, session_store, controller, pilot, t0):
        session_store.upsert(OpenSession.start(controller(), t0))
        session_store.upsert(OpenSession.start(pilot(), t0 + timedelta(seconds=5)))

        reloaded = SessionStore(session_store.path)
        assert reloaded.load_from_disk() == 2
        assert [s.key for s in reloaded.list_all()] == ['atc-OPKC_TWR', 'pilot-PIA301']
        assert reloaded.get('pilot-PIA301').category is Category.PILOT

    def test_delete(self, session_store, controller, t0):
        session_store.upsert(OpenSession.start(controller(), t0))
        assert session_store.delete('atc-OPKC_TWR')
        assert not session_store.delete('atc-OPKC_TWR')
        assert len(session_store) == 0

    def test_snapshot_is_a_copy(self, session_store, controller, t0):
        session_store.upsert(OpenSession.start(controller(), t0))
        snapshot = session_store.snapshot()
        session_store.clear()
        assert 'atc-OPKC_TWR' in snapshot

    def test_missing_file_is_empty(self, tmp_path):
        store = SessionStore(str(tmp_path / 'missing.json'))
        assert store.load_from_disk() == 0

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / 'sessions.json'
        path.write_text('garbage')
        store = SessionStore(str(path))
        assert store.load_from_disk() == 0
        assert len(store) == 0

    def test_bad_entries_skipped(self, tmp_path, controller, t0):
        path = tmp_path / 'sessions.json'
        good = OpenSession.start(controller(), t0).to_dict()
        path.write_text(json.dumps({
            'last_updated': '2024-03-04T12:00:00.000Z',
            'sessions': {'atc-OPKC_TWR': good, 'atc-BROKEN': {'type': 'controller'}},
        }))
        store = SessionStore(str(path))
        assert store.load_from_disk() == 1

    def test_failed_write_keeps_memory(self, tmp_path, controller, t0):
        blocker = tmp_path / 'file'
        blocker.write_text('x')
        store = SessionStore(str(blocker / 'sessions.json'))

        store.upsert(OpenSession.start(controller(), t0))

        assert len(store) == 1
        assert store.stats['write_errors'] == 1
        assert store.stats['dirty'] is True

    def test_deferred_writes_once(self, session_store, controller, t0, monkeypatch):
        writes = []
        original = session_store.persist_to_disk

        def counting():
            writes.append(1)
            original()

        monkeypatch.setattr(session_store, 'persist_to_disk', counting)
        with session_store.deferred():
            session_store.upsert(OpenSession.start(controller('OPKC_TWR'), t0))
            session_store.upsert(OpenSession.start(controller('OPKC_GND'), t0))
        assert len(writes) == 1


# ==============================================================================
# HistoryStore
# ==============================================================================


class TestHistoryStore:
    """Tests for HistoryStore."""

    def test_add_dedups_by_id(self, history_store, closed):
        session = closed()
        assert history_store.add([session]) == [session]
        assert history_store.add([session]) == []
        assert len(history_store) == 1

    def test_most_recent_first(self, history_store, closed, t0):
        older = closed('OPKC_TWR', t0, minutes=30)
        newer = closed('OPLA_APP', t0 + timedelta(hours=2), minutes=30)
        history_store.add([older])
        history_store.add([newer])
        assert [s.callsign for s in history_store.all()] == ['OPLA_APP', 'OPKC_TWR']
        assert history_store.recent(1)[0].callsign == 'OPLA_APP'

    def test_retention_cap_drops_oldest(self, tmp_path, closed, t0):
        store = HistoryStore(str(tmp_path / 'history.json'), limit=3)
        sessions = [closed('OPKC_TWR', t0 + timedelta(hours=i), minutes=10) for i in range(5)]
        store.add(sessions)
        assert len(store) == 3
        assert {s.start_time for s in store.all()} == {t0 + timedelta(hours=i) for i in (2, 3, 4)}
        assert not store.contains(sessions[0].session_id)

    def test_add_older_than_retained_is_noop(self, tmp_path, closed, t0):
        store = HistoryStore(None, limit=1)
        store.add([closed('OPKC_TWR', t0 + timedelta(days=1))])
        assert store.add([closed('OPKC_TWR', t0)]) == []
        assert len(store) == 1

    def test_stats_exclude_pseudo_sessions(self, history_store, closed, t0):
        history_store.add([
            closed('OPKC_TWR', t0, minutes=60),
            closed('OPKC_ATIS', t0, minutes=600),
            closed('PIA301', t0, minutes=90, category=Category.PILOT),
        ])
        stats = history_store.stats
        assert stats['total_minutes'] == {'controller': 60, 'pilot': 90}
        assert stats['total_sessions'] == {'controller': 1, 'pilot': 1}

    def test_recompute_is_idempotent(self, history_store, closed):
        history_store.add([closed()])
        first = history_store.recompute_stats()
        second = history_store.recompute_stats()
        assert first == second

    def test_reload_recomputes_stats(self, history_store, closed):
        history_store.add([closed(minutes=45)])
        with open(history_store.path) as fh:
            document = json.load(fh)
        document['stats'] = {'total_minutes': {'controller': 9999, 'pilot': 0}}
        with open(history_store.path, 'w') as fh:
            json.dump(document, fh)

        reloaded = HistoryStore(history_store.path)
        assert reloaded.load_from_disk() == 1
        assert reloaded.stats['total_minutes']['controller'] == 45

    def test_for_member(self, history_store, closed, t0):
        history_store.add([
            closed('OPKC_TWR', t0, cid=1),
            closed('OPLA_APP', t0 + timedelta(hours=1), cid=2),
        ])
        assert [s.callsign for s in history_store.for_member(2)] == ['OPLA_APP']
