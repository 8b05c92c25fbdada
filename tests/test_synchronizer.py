# ==============================================================================
# Tests for the Durable <-> Cache Synchronizer
# ==============================================================================
"""
Unit tests for Synchronizer.

Tests cover:
- Pull imports missing closed sessions and skips known ids
- Repeated pulls are idempotent (counts and stats unchanged)
- Open checkpoints create or refresh session-store entries
- Push writes history and checkpoints, prunes closed checkpoints
- Durable failure aborts without touching the caches
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from presence.errors import DurableStoreError
from presence.tracking.models import Category, OpenSession
from presence.tracking.synchronizer import Synchronizer


@pytest.fixture()
def synchronizer(durable, session_store, history_store):
    return Synchronizer(durable, session_store, history_store)


# ==============================================================================
# Pull
# ==============================================================================


class TestPull:
    """Tests for Synchronizer.pull()."""

    def test_imports_missing_and_skips_known(self, synchronizer, durable, history_store, closed, t0):
        known = closed('OPKC_TWR', t0)
        history_store.add([known])
        durable.insert_closed_sessions([
            known,
            closed('OPLA_APP', t0 + timedelta(hours=1)),
            closed('PIA301', t0, category=Category.PILOT),
        ])

        report = synchronizer.pull()

        assert report.inserted == {'controller': 1, 'pilot': 1}
        assert report.skipped == {'controller': 1, 'pilot': 0}
        assert len(history_store) == 3

    def test_repeated_pull_is_idempotent(self, synchronizer, durable, history_store, closed, t0):
        durable.insert_closed_sessions([closed('OPKC_TWR', t0), closed('OPKC_ATIS', t0)])

        synchronizer.pull()
        stats_after_first = history_store.stats
        report = synchronizer.pull()

        assert report.total_inserted == 0
        assert report.total_skipped == 2
        assert history_store.stats == stats_after_first
        assert stats_after_first['total_sessions']['controller'] == 1

    def test_live_and_imported_ids_agree(self, synchronizer, durable, history_store,
                                         session_store, controller, at):
        """A session closed live and written durably is not imported twice."""
        from presence.tracking.engine import ReconciliationEngine

        engine = ReconciliationEngine(session_store, history_store, durable=durable)
        engine.run_cycle([controller()], at(0))
        engine.run_cycle([controller()], at(45))
        engine.run_cycle([], at(400))

        report = synchronizer.pull()
        assert report.total_inserted == 0
        assert len(history_store) == 1

    def test_open_checkpoints_created(self, synchronizer, durable, session_store, pilot, t0):
        durable.upsert_open_session(OpenSession.start(pilot(), t0))
        report = synchronizer.pull()
        assert report.open_created == 1
        assert session_store.get('pilot-PIA301').started_at == t0

    def test_open_checkpoint_moves_last_seen_forward_only(self, synchronizer, durable,
                                                          session_store, controller, at):
        local = OpenSession.start(controller(), at(0)).refreshed(controller(), at(60))
        session_store.upsert(local)

        durable.upsert_open_session(local.refreshed(controller(), at(90)))
        assert synchronizer.pull().open_refreshed == 1
        assert session_store.get('atc-OPKC_TWR').last_seen_at == at(90)

        durable.upsert_open_session(OpenSession.start(controller(), at(0)))
        assert synchronizer.pull().open_refreshed == 0
        assert session_store.get('atc-OPKC_TWR').last_seen_at == at(90)

    def test_leftover_checkpoint_does_not_reopen_closed_session(
        self, synchronizer, durable, history_store, session_store, controller, at,
        exclusion, monkeypatch,
    ):
        """A checkpoint whose delete failed is ignored by pull and pruned by push."""
        from presence.store.roster import MemberRoster
        from presence.tracking.engine import ReconciliationEngine

        roster = MemberRoster(exclusion=exclusion)
        engine = ReconciliationEngine(session_store, history_store, durable=durable, roster=roster)

        real_delete = durable.delete_open_session
        monkeypatch.setattr(durable, 'delete_open_session', lambda identity: False)
        engine.run_cycle([controller(cid=7)], at(0))
        engine.run_cycle([controller(cid=7)], at(600))
        engine.run_cycle([], at(900))
        monkeypatch.setattr(durable, 'delete_open_session', real_delete)

        assert [s.callsign for s in durable.list_open_sessions()] == ['OPKC_TWR']

        report = synchronizer.run()

        assert report.open_already_closed == 1
        assert report.open_created == 0
        assert report.pruned_open == 1
        assert len(session_store) == 0
        assert durable.list_open_sessions() == []

        result = engine.run_cycle([], at(1000))
        assert result.closed == []
        assert roster.get(7).controller_minutes == 10
        assert roster.get(7).sessions_count == 1

    def test_durable_failure_aborts(self, session_store, history_store, closed):
        durable = MagicMock()
        durable.list_closed_sessions.side_effect = DurableStoreError('unreachable')
        synchronizer = Synchronizer(durable, session_store, history_store)

        with pytest.raises(DurableStoreError):
            synchronizer.pull()
        assert len(history_store) == 0


# ==============================================================================
# Push
# ==============================================================================


class TestPush:
    """Tests for Synchronizer.push()."""

    def test_writes_history_and_checkpoints(self, synchronizer, durable, history_store,
                                            session_store, closed, controller, t0):
        history_store.add([closed('OPKC_TWR', t0), closed('OPLA_APP', t0)])
        session_store.upsert(OpenSession.start(controller('OPIS_GND'), t0))

        report = synchronizer.push()

        assert report.pushed_closed == 2
        assert report.pushed_open == 1
        assert len(durable.list_closed_sessions()) == 2
        assert [s.callsign for s in durable.list_open_sessions()] == ['OPIS_GND']

        again = synchronizer.push()
        assert again.pushed_closed == 0
        assert again.pushed_duplicates == 2

    def test_prunes_checkpoints_of_closed_sessions(self, synchronizer, durable, history_store,
                                                   controller, at):
        open_session = OpenSession.start(controller(), at(0))
        durable.upsert_open_session(open_session)
        history_store.add([open_session.close()])

        report = synchronizer.push()

        assert report.pruned_open == 1
        assert durable.list_open_sessions() == []

    def test_run_is_pull_then_push(self, synchronizer, durable, history_store, closed, t0):
        durable.insert_closed_session(closed('OPKC_TWR', t0))
        history_store.add([closed('OPLA_APP', t0)])

        report = synchronizer.run()

        assert report.total_inserted == 1
        assert report.pushed_closed == 1
        assert len(durable.list_closed_sessions()) == 2
        assert report.to_dict()['total_inserted'] == 1
