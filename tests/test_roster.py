# ==============================================================================
# Tests for the Member Roster and Last-Callsign Resolution
# ==============================================================================
"""
Unit tests for MemberRoster and LastCallsignResolver.

Tests cover:
- Auto-registration and placeholder name replacement
- Minutes and session counts from closed sessions
- Pseudo-sessions never add minutes or become the last callsign
- Resolver precedence: open sessions, history, durable store
- Persistence round trip
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from presence.errors import DurableStoreError
from presence.store.roster import SOURCE_AUTO, SOURCE_MANUAL, MemberRoster
from presence.tracking.models import Category, OpenSession
from presence.tracking.resolver import LastCallsignResolver


@pytest.fixture()
def roster(tmp_path, exclusion):
    return MemberRoster(str(tmp_path / 'roster.json'), exclusion=exclusion)


# ==============================================================================
# Registration
# ==============================================================================


class TestRegistration:
    """Tests for add_member / notify_observed."""

    def test_manual_add(self, roster):
        member = roster.add_member(1234, 'Ali Khan')
        assert member.source == SOURCE_MANUAL
        assert member.name == 'Ali Khan'
        assert roster.add_member(1234, 'Someone Else') is member

    def test_observed_registers_automatically(self, roster):
        roster.notify_observed(555, 'Sara Ahmed', 'OPKC_TWR')
        member = roster.get(555)
        assert member.source == SOURCE_AUTO
        assert member.last_callsign == 'OPKC_TWR'
        assert member.last_seen is not None

    @pytest.mark.parametrize('name', ['', 'Unknown', '555', 'TWR', 'atis'])
    def test_placeholder_names_rejected(self, roster, name):
        roster.notify_observed(555, name, 'OPKC_TWR')
        assert roster.get(555).name == 'Unknown'

    def test_placeholder_replaced_by_real_name(self, roster):
        roster.notify_observed(555, 'TWR', 'OPKC_TWR')
        roster.notify_observed(555, 'Sara Ahmed', 'OPKC_TWR')
        assert roster.get(555).name == 'Sara Ahmed'

    def test_zero_cid_ignored(self, roster):
        roster.notify_observed(0, 'Nobody', 'OPKC_TWR')
        assert len(roster) == 0

    def test_remove(self, roster):
        roster.add_member(1)
        assert roster.remove_member(1)
        assert not roster.remove_member(1)


# ==============================================================================
# Totals
# ==============================================================================


class TestTotals:
    """Tests for record_closed and summary."""

    def test_minutes_by_category(self, roster, closed, t0):
        roster.record_closed(closed('OPKC_TWR', t0, minutes=90, cid=7))
        roster.record_closed(closed('PIA301', t0, minutes=30, cid=7, category=Category.PILOT))

        member = roster.get(7)
        assert member.controller_minutes == 90
        assert member.pilot_minutes == 30
        assert member.sessions_count == 2
        assert member.to_dict()['controller_hours'] == '001:30:00'

    def test_atis_adds_nothing_and_keeps_last_callsign(self, roster, closed, t0):
        roster.record_closed(closed('OPKC_TWR', t0, minutes=60, cid=7))
        roster.record_closed(closed('OPKC_ATIS', t0 + timedelta(hours=2), minutes=240, cid=7))

        member = roster.get(7)
        assert member.controller_minutes == 60
        assert member.sessions_count == 1
        assert member.last_callsign == 'OPKC_TWR'

    def test_same_session_counted_once(self, roster, closed, exclusion, t0):
        session = closed('OPKC_TWR', t0, minutes=10, cid=7)
        assert roster.record_closed(session) is True
        assert roster.record_closed(session) is False

        member = roster.get(7)
        assert member.controller_minutes == 10
        assert member.sessions_count == 1

        reloaded = MemberRoster(roster.path, exclusion=exclusion)
        reloaded.load_from_disk()
        assert reloaded.record_closed(session) is False
        assert reloaded.get(7).controller_minutes == 10

    def test_members_sorted_by_activity(self, roster, closed, t0):
        roster.record_closed(closed('OPKC_TWR', t0, minutes=10, cid=1))
        roster.record_closed(closed('OPLA_APP', t0, minutes=50, cid=2))
        assert [m.cid for m in roster.members()] == [2, 1]

    def test_summary(self, roster, closed, t0):
        roster.add_member(1, 'Ali Khan')
        roster.record_closed(closed('OPKC_TWR', t0, minutes=120, cid=2))
        summary = roster.summary()
        assert summary['total_members'] == 2
        assert summary['auto_detected'] == 1
        assert summary['total_controller_minutes'] == 120
        assert summary['total_controller_hours'] == '002:00:00'
        assert summary['total_sessions'] == 1


# ==============================================================================
# Persistence
# ==============================================================================


class TestPersistence:
    """Tests for roster JSON persistence."""

    def test_round_trip(self, roster, closed, exclusion, t0):
        roster.record_closed(closed('OPKC_TWR', t0, minutes=45, cid=9, name='Ali Khan'))

        reloaded = MemberRoster(roster.path, exclusion=exclusion)
        assert reloaded.load_from_disk() == 1
        member = reloaded.get(9)
        assert member.name == 'Ali Khan'
        assert member.controller_minutes == 45

    def test_deferred_defers_write(self, roster, tmp_path):
        with roster.deferred():
            roster.add_member(1, 'Ali Khan')
            assert not (tmp_path / 'roster.json').exists()
        assert (tmp_path / 'roster.json').exists()

    def test_corrupt_file_starts_empty(self, tmp_path, exclusion):
        path = tmp_path / 'roster.json'
        path.write_text('not json')
        roster = MemberRoster(str(path), exclusion=exclusion)
        assert roster.load_from_disk() == 0


# ==============================================================================
# Resolver
# ==============================================================================


class TestLastCallsignResolver:
    """Tests for LastCallsignResolver."""

    def test_real_callsign_taken_as_is(self, exclusion):
        resolver = LastCallsignResolver(exclusion=exclusion)
        assert resolver.choose(7, 'OPKC_TWR', 'OPLA_APP') == 'OPKC_TWR'

    def test_excluded_falls_back_to_current(self, exclusion):
        resolver = LastCallsignResolver(exclusion=exclusion)
        assert resolver.choose(7, 'OPKC_ATIS', 'OPLA_APP') == 'OPLA_APP'
        assert resolver.choose(7, 'OPKC_ATIS', None) is None

    def test_open_sessions_first(self, session_store, history_store, controller, closed,
                                 exclusion, at):
        history_store.add([closed('OPIS_GND', at(-7200), cid=7)])
        session_store.upsert(OpenSession.start(controller('OPKC_TWR', cid=7), at(0)))
        session_store.upsert(OpenSession.start(controller('OPKC_ATIS', cid=7), at(30)))

        resolver = LastCallsignResolver(session_store, history_store, exclusion=exclusion)
        assert resolver.choose(7, 'OPKC_ATIS') == 'OPKC_TWR'

    def test_history_then_durable(self, session_store, history_store, durable, closed,
                                  exclusion, t0):
        durable.insert_closed_session(closed('OPLA_APP', t0 - timedelta(days=30), cid=7))
        resolver = LastCallsignResolver(session_store, history_store, durable, exclusion)
        assert resolver.resolve(7) == 'OPLA_APP'

        history_store.add([
            closed('OPIS_GND', t0, cid=7),
            closed('OPIS_ATIS', t0 + timedelta(hours=1), cid=7),
        ])
        assert resolver.resolve(7) == 'OPIS_GND'

    def test_durable_failure_yields_none(self, exclusion):
        durable = MagicMock()
        durable.latest_callsign.side_effect = DurableStoreError('down')
        resolver = LastCallsignResolver(durable=durable, exclusion=exclusion)
        assert resolver.resolve(7) is None
