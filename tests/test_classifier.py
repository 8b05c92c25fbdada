# ==============================================================================
# Tests for the Snapshot Classifier and Feed Client
# ==============================================================================
"""
Unit tests for presence.ingestion.classifier and feed_client.

Tests cover:
- Controller callsign rule, facility mapping, FIR inference
- Display-name fallback
- Pilot inclusion by airport prefix or geofence
- Malformed rows skipped without aborting the snapshot
- Feed errors normalized to FeedUnavailable
"""

from unittest.mock import MagicMock

import pytest
import requests

from presence.errors import FeedUnavailable
from presence.ingestion.classifier import (
    BoundingBox,
    Classifier,
    RegionGeofence,
    facility_name,
)
from presence.ingestion.feed_client import FeedClient, Snapshot
from presence.tracking.models import Category


@pytest.fixture()
def classifier():
    geofence = RegionGeofence({
        'OPKR': BoundingBox(23.0, 30.0, 60.5, 71.5),
        'OPLR': BoundingBox(28.0, 37.5, 66.0, 78.0),
    })
    return Classifier(geofence=geofence)


# ==============================================================================
# Controllers
# ==============================================================================


class TestControllers:
    """Tests for controller classification."""

    @pytest.mark.parametrize('callsign', [
        'OPKC_TWR', 'OPLA_APP', 'OPKR_CTR', 'OPRN_ATIS', 'opis_gnd', 'OPKC_DEP',
    ])
    def test_tracked_callsigns(self, classifier, callsign):
        assert classifier.is_tracked_controller(callsign)

    @pytest.mark.parametrize('callsign', [
        'EGLL_TWR', 'OPK_TWR', 'OPKC_OBS', 'OPKC_1_TWR', 'OPKC_TWR_X', '',
    ])
    def test_untracked_callsigns(self, classifier, callsign):
        assert not classifier.is_tracked_controller(callsign)

    def test_attributes(self, classifier):
        entry = classifier.classify_controller({
            'callsign': 'opkr_ctr', 'cid': 1234, 'name': 'Ali Khan',
            'frequency': '133.200', 'facility': 6,
        })
        assert entry.category is Category.CONTROLLER
        assert entry.callsign == 'OPKR_CTR'
        assert entry.cid == 1234
        assert entry.attributes == {'frequency': '133.200', 'facility': 'CTR', 'fir': 'OPKR'}

    def test_missing_fields_get_sentinels(self, classifier):
        entry = classifier.classify_controller({'callsign': 'OPKC_TWR'})
        assert entry.cid == 0
        assert entry.attributes['frequency'] == 'N/A'
        assert entry.attributes['facility'] == 'UNK'
        assert entry.attributes['fir'] == 'N/A'

    def test_name_fallback_to_position(self, classifier):
        assert classifier.classify_controller(
            {'callsign': 'OPKC_APP', 'cid': 555, 'name': '555'}
        ).name == 'APP'
        assert classifier.classify_controller(
            {'callsign': 'OPKC_APP', 'cid': 555, 'name': '  '}
        ).name == 'APP'

    @pytest.mark.parametrize('value,expected', [
        (1, 'FSS'), (4, 'TWR'), (6, 'CTR'), (0, 'UNK'), (9, 'UNK'), (None, 'UNK'), ('x', 'UNK'),
    ])
    def test_facility_name(self, value, expected):
        assert facility_name(value) == expected


# ==============================================================================
# Pilots
# ==============================================================================


class TestPilots:
    """Tests for pilot classification."""

    def test_included_by_departure(self, classifier):
        entry = classifier.classify_pilot({
            'callsign': 'UAE612', 'cid': 1, 'latitude': 51.0, 'longitude': 0.0,
            'flight_plan': {'departure': 'opkc', 'arrival': 'omdb', 'aircraft_short': 'B77W'},
        })
        assert entry.attributes == {
            'departure': 'OPKC', 'arrival': 'OMDB', 'aircraft': 'B77W', 'fir': 'N/A',
        }

    def test_included_by_geofence(self, classifier):
        entry = classifier.classify_pilot({
            'callsign': 'THY710', 'latitude': 33.5, 'longitude': 73.0,
        })
        assert entry.attributes['fir'] == 'OPLR'
        assert entry.attributes['departure'] == 'N/A'
        assert entry.name == 'Unknown'

    def test_first_region_wins(self, classifier):
        entry = classifier.classify_pilot({'callsign': 'X1', 'latitude': 29.0, 'longitude': 68.0})
        assert entry.attributes['fir'] == 'OPKR'

    def test_excluded_when_unrelated(self, classifier):
        assert classifier.classify_pilot({
            'callsign': 'BAW1', 'latitude': 51.5, 'longitude': -0.4,
            'flight_plan': {'departure': 'EGLL', 'arrival': 'KJFK'},
        }) is None

    def test_missing_position_and_plan(self, classifier):
        assert classifier.classify_pilot({'callsign': 'N123'}) is None


# ==============================================================================
# Whole snapshot
# ==============================================================================


class TestClassify:
    """Tests for Classifier.classify()."""

    def test_malformed_rows_skipped(self, classifier):
        snapshot = Snapshot(
            controllers=[
                {'callsign': 'OPKC_TWR', 'cid': 1},
                {'cid': 2},
                'not a row',
                {'callsign': 'OPLA_APP', 'cid': 'abc'},
                {'callsign': 'OPLA_GND', 'cid': 3},
            ],
            pilots=[None, {'callsign': 'PIA1', 'flight_plan': {'arrival': 'OPIS'}}],
        )
        entries = classifier.classify(snapshot)
        assert [e.callsign for e in entries] == ['OPKC_TWR', 'OPLA_GND', 'PIA1']

    def test_from_config(self, app_config):
        classifier = Classifier.from_config(app_config.classifier)
        assert classifier.is_tracked_controller('OPKC_TWR')
        assert 'OPKR' in classifier.geofence.regions


# ==============================================================================
# Feed client
# ==============================================================================


class TestFeedClient:
    """Tests for FeedClient.fetch()."""

    def _client(self, response=None, error=None):
        session = MagicMock()
        session.headers = {}
        if error is not None:
            session.get.side_effect = error
        else:
            session.get.return_value = response
        return FeedClient('https://feed.example/data.json', timeout=5, session=session), session

    def test_fetch_merges_atis(self):
        response = MagicMock()
        response.json.return_value = {
            'general': {'update_timestamp': '2024-03-04T12:00:00Z'},
            'controllers': [{'callsign': 'OPKC_TWR'}],
            'atis': [{'callsign': 'OPKC_ATIS'}],
            'pilots': [{'callsign': 'PIA1'}],
        }
        client, session = self._client(response)

        snapshot = client.fetch()

        session.get.assert_called_once_with('https://feed.example/data.json', timeout=5)
        assert [c['callsign'] for c in snapshot.controllers] == ['OPKC_TWR', 'OPKC_ATIS']
        assert len(snapshot.pilots) == 1
        assert snapshot.fetched_at is not None
        assert snapshot.feed_updated == '2024-03-04T12:00:00Z'

    def test_timeout_raises_feed_unavailable(self):
        client, _ = self._client(error=requests.exceptions.Timeout('slow'))
        with pytest.raises(FeedUnavailable):
            client.fetch()
        assert client.stats['error_count'] == 1

    def test_http_error_raises_feed_unavailable(self):
        response = MagicMock()
        response.status_code = 503
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
        client, _ = self._client(response)
        with pytest.raises(FeedUnavailable, match='503'):
            client.fetch()

    def test_bad_json_raises_feed_unavailable(self):
        response = MagicMock()
        response.json.side_effect = ValueError('Expecting value')
        client, _ = self._client(response)
        with pytest.raises(FeedUnavailable):
            client.fetch()

    def test_non_object_document(self):
        with pytest.raises(FeedUnavailable):
            Snapshot.from_document(['not', 'an', 'object'])
