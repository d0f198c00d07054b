"""
Unit tests for ViewCache.
Tests: fetch on miss, staleness, invalidation table, failed fetches
"""
import pytest
from arena_client.views import ViewCache, INVALIDATIONS


@pytest.fixture
def views(mocker):
    cache = ViewCache(clock=lambda: 1000.0)
    cache.set_live(True)
    fetchers = {
        'events': mocker.MagicMock(return_value=['e1']),
        'event': mocker.MagicMock(side_effect=lambda event_id: {'id': event_id}),
        'leaderboard': mocker.MagicMock(side_effect=lambda scope: [scope]),
        'user_dashboard': mocker.MagicMock(side_effect=lambda user_id: {'user': user_id}),
        'activity_feed': mocker.MagicMock(return_value=[]),
    }
    for name, fetcher in fetchers.items():
        cache.register(name, fetcher)
    cache.fetchers = fetchers
    return cache


class TestRead:
    """Tests for read method."""

    def test_first_read_fetches(self, views):
        """A missing entry should be fetched once."""
        snapshot = views.read('events')
        assert snapshot.value == ['e1']
        assert snapshot.stale is False
        assert snapshot.fetched_at == 1000.0
        views.fetchers['events'].assert_called_once_with()

    def test_cached_read_does_not_fetch(self, views):
        """A valid entry should be served from cache."""
        views.read('events')
        views.read('events')
        assert views.fetchers['events'].call_count == 1

    def test_params_key_entries(self, views):
        """Each parameter set is its own entry."""
        assert views.read('event', 'a').value == {'id': 'a'}
        assert views.read('event', 'b').value == {'id': 'b'}
        assert views.fetchers['event'].call_count == 2

    def test_unregistered_view(self, views):
        """Reading an unknown view is a programming error."""
        with pytest.raises(KeyError):
            views.read('nope')

    def test_not_live_marks_stale(self, views):
        """While disconnected every snapshot is stale."""
        views.read('events')
        views.set_live(False)
        snapshot = views.read('events')
        assert snapshot.stale is True
        assert snapshot.value == ['e1']
        assert views.fetchers['events'].call_count == 1

    def test_failed_fetch_serves_last_value(self, views):
        """A failing re-fetch returns the last known value, stale."""
        views.read('events')
        views.invalidate('events')
        views.fetchers['events'].side_effect = ConnectionError('down')

        snapshot = views.read('events')
        assert snapshot.value == ['e1']
        assert snapshot.stale is True

    def test_failed_first_fetch(self, views):
        """With nothing cached a failed fetch yields an empty stale snapshot."""
        views.fetchers['activity_feed'].side_effect = ConnectionError('down')
        snapshot = views.read('activity_feed')
        assert snapshot.value is None
        assert snapshot.stale is True


class TestInvalidate:
    """Tests for explicit invalidation."""

    def test_invalidate_refetches_exactly_once(self, views):
        """After invalidation the next read fetches, later reads do not."""
        views.read('leaderboard', 'global')
        views.invalidate('leaderboard', 'global')
        assert views.is_stale('leaderboard', 'global')

        views.read('leaderboard', 'global')
        views.read('leaderboard', 'global')
        assert views.fetchers['leaderboard'].call_count == 2

    def test_invalidate_view_hits_every_entry(self, views):
        """Invalidating without params marks all entries of the view."""
        views.read('event', 'a')
        views.read('event', 'b')
        assert views.invalidate('event') == 2

    def test_invalidate_all(self, views):
        """invalidate_all marks everything stale."""
        views.read('events')
        views.read('event', 'a')
        views.invalidate_all()
        assert views.is_stale('events')
        assert views.is_stale('event', 'a')


class TestInvalidateForFrame:
    """Tests for the frame invalidation table."""

    def test_known_types_listed(self):
        """Every broadcast wire type should have an entry."""
        assert set(INVALIDATIONS) == {
            'new_event', 'event_updated', 'new_registration', 'team_created', 'team_joined',
            'new_submission', 'leaderboard_update', 'standings_update', 'badge_awarded', 'announcement',
        }

    def test_leaderboard_update_targets_scope(self, views):
        """Only the named scope's leaderboard goes stale."""
        views.read('leaderboard', 'global')
        views.read('leaderboard', 'event:1')

        assert views.invalidate_for_frame({'type': 'leaderboard_update', 'data': {'scope': 'global', 'top': []}})
        assert views.is_stale('leaderboard', 'global')
        assert not views.is_stale('leaderboard', 'event:1')

    def test_payload_is_not_applied(self, views):
        """The frame's data never reaches the cache."""
        views.read('leaderboard', 'global')
        views.invalidate_for_frame({'type': 'leaderboard_update', 'data': {'scope': 'global', 'top': ['x']}})
        assert views.read('leaderboard', 'global').value == ['global']

    def test_registration_frame(self, views):
        """new_registration invalidates events and the user's dashboard."""
        views.read('events')
        views.read('user_dashboard', 'u1')
        views.read('user_dashboard', 'u2')

        views.invalidate_for_frame({'type': 'new_registration', 'data': {'event_id': 'e', 'user_id': 'u1'}})
        assert views.is_stale('events')
        assert views.is_stale('user_dashboard', 'u1')
        assert not views.is_stale('user_dashboard', 'u2')

    def test_registration_frame_targets_event_board(self, views):
        """A registration frame's scope names the event leaderboard that gained a row."""
        views.read('leaderboard', 'event:e')
        views.read('leaderboard', 'event:other')

        views.invalidate_for_frame({'type': 'new_registration',
                                    'data': {'event_id': 'e', 'user_id': 'u1', 'scope': 'event:e'}})
        assert views.is_stale('leaderboard', 'event:e')
        assert not views.is_stale('leaderboard', 'event:other')

    def test_standings_frame(self, views, mocker):
        """standings_update only touches the event's team standings."""
        views.register('event_standings', mocker.MagicMock(side_effect=lambda event_id: [event_id]))
        views.read('event_standings', 'e')
        views.read('event_standings', 'other')
        views.read('leaderboard', 'event:e')

        views.invalidate_for_frame({'type': 'standings_update', 'data': {'event_id': 'e', 'top': []}})
        assert views.is_stale('event_standings', 'e')
        assert not views.is_stale('event_standings', 'other')
        assert not views.is_stale('leaderboard', 'event:e')

    def test_missing_param_invalidates_whole_view(self, views):
        """Without the parameter in the payload every entry goes stale."""
        views.read('leaderboard', 'global')
        views.read('leaderboard', 'event:1')
        views.invalidate_for_frame({'type': 'leaderboard_update', 'data': {}})
        assert views.is_stale('leaderboard', 'global')
        assert views.is_stale('leaderboard', 'event:1')

    def test_unknown_type(self, views):
        """Unknown frames change nothing."""
        views.read('events')
        assert views.invalidate_for_frame({'type': 'mystery', 'data': {}}) is False
        assert not views.is_stale('events')
