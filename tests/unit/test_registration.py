"""
Unit tests for RegistrationCoordinator.
Tests: register, create_team, join_team, capacity and uniqueness under concurrency
"""
from datetime import datetime, timedelta
import pytest
from arena.models import db, Event, Registration, Team, TeamMember
from shared.errors import (
    AlreadyOnTeam, AlreadyRegistered, CapacityExceeded, ConstraintViolation,
    InvalidInviteCode, InviteCodeTaken, NotFound, NotRegistered, RegistrationClosed, TeamFull
)


@pytest.fixture
def coordinator(app):
    return app.registration


class TestRegister:
    """Tests for register method."""

    def test_register_creates_registration(self, coordinator, make_user, published_event):
        """Should create a registration and count the participant."""
        user = make_user()
        registration = coordinator.register(user.id, published_event.id)

        assert registration.event_id == published_event.id
        assert registration.status == 'registered'
        assert db.session.get(Event, published_event.id).participant_count == 1

    def test_register_publishes_event(self, coordinator, make_user, published_event, hub_events):
        """A committed registration should be broadcast as new_registration."""
        user = make_user()
        coordinator.register(user.id, published_event.id)

        event = hub_events.call_args[0][0]
        assert event.wire_type == 'new_registration'
        assert event.data['user_id'] == user.id
        assert event.data['event_id'] == published_event.id

    def test_duplicate_registration_rejected(self, coordinator, make_user, published_event):
        """Second registration for the same pair should fail."""
        user = make_user()
        coordinator.register(user.id, published_event.id)

        with pytest.raises(AlreadyRegistered):
            coordinator.register(user.id, published_event.id)
        assert Registration.query.filter_by(user_id=user.id).count() == 1
        assert db.session.get(Event, published_event.id).participant_count == 1

    def test_capacity_enforced(self, coordinator, make_user, make_event):
        """Registration beyond max_participants should fail."""
        event = make_event(max_participants=1)
        coordinator.register(make_user().id, event.id)

        with pytest.raises(CapacityExceeded):
            coordinator.register(make_user().id, event.id)
        assert Registration.query.filter_by(event_id=event.id).count() == 1

    def test_rejection_not_broadcast(self, coordinator, make_user, make_event, hub_events):
        """Failed registrations should publish nothing."""
        event = make_event(max_participants=1)
        coordinator.register(make_user().id, event.id)
        hub_events.reset_mock()

        with pytest.raises(CapacityExceeded):
            coordinator.register(make_user().id, event.id)
        hub_events.assert_not_called()

    def test_draft_event_closed(self, coordinator, make_user, make_event):
        """Drafts do not accept registrations."""
        event = make_event('draft')
        with pytest.raises(RegistrationClosed):
            coordinator.register(make_user().id, event.id)

    def test_registration_window_closed(self, coordinator, make_user, make_event):
        """Registrations after the window should fail."""
        event = make_event(registration_end_at=datetime.utcnow() - timedelta(days=1))
        with pytest.raises(RegistrationClosed):
            coordinator.register(make_user().id, event.id)

    def test_unknown_event(self, coordinator, make_user):
        """Unknown event should raise NotFound."""
        with pytest.raises(NotFound):
            coordinator.register(make_user().id, 'missing-event')

    def test_violation_carries_code(self, coordinator, make_user, published_event):
        """Constraint violations should serialize with their code."""
        user = make_user()
        coordinator.register(user.id, published_event.id)
        with pytest.raises(ConstraintViolation) as exc_info:
            coordinator.register(user.id, published_event.id)
        assert exc_info.value.to_dict()['error'] == 'already_registered'


class TestConcurrentRegistration:
    """Capacity and uniqueness must hold under concurrent registrations."""

    @staticmethod
    def _register(app):
        def attempt(user_id, event_id):
            return app.registration.register(user_id, event_id).id
        return attempt

    def test_last_seat_race(self, app, coordinator, make_user, make_event, concurrently):
        """Two users racing for one seat: exactly one wins."""
        event_id = make_event(max_participants=1).id
        user_ids = [make_user().id, make_user().id]

        results = concurrently(self._register(app), [(uid, event_id) for uid in user_ids])

        outcomes = sorted(status for status, _ in results)
        assert outcomes == ['error', 'ok']
        error = next(value for status, value in results if status == 'error')
        assert isinstance(error, CapacityExceeded)
        assert Registration.query.filter_by(event_id=event_id).count() == 1
        assert db.session.get(Event, event_id).participant_count == 1

    def test_capacity_never_exceeded(self, app, coordinator, make_user, make_event, concurrently):
        """At most N of many concurrent registrations succeed."""
        event_id = make_event(max_participants=3).id
        user_ids = [make_user().id for _ in range(8)]

        results = concurrently(self._register(app), [(uid, event_id) for uid in user_ids])

        succeeded = [value for status, value in results if status == 'ok']
        failed = [value for status, value in results if status == 'error']
        assert len(succeeded) == 3
        assert all(isinstance(e, CapacityExceeded) for e in failed)
        assert Registration.query.filter_by(event_id=event_id).count() == 3

    def test_same_user_twice(self, app, coordinator, make_user, published_event, concurrently):
        """Concurrent duplicate registrations leave exactly one row."""
        user_id = make_user().id
        event_id = published_event.id

        results = concurrently(self._register(app), [(user_id, event_id)] * 2)

        errors = [value for status, value in results if status == 'error']
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyRegistered)
        assert Registration.query.filter_by(user_id=user_id, event_id=event_id).count() == 1


class TestCreateTeam:
    """Tests for create_team method."""

    def test_create_team_with_leader(self, coordinator, make_participant, published_event):
        """Leader should become the first member."""
        leader = make_participant(published_event)
        team = coordinator.create_team(leader.id, published_event.id, 'Rockets', max_members=3)

        assert team.member_count == 1
        assert team.invite_code
        member = TeamMember.query.filter_by(team_id=team.id).one()
        assert member.user_id == leader.id
        assert member.role == 'leader'

    def test_create_team_links_registration(self, coordinator, make_participant, published_event):
        """The leader's registration should point at the new team."""
        leader = make_participant(published_event)
        team = coordinator.create_team(leader.id, published_event.id, 'Rockets')

        registration = coordinator.get_registration(leader.id, published_event.id)
        db.session.refresh(registration)
        assert registration.team_id == team.id

    def test_unregistered_leader_rejected(self, coordinator, make_user, published_event):
        """Only registered users can found a team."""
        with pytest.raises(NotRegistered):
            coordinator.create_team(make_user().id, published_event.id, 'Rockets')
        assert Team.query.filter_by(event_id=published_event.id).count() == 0
        assert TeamMember.query.count() == 0

    def test_duplicate_invite_code(self, coordinator, make_participant, published_event):
        """Invite codes are unique across teams."""
        coordinator.create_team(make_participant(published_event).id, published_event.id, 'A',
                                invite_code='CODE1234')
        with pytest.raises(InviteCodeTaken):
            coordinator.create_team(make_participant(published_event).id, published_event.id, 'B',
                                    invite_code='CODE1234')

    def test_leader_already_on_team(self, coordinator, make_participant, published_event):
        """A user leads at most one team per event."""
        leader = make_participant(published_event)
        coordinator.create_team(leader.id, published_event.id, 'A')
        with pytest.raises(AlreadyOnTeam):
            coordinator.create_team(leader.id, published_event.id, 'B')
        assert Team.query.filter_by(event_id=published_event.id).count() == 1

    def test_invalid_max_members(self, coordinator, make_participant, published_event):
        """max_members must be positive."""
        with pytest.raises(ValueError):
            coordinator.create_team(make_participant(published_event).id, published_event.id, 'A', max_members=0)

    def test_concurrent_same_invite_code(self, app, coordinator, make_participant, published_event, concurrently):
        """Two teams racing for one invite code: exactly one succeeds."""
        event_id = published_event.id
        leaders = [make_participant(published_event).id, make_participant(published_event).id]

        def attempt(leader_id, name):
            return app.registration.create_team(leader_id, event_id, name, invite_code='SAMECODE').id

        results = concurrently(attempt, [(leaders[0], 'A'), (leaders[1], 'B')])

        errors = [value for status, value in results if status == 'error']
        assert len(errors) == 1
        assert isinstance(errors[0], InviteCodeTaken)
        assert Team.query.filter_by(invite_code='SAMECODE').count() == 1


class TestJoinTeam:
    """Tests for join_team method."""

    @pytest.fixture
    def team(self, coordinator, make_participant, published_event):
        return coordinator.create_team(make_participant(published_event).id, published_event.id, 'Rockets',
                                       max_members=2)

    def test_join_team(self, coordinator, make_participant, published_event, team, hub_events):
        """Joining should add a member and broadcast team_joined."""
        user = make_participant(published_event)
        membership = coordinator.join_team(user.id, team.id, team.invite_code)

        assert membership.role == 'member'
        db.session.refresh(team)
        assert team.member_count == 2
        event = hub_events.call_args[0][0]
        assert event.wire_type == 'team_joined'
        assert event.data['member_count'] == 2

    def test_unregistered_user_rejected(self, coordinator, make_user, team):
        """Joining without a registration should not take a seat."""
        with pytest.raises(NotRegistered):
            coordinator.join_team(make_user().id, team.id, team.invite_code)

        db.session.refresh(team)
        assert team.member_count == 1
        assert TeamMember.query.filter_by(team_id=team.id).count() == 1

    def test_team_full(self, coordinator, make_participant, published_event, team):
        """Joining a full team should fail."""
        coordinator.join_team(make_participant(published_event).id, team.id)
        with pytest.raises(TeamFull):
            coordinator.join_team(make_participant(published_event).id, team.id)
        assert TeamMember.query.filter_by(team_id=team.id).count() == 2

    def test_wrong_invite_code(self, coordinator, make_participant, published_event, team):
        """A code for another team should be rejected."""
        with pytest.raises(InvalidInviteCode):
            coordinator.join_team(make_participant(published_event).id, team.id, 'NOTACODE')

    def test_join_by_code(self, coordinator, make_participant, published_event, team):
        """Invite code alone should resolve the team."""
        membership = coordinator.join_team_by_code(make_participant(published_event).id, team.invite_code)
        assert membership.team_id == team.id

    def test_one_team_per_event(self, coordinator, make_participant, published_event, team):
        """A user cannot sit on two teams in the same event."""
        other = coordinator.create_team(make_participant(published_event).id, published_event.id, 'Comets')
        user = make_participant(published_event)
        coordinator.join_team(user.id, team.id)
        with pytest.raises(AlreadyOnTeam):
            coordinator.join_team(user.id, other.id)

    def test_capacity_bounds_team_members(self, coordinator, make_user, make_participant, make_event):
        """A full event cannot be entered through a team."""
        event = make_event(max_participants=1)
        team = coordinator.create_team(make_participant(event).id, event.id, 'Rockets')

        for _ in range(3):
            with pytest.raises(NotRegistered):
                coordinator.join_team(make_user().id, team.id)
        assert TeamMember.query.filter_by(event_id=event.id).count() == 1
        assert Registration.query.filter_by(event_id=event.id).count() == 1

    def test_concurrent_joins_respect_capacity(self, app, coordinator, make_participant, published_event, team,
                                               concurrently):
        """Only the free seats are handed out under contention."""
        team_id = team.id
        user_ids = [make_participant(published_event).id for _ in range(4)]

        def attempt(user_id):
            return app.registration.join_team(user_id, team_id).id

        results = concurrently(attempt, [(uid,) for uid in user_ids])

        assert sum(1 for status, _ in results if status == 'ok') == 1
        assert all(isinstance(v, TeamFull) for status, v in results if status == 'error')
        assert TeamMember.query.filter_by(team_id=team_id).count() == 2


class TestQueries:
    """Tests for read helpers."""

    def test_get_event_participants(self, coordinator, make_user, published_event):
        """Participants should be listed in registration order."""
        users = [make_user(), make_user()]
        for user in users:
            coordinator.register(user.id, published_event.id)

        participants = coordinator.get_event_participants(published_event.id)
        assert [p.id for p in participants] == [u.id for u in users]

    def test_get_user_teams(self, coordinator, make_participant, published_event):
        """Teams a user belongs to should be returned."""
        leader = make_participant(published_event)
        team = coordinator.create_team(leader.id, published_event.id, 'Rockets')
        assert [t.id for t in coordinator.get_user_teams(leader.id)] == [team.id]
