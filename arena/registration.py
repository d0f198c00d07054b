import uuid
import logging
from typing import List, Optional
from sqlalchemy import update, select, or_
from sqlalchemy.exc import IntegrityError

from .models import db, Event, Registration, Team, TeamMember, User
from .store import store_retry, get_or_raise
from shared.state_machine import EventStateMachine
from shared.errors import (
    AlreadyRegistered, AlreadyOnTeam, CapacityExceeded, InvalidInviteCode,
    InviteCodeTaken, NotRegistered, RegistrationClosed, TeamFull
)
from shared.events import registration_created_event, team_created_event, team_joined_event

logger = logging.getLogger(__name__)


def generate_invite_code() -> str:
    return uuid.uuid4().hex[:8].upper()


class RegistrationCoordinator:
    """
    Admits users into events and teams.

    Duplicates are rejected by the store's unique constraints and capacity by
    a conditional counter update, both inside the same transaction as the
    insert. Nothing is checked first and written later.
    """

    def __init__(self, hub=None):
        self.hub = hub

    def _publish(self, event):
        if self.hub:
            self.hub.publish(event)

    def _require_action(self, event: Event, action: str):
        sm = EventStateMachine.from_state_string(event.status)
        if not sm.can_perform(action):
            raise RegistrationClosed(
                f"Cannot {action.replace('_', ' ')} while event is {event.status}",
                event_id=event.id
            )

    @store_retry('register')
    def register(self, user_id: str, event_id: str) -> Registration:
        """Register a user for an event. At most one registration per pair, at most max_participants in total."""
        event = get_or_raise(Event, event_id)
        get_or_raise(User, user_id)
        self._require_action(event, 'register')
        if not event.registration_open():
            raise RegistrationClosed("Registration window is closed", event_id=event_id)

        registration = Registration(event_id=event_id, user_id=user_id)
        db.session.add(registration)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Duplicate registration rejected: user={user_id} event={event_id}")
            raise AlreadyRegistered(
                "User is already registered for this event",
                event_id=event_id, user_id=user_id
            )

        claimed = db.session.execute(
            update(Event)
            .where(Event.id == event_id)
            .where(or_(
                Event.max_participants.is_(None),
                Event.participant_count < Event.max_participants
            ))
            .values(participant_count=Event.participant_count + 1)
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed == 0:
            db.session.rollback()
            logger.info(f"Registration rejected, event full: user={user_id} event={event_id}")
            raise CapacityExceeded("Event is full", event_id=event_id)

        registration_id = registration.id
        db.session.commit()

        self._publish(registration_created_event(event_id, user_id, registration_id))
        return registration

    @store_retry('create_team')
    def create_team(
        self,
        leader_id: str,
        event_id: str,
        name: str,
        max_members: int = 4,
        invite_code: str = None
    ) -> Team:
        """Create a team with its registered leader as first member."""
        if not isinstance(max_members, int) or max_members < 1:
            raise ValueError("max_members must be an integer of at least 1")

        event = get_or_raise(Event, event_id)
        get_or_raise(User, leader_id)
        self._require_action(event, 'create_team')

        team = Team(
            name=name,
            event_id=event_id,
            leader_id=leader_id,
            max_members=max_members,
            member_count=1,
            invite_code=invite_code or generate_invite_code()
        )
        db.session.add(team)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Invite code collision on team creation: event={event_id}")
            raise InviteCodeTaken("Invite code is already in use", invite_code=invite_code)

        db.session.add(TeamMember(
            team_id=team.id,
            event_id=event_id,
            user_id=leader_id,
            role='leader'
        ))
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise AlreadyOnTeam("Leader already belongs to a team in this event", event_id=event_id)

        self._attach_registration(event_id, leader_id, team.id)
        team_id = team.id
        db.session.commit()

        self._publish(team_created_event(event_id, team_id, leader_id))
        return team

    @store_retry('join_team')
    def join_team(self, user_id: str, team_id: str, invite_code: str = None) -> TeamMember:
        """Add a registered user to a team. Capacity is claimed atomically per team."""
        team = get_or_raise(Team, team_id)
        get_or_raise(User, user_id)
        event = get_or_raise(Event, team.event_id)
        self._require_action(event, 'join_team')

        if invite_code is not None:
            target = Team.query.filter_by(invite_code=invite_code).first()
            if target is None or target.id != team.id or target.event_id != event.id:
                raise InvalidInviteCode("Invite code does not match this team", team_id=team_id)

        event_id = event.id
        membership = TeamMember(team_id=team_id, event_id=event_id, user_id=user_id, role='member')
        db.session.add(membership)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Join rejected, already on a team: user={user_id} event={event_id}")
            raise AlreadyOnTeam("User already belongs to a team in this event", event_id=event_id)

        claimed = db.session.execute(
            update(Team)
            .where(Team.id == team_id)
            .where(Team.member_count < Team.max_members)
            .values(member_count=Team.member_count + 1)
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed == 0:
            db.session.rollback()
            logger.info(f"Join rejected, team full: user={user_id} team={team_id}")
            raise TeamFull("Team is full", team_id=team_id)

        member_count = db.session.execute(
            select(Team.member_count).where(Team.id == team_id)
        ).scalar_one()
        self._attach_registration(event_id, user_id, team_id)
        db.session.commit()

        self._publish(team_joined_event(event_id, team_id, user_id, member_count))
        return membership

    def join_team_by_code(self, user_id: str, invite_code: str) -> TeamMember:
        team = Team.query.filter_by(invite_code=invite_code).first()
        if team is None:
            raise InvalidInviteCode("Unknown invite code")
        return self.join_team(user_id, team.id, invite_code=invite_code)

    def _attach_registration(self, event_id: str, user_id: str, team_id: str):
        """Point the user's registration at the team. Team seats are only for registered users."""
        attached = db.session.execute(
            update(Registration)
            .where(Registration.event_id == event_id, Registration.user_id == user_id)
            .values(team_id=team_id)
            .execution_options(synchronize_session=False)
        ).rowcount

        if attached == 0:
            db.session.rollback()
            logger.info(f"Team seat rejected, not registered: user={user_id} event={event_id}")
            raise NotRegistered("User is not registered for this event", event_id=event_id, user_id=user_id)

    def get_event_participants(self, event_id: str) -> List[User]:
        get_or_raise(Event, event_id)
        return (
            User.query.join(Registration, Registration.user_id == User.id)
            .filter(Registration.event_id == event_id)
            .order_by(Registration.registered_at, User.id)
            .all()
        )

    def get_event_teams(self, event_id: str) -> List[Team]:
        get_or_raise(Event, event_id)
        return Team.query.filter_by(event_id=event_id).order_by(Team.created_at, Team.id).all()

    def get_user_teams(self, user_id: str) -> List[Team]:
        return (
            Team.query.join(TeamMember, TeamMember.team_id == Team.id)
            .filter(TeamMember.user_id == user_id)
            .order_by(Team.created_at)
            .all()
        )

    def get_user_registrations(self, user_id: str) -> List[Registration]:
        return (
            Registration.query.filter_by(user_id=user_id)
            .order_by(Registration.registered_at.desc())
            .all()
        )

    def get_registration(self, user_id: str, event_id: str) -> Optional[Registration]:
        return Registration.query.filter_by(user_id=user_id, event_id=event_id).first()
