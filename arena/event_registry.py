import logging
from datetime import datetime
from typing import Optional, Tuple, List
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .models import db, Event, EventRound, Organization, User
from .store import store_retry, get_or_raise
from shared.state_machine import EventStateMachine, EventStatus, TransitionError
from shared.errors import HandleTaken
from shared.events import event_created_event, event_status_changed_event

logger = logging.getLogger(__name__)

PUBLIC_STATES = (EventStatus.PUBLISHED.value, EventStatus.ONGOING.value)


class EventRegistry:
    """
    Manages event lifecycle:
    - Create organizations and events
    - Add rounds
    - Move events through draft -> published -> ongoing -> completed / cancelled
    """

    def __init__(self, hub=None):
        self.hub = hub

    def _publish(self, event):
        if self.hub:
            self.hub.publish(event)

    @store_retry('create_organization')
    def create_organization(self, name: str, handle: str, created_by_id: str) -> Organization:
        get_or_raise(User, created_by_id)
        organization = Organization(name=name, handle=handle, created_by_id=created_by_id)
        db.session.add(organization)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise HandleTaken("Organization handle is already taken", handle=handle)
        return organization

    @store_retry('create_event')
    def create_event(
        self,
        title: str,
        created_by_id: str,
        organization_id: str = None,
        description: str = None,
        event_type: str = 'hackathon',
        max_participants: int = None,
        registration_start_at: datetime = None,
        registration_end_at: datetime = None,
        start_at: datetime = None,
        end_at: datetime = None
    ) -> Event:
        """Create a new event in draft state."""
        if max_participants is not None and max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        if registration_start_at and registration_end_at and registration_end_at < registration_start_at:
            raise ValueError("Registration window ends before it starts")
        if start_at and end_at and end_at < start_at:
            raise ValueError("Event ends before it starts")

        get_or_raise(User, created_by_id)
        if organization_id:
            get_or_raise(Organization, organization_id)

        event = Event(
            title=title,
            description=description,
            event_type=event_type,
            status=EventStatus.DRAFT.value,
            max_participants=max_participants,
            registration_start_at=registration_start_at,
            registration_end_at=registration_end_at,
            start_at=start_at,
            end_at=end_at,
            organization_id=organization_id,
            created_by_id=created_by_id
        )
        db.session.add(event)
        db.session.flush()
        payload = event.to_dict()
        db.session.commit()

        self._publish(event_created_event(payload))
        return event

    def get_event(self, event_id: str) -> Optional[Event]:
        return db.session.get(Event, event_id)

    def list_events(
        self,
        status: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Event]:
        """List events with optional filtering."""
        query = Event.query

        if status:
            query = query.filter_by(status=status)

        query = query.order_by(Event.created_at.desc())
        return query.offset(offset).limit(limit).all()

    def list_public_events(self, limit: int = 50) -> List[Event]:
        return (
            Event.query.filter(Event.status.in_(PUBLIC_STATES))
            .order_by(Event.start_at.asc(), Event.created_at.desc())
            .limit(limit)
            .all()
        )

    @store_retry('add_round')
    def add_round(self, event_id: str, name: str, max_score: int = 100) -> EventRound:
        if max_score < 1:
            raise ValueError("max_score must be at least 1")

        event = get_or_raise(Event, event_id)
        sm = EventStateMachine.from_state_string(event.status)
        if not sm.can_perform('add_round'):
            raise ValueError(f"Cannot add rounds to an event in {event.status} state")

        current = db.session.execute(
            select(func.coalesce(func.max(EventRound.round_number), 0)).where(EventRound.event_id == event_id)
        ).scalar_one()
        event_round = EventRound(
            event_id=event_id,
            name=name,
            round_number=current + 1,
            max_score=max_score
        )
        db.session.add(event_round)
        db.session.commit()
        return event_round

    def publish_event(self, event_id: str) -> Tuple[bool, str]:
        """Open the event for registration."""
        return self._transition(event_id, 'publish')

    def start_event(self, event_id: str) -> Tuple[bool, str]:
        return self._transition(event_id, 'start')

    def complete_event(self, event_id: str) -> Tuple[bool, str]:
        return self._transition(event_id, 'complete')

    def cancel_event(self, event_id: str) -> Tuple[bool, str]:
        return self._transition(event_id, 'cancel')

    @store_retry('event_transition')
    def _transition(self, event_id: str, action: str) -> Tuple[bool, str]:
        event = self.get_event(event_id)

        if not event:
            return False, "Event not found"

        # Use state machine to validate and execute transition
        sm = EventStateMachine.from_state_string(event.status)

        if not sm.can_perform(action):
            return False, f"Cannot {action} event in {event.status} state"

        try:
            old_state = sm.state.value
            new_state = sm.transition(action, guard_context={'rounds': list(event.rounds)})
        except TransitionError as e:
            return False, str(e)

        event.status = new_state.value
        db.session.commit()

        logger.info(f"Event {event_id}: {old_state} -> {new_state.value}")
        self._publish(event_status_changed_event(event_id, old_state, new_state.value))
        return True, f"Event {new_state.value}"

    @store_retry('delete_event')
    def delete_event(self, event_id: str) -> Tuple[bool, str]:
        """Delete an event (only allowed in draft state)."""
        event = self.get_event(event_id)

        if not event:
            return False, "Event not found"

        if event.status != EventStatus.DRAFT.value:
            return False, "Can only delete events in draft state"

        db.session.delete(event)
        db.session.commit()

        return True, "Event deleted"
