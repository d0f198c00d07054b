from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List
import json


class EventType(str, Enum):
    # Event lifecycle
    EVENT_CREATED = "event.created"
    EVENT_STATUS_CHANGED = "event.status_changed"

    # Registration and teams
    REGISTRATION_CREATED = "registration.created"
    TEAM_CREATED = "team.created"
    TEAM_JOINED = "team.joined"

    # Work and scoring
    SUBMISSION_CREATED = "submission.created"
    BADGE_AWARDED = "badge.awarded"
    LEADERBOARD_CHANGED = "leaderboard.changed"
    STANDINGS_CHANGED = "standings.changed"

    ANNOUNCEMENT_CREATED = "announcement.created"


# Frame type sent to clients for each domain event type.
WIRE_TYPES = {
    EventType.EVENT_CREATED: "new_event",
    EventType.EVENT_STATUS_CHANGED: "event_updated",
    EventType.REGISTRATION_CREATED: "new_registration",
    EventType.TEAM_CREATED: "team_created",
    EventType.TEAM_JOINED: "team_joined",
    EventType.SUBMISSION_CREATED: "new_submission",
    EventType.BADGE_AWARDED: "badge_awarded",
    EventType.LEADERBOARD_CHANGED: "leaderboard_update",
    EventType.STANDINGS_CHANGED: "standings_update",
    EventType.ANNOUNCEMENT_CREATED: "announcement",
}


@dataclass
class DomainEvent:
    type: EventType
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    @property
    def wire_type(self) -> str:
        if isinstance(self.type, EventType):
            return WIRE_TYPES[self.type]
        return self.type

    def to_frame(self) -> dict:
        """The `{type, data}` frame pushed to connected clients."""
        return {"type": self.wire_type, "data": self.data}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "DomainEvent":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "DomainEvent":
        return cls.from_dict(json.loads(json_str))


def event_created_event(event: dict) -> DomainEvent:
    return DomainEvent(type=EventType.EVENT_CREATED, data=event)


def event_status_changed_event(event_id: str, from_state: str, to_state: str) -> DomainEvent:
    return DomainEvent(
        type=EventType.EVENT_STATUS_CHANGED,
        data={
            "event_id": event_id,
            "from_state": from_state,
            "to_state": to_state
        }
    )


def registration_created_event(event_id: str, user_id: str, registration_id: str) -> DomainEvent:
    return DomainEvent(
        type=EventType.REGISTRATION_CREATED,
        data={
            "event_id": event_id,
            "user_id": user_id,
            "registration_id": registration_id,
            # the event's leaderboard gains a row
            "scope": f"event:{event_id}"
        }
    )


def team_created_event(event_id: str, team_id: str, leader_id: str) -> DomainEvent:
    return DomainEvent(
        type=EventType.TEAM_CREATED,
        data={
            "event_id": event_id,
            "team_id": team_id,
            "user_id": leader_id
        }
    )


def team_joined_event(event_id: str, team_id: str, user_id: str, member_count: int) -> DomainEvent:
    return DomainEvent(
        type=EventType.TEAM_JOINED,
        data={
            "event_id": event_id,
            "team_id": team_id,
            "user_id": user_id,
            "member_count": member_count
        }
    )


def submission_created_event(submission: dict) -> DomainEvent:
    data = dict(submission)
    data.setdefault("scope", f"event:{submission['event_id']}")
    return DomainEvent(type=EventType.SUBMISSION_CREATED, data=data)


def badge_awarded_event(user_id: str, badge_id: str, points: int, event_id: Optional[str] = None) -> DomainEvent:
    return DomainEvent(
        type=EventType.BADGE_AWARDED,
        data={
            "user_id": user_id,
            "badge_id": badge_id,
            "points": points,
            "event_id": event_id
        }
    )


def leaderboard_changed_event(scope: str, top: List[dict]) -> DomainEvent:
    return DomainEvent(
        type=EventType.LEADERBOARD_CHANGED,
        data={
            "scope": scope,
            "top": top
        }
    )


def standings_changed_event(event_id: str, top: List[dict]) -> DomainEvent:
    """Team standings of an event, moved by an evaluation."""
    return DomainEvent(
        type=EventType.STANDINGS_CHANGED,
        data={
            "event_id": event_id,
            "top": top
        }
    )


def announcement_event(event_id: str, announcement_id: str, title: str) -> DomainEvent:
    return DomainEvent(
        type=EventType.ANNOUNCEMENT_CREATED,
        data={
            "event_id": event_id,
            "announcement_id": announcement_id,
            "title": title
        }
    )
