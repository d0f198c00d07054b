from enum import Enum
from typing import Optional, Callable, List, Dict
from dataclasses import dataclass


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


def has_rounds_guard(context: dict) -> bool:
    return len(context.get("rounds", [])) > 0


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str
    guard: Optional[Callable] = None


class StateMachine:
    """Table-driven state machine. Subclasses declare TRANSITIONS and ALLOWED_ACTIONS."""

    TRANSITIONS: List[Transition] = []
    ALLOWED_ACTIONS: Dict[Enum, List[str]] = {}

    def __init__(self, initial_state: Enum):
        self._state = initial_state
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str, guard_context: dict = None):
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()


class EventStateMachine(StateMachine):
    TRANSITIONS = [
        Transition(EventStatus.DRAFT, EventStatus.PUBLISHED, "publish"),
        Transition(EventStatus.DRAFT, EventStatus.DRAFT, "edit"),
        Transition(EventStatus.DRAFT, EventStatus.CANCELLED, "cancel"),
        Transition(EventStatus.PUBLISHED, EventStatus.ONGOING, "start", has_rounds_guard),
        Transition(EventStatus.PUBLISHED, EventStatus.CANCELLED, "cancel"),
        Transition(EventStatus.ONGOING, EventStatus.COMPLETED, "complete"),
        Transition(EventStatus.ONGOING, EventStatus.CANCELLED, "cancel"),
    ]

    ALLOWED_ACTIONS = {
        EventStatus.DRAFT: ["edit", "publish", "cancel", "delete", "add_round"],
        EventStatus.PUBLISHED: ["register", "create_team", "join_team", "start", "cancel",
                                "add_round", "announce"],
        EventStatus.ONGOING: ["register", "create_team", "join_team", "submit", "evaluate",
                              "complete", "cancel", "announce"],
        EventStatus.COMPLETED: ["evaluate", "award_badge", "announce", "view"],
        EventStatus.CANCELLED: ["view"],
    }

    def __init__(self, initial_state: EventStatus = EventStatus.DRAFT):
        super().__init__(initial_state)

    @classmethod
    def from_state_string(cls, state_str: str) -> "EventStateMachine":
        try:
            state = EventStatus(state_str)
        except ValueError:
            state = EventStatus.DRAFT
        return cls(initial_state=state)


