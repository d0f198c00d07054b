from typing import Optional


class PlatformError(Exception):
    """Base class for every error the platform raises on purpose."""


class ConstraintViolation(PlatformError):
    """A write was rejected by a declared constraint. User-actionable, never retried."""

    code = "constraint_violation"

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {'error': self.code, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class AlreadyRegistered(ConstraintViolation):
    code = "already_registered"


class CapacityExceeded(ConstraintViolation):
    code = "capacity_exceeded"


class TeamFull(ConstraintViolation):
    code = "team_full"


class InvalidInviteCode(ConstraintViolation):
    code = "invalid_invite_code"


class AlreadyOnTeam(ConstraintViolation):
    code = "already_on_team"


class InviteCodeTaken(ConstraintViolation):
    code = "invite_code_taken"


class ActionNotAllowed(ConstraintViolation):
    """The event's lifecycle state does not permit the requested action."""

    code = "action_not_allowed"


class RegistrationClosed(ActionNotAllowed):
    code = "registration_closed"


class NotRegistered(ConstraintViolation):
    """Team actions need a registration for the event first."""

    code = "not_registered"


class NotTeamMember(ConstraintViolation):
    code = "not_team_member"


class HandleTaken(ConstraintViolation):
    code = "handle_taken"


class UsernameTaken(ConstraintViolation):
    code = "username_taken"


class AlreadyEvaluated(ConstraintViolation):
    code = "already_evaluated"


class ScoreOutOfRange(ConstraintViolation):
    code = "score_out_of_range"


class PointsUnderflow(ConstraintViolation):
    code = "points_underflow"


class NotFound(PlatformError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class TransientStoreError(PlatformError):
    """Timeout or lost connection talking to the store. Safe to retry."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        self.original = original
        super().__init__(message)


class Unavailable(PlatformError):
    """The store stayed unreachable after all retries."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} unavailable after {attempts} attempts")


class BroadcastDeliveryFailure(PlatformError):
    """A subscriber could not take a frame. Logged by the hub, never raised to publishers."""

    def __init__(self, connection_id: str, reason: str):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"delivery to {connection_id} failed: {reason}")
