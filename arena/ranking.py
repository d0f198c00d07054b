import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from flask import current_app
from sqlalchemy import update, select, func, or_, and_

from .models import db, Badge, Evaluation, Registration, Submission, Team, User
from .store import store_retry, get_or_raise
from shared.errors import NotFound, PointsUnderflow
from shared.events import DomainEvent, badge_awarded_event, leaderboard_changed_event

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = 'global'
BADGE_TYPES = ('winner', 'participant', 'achievement', 'special')

# Strict total order: points, then earliest account, then id
LEADERBOARD_ORDER = (User.global_points.desc(), User.created_at.asc(), User.id.asc())


def event_scope(event_id: str) -> str:
    return f"event:{event_id}"


def parse_scope(scope: str) -> Optional[str]:
    """Return the event id of an event scope, or None for the global scope."""
    if scope in (None, GLOBAL_SCOPE):
        return None
    kind, _, key = scope.partition(':')
    if kind != 'event' or not key:
        raise ValueError(f"Unknown leaderboard scope: {scope}")
    return key


def _user_summary(user: User) -> dict:
    return {
        'id': user.id,
        'username': user.username,
        'display_name': user.display_name or user.username,
    }


@dataclass
class LeaderboardEntry:
    user: dict
    points: int
    rank: int

    def to_dict(self) -> dict:
        return {'user': self.user, 'points': self.points, 'rank': self.rank}


@dataclass
class TeamStanding:
    team: dict
    points: int
    rank: int

    def to_dict(self) -> dict:
        return {'team': self.team, 'points': self.points, 'rank': self.rank}


class RankingEngine:
    """
    Maintains users' global points and derives rankings from the store.

    Holds no state of its own: every ranking is a query, so the engine can be
    restarted at any time. Points only move through an atomic UPDATE.
    """

    def __init__(self, hub=None, top_k: int = None):
        self.hub = hub
        self._top_k = top_k
        # Held across commit and publish so frames leave in commit order
        self.publish_lock = threading.Lock()

    @property
    def top_k(self) -> int:
        return self._top_k or current_app.config.get('LEADERBOARD_TOP_K', 10)

    def _publish(self, event):
        if self.hub:
            self.hub.publish(event)

    def commit_and_publish(self, *events):
        """Commit the open transaction, then publish. No store access may happen under the lock."""
        with self.publish_lock:
            db.session.commit()
            for event in events:
                self._publish(event)

    def _window(self, event_id: str = None) -> List[Tuple[str, int]]:
        query = select(User.id, User.global_points)
        if event_id:
            query = query.join(Registration, Registration.user_id == User.id).where(
                Registration.event_id == event_id
            )
        rows = db.session.execute(query.order_by(*LEADERBOARD_ORDER).limit(self.top_k)).all()
        return [(row.id, row.global_points) for row in rows]

    def _windows(self, user_id: str) -> Dict[str, List[Tuple[str, int]]]:
        """Top-K window of every leaderboard the user appears on."""
        event_ids = db.session.execute(
            select(Registration.event_id).where(Registration.user_id == user_id)
        ).scalars().all()

        windows = {GLOBAL_SCOPE: self._window()}
        for event_id in event_ids:
            windows[event_scope(event_id)] = self._window(event_id)
        return windows

    def _increment(self, user_id: str, delta: int) -> int:
        result = db.session.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.global_points + delta >= 0)
            .values(global_points=User.global_points + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            missing = db.session.get(User, user_id) is None
            db.session.rollback()
            if missing:
                raise NotFound('User', user_id)
            raise PointsUnderflow("Points cannot go below zero", user_id=user_id, delta=delta)

        return db.session.execute(
            select(User.global_points).where(User.id == user_id)
        ).scalar_one()

    @staticmethod
    def _window_changes(before: Dict[str, list], after: Dict[str, list]) -> List[DomainEvent]:
        changes = []
        for scope, window in after.items():
            if before.get(scope) == window:
                continue
            top = [
                {'user_id': user_id, 'points': points, 'rank': rank}
                for rank, (user_id, points) in enumerate(window, start=1)
            ]
            changes.append(leaderboard_changed_event(scope, top))
        return changes

    @store_retry('apply_point_delta')
    def apply_point_delta(self, user_id: str, delta: int, reason: str) -> int:
        """Atomically add delta to a user's points and return the new total."""
        before = self._windows(user_id)
        new_total = self._increment(user_id, delta)
        after = self._windows(user_id)
        self.commit_and_publish(*self._window_changes(before, after))

        logger.info(f"Applied {delta:+d} points to {user_id} ({reason}), total {new_total}")
        return new_total

    @store_retry('award_badge')
    def award_badge(
        self,
        user_id: str,
        name: str,
        badge_type: str = 'achievement',
        event_id: str = None,
        points: int = None,
        description: str = None
    ) -> Badge:
        """Award a badge and credit its points in the same transaction."""
        if badge_type not in BADGE_TYPES:
            raise ValueError(f"Unknown badge type: {badge_type}")
        if points is None:
            points = current_app.config.get('BADGE_POINTS', {}).get(badge_type, 0)
        if not isinstance(points, int) or isinstance(points, bool):
            raise ValueError("Badge points must be an integer")
        if points < 0:
            raise ValueError("Badge points cannot be negative")

        get_or_raise(User, user_id)
        before = self._windows(user_id)

        badge = Badge(
            user_id=user_id,
            event_id=event_id,
            badge_type=badge_type,
            name=name,
            description=description or f"Awarded for {name}",
            points=points
        )
        db.session.add(badge)
        db.session.flush()

        new_total = self._increment(user_id, points)
        after = self._windows(user_id)
        badge_id = badge.id
        self.commit_and_publish(
            badge_awarded_event(user_id, badge_id, points, event_id),
            *self._window_changes(before, after)
        )

        logger.info(f"Badge '{name}' awarded to {user_id} (+{points}), total {new_total}")
        return badge

    def compute_leaderboard(self, scope: str = GLOBAL_SCOPE, limit: int = None) -> List[LeaderboardEntry]:
        """Ordered leaderboard for a scope. Read-only; ranks are 1-based and never shared."""
        event_id = parse_scope(scope)

        query = select(User).order_by(*LEADERBOARD_ORDER)
        if event_id:
            query = query.join(Registration, Registration.user_id == User.id).where(
                Registration.event_id == event_id
            )
        if limit is not None:
            query = query.limit(limit)

        users = db.session.execute(query).scalars().all()
        return [
            LeaderboardEntry(user=_user_summary(user), points=user.global_points, rank=rank)
            for rank, user in enumerate(users, start=1)
        ]

    def get_user_rank(self, user_id: str) -> int:
        row = db.session.execute(
            select(User.global_points, User.created_at).where(User.id == user_id)
        ).first()
        if row is None:
            raise NotFound('User', user_id)

        points, created_at = row
        ahead = db.session.execute(
            select(func.count()).select_from(User).where(or_(
                User.global_points > points,
                and_(User.global_points == points, User.created_at < created_at),
                and_(User.global_points == points, User.created_at == created_at, User.id < user_id),
            ))
        ).scalar_one()
        return ahead + 1

    def compute_team_standings(self, event_id: str) -> List[TeamStanding]:
        """Teams of an event ordered by their summed evaluation scores."""
        points = func.coalesce(func.sum(Evaluation.score), 0).label('points')
        rows = db.session.execute(
            select(Team.id, Team.name, points)
            .select_from(Team)
            .outerjoin(Submission, Submission.team_id == Team.id)
            .outerjoin(Evaluation, Evaluation.submission_id == Submission.id)
            .where(Team.event_id == event_id)
            .group_by(Team.id, Team.name, Team.created_at)
            .order_by(points.desc(), Team.created_at.asc(), Team.id.asc())
        ).all()
        return [
            TeamStanding(team={'id': row.id, 'name': row.name}, points=int(row.points), rank=rank)
            for rank, row in enumerate(rows, start=1)
        ]
