import logging
from typing import List
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .models import db, Announcement, Event, EventRound, Evaluation, Submission, Team, TeamMember
from .ranking import RankingEngine
from .store import store_retry, get_or_raise
from shared.state_machine import EventStateMachine
from shared.errors import ActionNotAllowed, AlreadyEvaluated, NotTeamMember, ScoreOutOfRange
from shared.events import announcement_event, standings_changed_event, submission_created_event

logger = logging.getLogger(__name__)


class SubmissionService:
    """Team submissions, judge evaluations and event announcements."""

    def __init__(self, hub=None, ranking: RankingEngine = None):
        self.hub = hub
        self.ranking = ranking or RankingEngine(hub)

    def _publish(self, event):
        if self.hub:
            self.hub.publish(event)

    def _require_action(self, event: Event, action: str):
        sm = EventStateMachine.from_state_string(event.status)
        if not sm.can_perform(action):
            raise ActionNotAllowed(f"Cannot {action} while event is {event.status}", event_id=event.id)

    @store_retry('create_submission')
    def create_submission(self, team_id: str, round_id: str, submitted_by_id: str, content: dict = None) -> Submission:
        team = get_or_raise(Team, team_id)
        event_round = get_or_raise(EventRound, round_id, 'Round')
        if event_round.event_id != team.event_id:
            raise ValueError("Round does not belong to the team's event")
        self._require_action(get_or_raise(Event, team.event_id), 'submit')

        member = TeamMember.query.filter_by(team_id=team_id, user_id=submitted_by_id).first()
        if member is None:
            raise NotTeamMember("Only team members can submit", team_id=team_id)

        submission = Submission(
            event_id=team.event_id,
            round_id=round_id,
            team_id=team_id,
            submitted_by_id=submitted_by_id,
            content=content or {},
            status='submitted'
        )
        db.session.add(submission)
        db.session.flush()
        payload = submission.to_dict()
        db.session.commit()

        self._publish(submission_created_event(payload))
        return submission

    @store_retry('record_evaluation')
    def record_evaluation(
        self,
        submission_id: str,
        evaluator_id: str,
        score: int,
        feedback: str = None
    ) -> Evaluation:
        """Record a judge's score. Each judge scores a submission once."""
        submission = get_or_raise(Submission, submission_id)
        event_round = get_or_raise(EventRound, submission.round_id, 'Round')
        self._require_action(get_or_raise(Event, submission.event_id), 'evaluate')

        if isinstance(score, bool) or not isinstance(score, int):
            raise ValueError("Score must be an integer")
        if not 0 <= score <= event_round.max_score:
            raise ScoreOutOfRange(
                f"Score must be between 0 and {event_round.max_score}",
                score=score
            )

        event_id = submission.event_id
        evaluation = Evaluation(
            submission_id=submission_id,
            round_id=submission.round_id,
            evaluator_id=evaluator_id,
            score=score,
            feedback=feedback
        )
        db.session.add(evaluation)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise AlreadyEvaluated("Judge already evaluated this submission", submission_id=submission_id)

        db.session.execute(
            update(Submission)
            .where(Submission.id == submission_id)
            .values(status='evaluated')
            .execution_options(synchronize_session=False)
        )

        standings = self.ranking.compute_team_standings(event_id)[:self.ranking.top_k]
        top = [
            {'team_id': s.team['id'], 'points': s.points, 'rank': s.rank}
            for s in standings
        ]
        self.ranking.commit_and_publish(standings_changed_event(event_id, top))

        logger.info(f"Evaluation {score} recorded for submission {submission_id} by {evaluator_id}")
        return evaluation

    @store_retry('post_announcement')
    def post_announcement(
        self,
        event_id: str,
        author_id: str,
        title: str,
        content: str,
        is_pinned: bool = False
    ) -> Announcement:
        self._require_action(get_or_raise(Event, event_id), 'announce')

        announcement = Announcement(
            event_id=event_id,
            author_id=author_id,
            title=title,
            content=content,
            is_pinned=is_pinned
        )
        db.session.add(announcement)
        db.session.flush()
        announcement_id = announcement.id
        db.session.commit()

        self._publish(announcement_event(event_id, announcement_id, title))
        return announcement

    def get_announcements(self, event_id: str) -> List[Announcement]:
        return (
            Announcement.query.filter_by(event_id=event_id)
            .order_by(Announcement.is_pinned.desc(), Announcement.created_at.desc())
            .all()
        )

    def get_recent_activity(self, limit: int = 20) -> List[dict]:
        submissions = Submission.query.order_by(Submission.submitted_at.desc()).limit(limit).all()
        return [
            {
                'id': s.id,
                'type': 'submission',
                'user_id': s.submitted_by_id,
                'event_id': s.event_id,
                'team_id': s.team_id,
                'created_at': s.submitted_at.isoformat() if s.submitted_at else None,
            }
            for s in submissions
        ]
