import uuid
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin

db = SQLAlchemy()


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    username = db.Column(db.String(100), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='participant')  # participant, organizer, admin
    # Only ever changed through an atomic UPDATE in the ranking engine
    global_points = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    badges = db.relationship('Badge', back_populates='user', cascade='all, delete-orphan')

    @property
    def badge_count(self) -> int:
        return len(self.badges)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name or self.username,
            'role': self.role,
            'global_points': self.global_points,
            'badge_count': self.badge_count,
            'created_at': _iso(self.created_at),
        }


class Organization(db.Model):
    __tablename__ = 'organizations'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    handle = db.Column(db.String(100), unique=True, nullable=False)
    created_by_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    events = db.relationship('Event', back_populates='organization')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'handle': self.handle,
            'created_by_id': self.created_by_id,
            'created_at': _iso(self.created_at),
        }


class Event(db.Model):
    __tablename__ = 'events'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    event_type = db.Column(db.String(20), nullable=False, default='hackathon')  # hackathon, conference, meetup, fest
    status = db.Column(db.String(20), nullable=False, default='draft')

    # Capacity: participant_count only moves through a conditional UPDATE
    max_participants = db.Column(db.Integer, nullable=True)
    participant_count = db.Column(db.Integer, nullable=False, default=0)

    registration_start_at = db.Column(db.DateTime, nullable=True)
    registration_end_at = db.Column(db.DateTime, nullable=True)
    start_at = db.Column(db.DateTime, nullable=True)
    end_at = db.Column(db.DateTime, nullable=True)

    organization_id = db.Column(db.String(36), db.ForeignKey('organizations.id'), nullable=True)
    created_by_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    organization = db.relationship('Organization', back_populates='events')
    rounds = db.relationship('EventRound', back_populates='event', cascade='all, delete-orphan',
                             order_by='EventRound.round_number')
    teams = db.relationship('Team', back_populates='event', cascade='all, delete-orphan')

    def registration_open(self, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        if self.registration_start_at and now < self.registration_start_at:
            return False
        if self.registration_end_at and now > self.registration_end_at:
            return False
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'event_type': self.event_type,
            'status': self.status,
            'max_participants': self.max_participants,
            'participant_count': self.participant_count,
            'registration_start_at': _iso(self.registration_start_at),
            'registration_end_at': _iso(self.registration_end_at),
            'start_at': _iso(self.start_at),
            'end_at': _iso(self.end_at),
            'organization_id': self.organization_id,
            'created_by_id': self.created_by_id,
            'created_at': _iso(self.created_at),
        }


class EventRound(db.Model):
    __tablename__ = 'event_rounds'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    round_number = db.Column(db.Integer, nullable=False)
    max_score = db.Column(db.Integer, nullable=False, default=100)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    event = db.relationship('Event', back_populates='rounds')

    __table_args__ = (
        db.UniqueConstraint('event_id', 'round_number', name='unique_round_number'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'name': self.name,
            'round_number': self.round_number,
            'max_score': self.max_score,
        }


class Registration(db.Model):
    __tablename__ = 'registrations'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    team_id = db.Column(db.String(36), db.ForeignKey('teams.id'), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='registered')
    registered_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('event_id', 'user_id', name='unique_registration'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'user_id': self.user_id,
            'team_id': self.team_id,
            'status': self.status,
            'registered_at': _iso(self.registered_at),
        }


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False, index=True)
    leader_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    max_members = db.Column(db.Integer, nullable=False, default=4)
    member_count = db.Column(db.Integer, nullable=False, default=0)
    invite_code = db.Column(db.String(32), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    event = db.relationship('Event', back_populates='teams')
    members = db.relationship('TeamMember', back_populates='team', cascade='all, delete-orphan')

    def to_dict(self, reveal_invite_code: bool = False):
        return {
            'id': self.id,
            'name': self.name,
            'event_id': self.event_id,
            'leader_id': self.leader_id,
            'max_members': self.max_members,
            'member_count': self.member_count,
            'invite_code': self.invite_code if reveal_invite_code else None,
            'created_at': _iso(self.created_at),
        }


class TeamMember(db.Model):
    __tablename__ = 'team_members'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey('teams.id'), nullable=False, index=True)
    # Denormalised from the team so "one team per user per event" is a declared constraint
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    role = db.Column(db.String(10), nullable=False, default='member')  # leader, member
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    team = db.relationship('Team', back_populates='members')

    __table_args__ = (
        db.UniqueConstraint('team_id', 'user_id', name='unique_team_member'),
        db.UniqueConstraint('event_id', 'user_id', name='unique_team_per_event'),
        db.Index(
            'unique_team_leader', 'team_id', unique=True,
            sqlite_where=db.text("role = 'leader'"),
            postgresql_where=db.text("role = 'leader'")
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'team_id': self.team_id,
            'event_id': self.event_id,
            'user_id': self.user_id,
            'role': self.role,
            'joined_at': _iso(self.joined_at),
        }


class Submission(db.Model):
    __tablename__ = 'submissions'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False, index=True)
    round_id = db.Column(db.String(36), db.ForeignKey('event_rounds.id'), nullable=False)
    team_id = db.Column(db.String(36), db.ForeignKey('teams.id'), nullable=False, index=True)
    submitted_by_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    content = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default='submitted')  # pending, submitted, evaluated
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    evaluations = db.relationship('Evaluation', back_populates='submission', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'round_id': self.round_id,
            'team_id': self.team_id,
            'submitted_by_id': self.submitted_by_id,
            'status': self.status,
            'submitted_at': _iso(self.submitted_at),
        }


class Evaluation(db.Model):
    __tablename__ = 'evaluations'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    submission_id = db.Column(db.String(36), db.ForeignKey('submissions.id'), nullable=False, index=True)
    round_id = db.Column(db.String(36), db.ForeignKey('event_rounds.id'), nullable=False)
    evaluator_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    score = db.Column(db.Integer, nullable=False)
    feedback = db.Column(db.Text, nullable=True)
    evaluated_at = db.Column(db.DateTime, default=datetime.utcnow)

    submission = db.relationship('Submission', back_populates='evaluations')

    __table_args__ = (
        db.UniqueConstraint('submission_id', 'evaluator_id', name='unique_evaluation_per_judge'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'submission_id': self.submission_id,
            'round_id': self.round_id,
            'evaluator_id': self.evaluator_id,
            'score': self.score,
            'feedback': self.feedback,
            'evaluated_at': _iso(self.evaluated_at),
        }


class Badge(db.Model):
    __tablename__ = 'badges'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=True)
    badge_type = db.Column(db.String(20), nullable=False, default='achievement')  # winner, participant, achievement, special
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(300), nullable=True)
    points = db.Column(db.Integer, nullable=False, default=0)
    awarded_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', back_populates='badges')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'event_id': self.event_id,
            'badge_type': self.badge_type,
            'name': self.name,
            'description': self.description,
            'points': self.points,
            'awarded_at': _iso(self.awarded_at),
        }


class Announcement(db.Model):
    __tablename__ = 'announcements'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    event_id = db.Column(db.String(36), db.ForeignKey('events.id'), nullable=False, index=True)
    author_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    is_pinned = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'author_id': self.author_id,
            'title': self.title,
            'content': self.content,
            'is_pinned': self.is_pinned,
            'created_at': _iso(self.created_at),
        }
