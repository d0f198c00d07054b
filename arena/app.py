import os
import logging
from datetime import datetime
from flask import Flask, request, jsonify, current_app
from flask_login import LoginManager, login_required, current_user
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
import redis

from .config import config
from .models import db, Badge, Event, User
from .store import init_store, store_retry, get_or_raise
from .broadcast import BroadcastHub
from .registration import RegistrationCoordinator
from .ranking import RankingEngine, GLOBAL_SCOPE, event_scope
from .submissions import SubmissionService
from .event_registry import EventRegistry
from shared.pubsub import RedisRelay
from shared.errors import ConstraintViolation, NotFound, Unavailable, UsernameTaken

logger = logging.getLogger(__name__)

login_manager = LoginManager()


def create_app(config_name: str = None, overrides: dict = None) -> Flask:
    """Application factory for the arena service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    init_store(app)

    # Initialize services, all publishing into one hub
    hub = BroadcastHub(buffer_size=app.config['HUB_BUFFER_SIZE'])
    ranking = RankingEngine(hub)
    app.hub = hub
    app.ranking = ranking
    app.registration = RegistrationCoordinator(hub)
    app.submissions = SubmissionService(hub, ranking)
    app.registry = EventRegistry(hub)

    app.relay = None
    if app.config.get('HUB_RELAY_ENABLED'):
        app.relay = RedisRelay(
            hub,
            redis_url=app.config['REDIS_URL'],
            channel=app.config['HUB_RELAY_CHANNEL']
        )
        app.relay.attach()
        app.relay.start_listening()

    register_error_handlers(app)
    register_api_routes(app)

    from .routes import stream
    app.register_blueprint(stream.bp)

    return app


@login_manager.request_loader
def load_user_from_request(req):
    """Identity is verified upstream; trust the forwarded user id."""
    user_id = req.headers.get(current_app.config['IDENTITY_HEADER'])
    if not user_id:
        return None
    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'unauthorized', 'message': 'Identity header missing or unknown user'}), 401


def register_error_handlers(app: Flask):

    @app.errorhandler(ConstraintViolation)
    def handle_constraint_violation(e):
        return jsonify(e.to_dict()), 409

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({'error': 'not_found', 'message': str(e)}), 404

    @app.errorhandler(Unavailable)
    def handle_unavailable(e):
        logger.error(f"Store unavailable: {e}")
        return jsonify({'error': 'unavailable', 'message': str(e)}), 503

    @app.errorhandler(ValueError)
    def handle_bad_request(e):
        return jsonify({'error': 'invalid_request', 'message': str(e)}), 400


def _int_field(data: dict, key: str, default: int = None):
    """Integer from a JSON body. Booleans and numeric strings are rejected."""
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _parse_datetime(value):
    if not value:
        return None
    return datetime.fromisoformat(value.rstrip('Z'))


@store_retry('create_user')
def _create_user(username: str, display_name: str = None, role: str = 'participant') -> User:
    user = User(username=username, display_name=display_name, role=role)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise UsernameTaken("Username is already taken", username=username)
    return user


def register_api_routes(app: Flask):
    """Register API routes."""

    # ==================== Users ====================

    @app.route('/api/v1/users', methods=['POST'])
    def api_create_user():
        data = request.json or {}
        username = data.get('username')
        if not username:
            return jsonify({'error': 'invalid_request', 'message': 'username is required'}), 400

        user = _create_user(username, data.get('display_name'), data.get('role', 'participant'))
        return jsonify({'message': 'User created', 'user': user.to_dict()}), 201

    @app.route('/api/v1/users/<user_id>', methods=['GET'])
    def api_get_user(user_id: str):
        return jsonify(get_or_raise(User, user_id).to_dict())

    @app.route('/api/v1/users/<user_id>/rank', methods=['GET'])
    def api_user_rank(user_id: str):
        rank = app.ranking.get_user_rank(user_id)
        user = db.session.get(User, user_id)
        return jsonify({'user_id': user_id, 'rank': rank, 'points': user.global_points})

    @app.route('/api/v1/users/<user_id>/dashboard', methods=['GET'])
    def api_user_dashboard(user_id: str):
        """Everything a participant's home screen shows."""
        user = get_or_raise(User, user_id)
        badges = Badge.query.filter_by(user_id=user_id).order_by(Badge.awarded_at.desc()).all()
        return jsonify({
            'user': user.to_dict(),
            'rank': app.ranking.get_user_rank(user_id),
            'registrations': [r.to_dict() for r in app.registration.get_user_registrations(user_id)],
            'teams': [t.to_dict() for t in app.registration.get_user_teams(user_id)],
            'badges': [b.to_dict() for b in badges]
        })

    @app.route('/api/v1/users/<user_id>/badges', methods=['POST'])
    @login_required
    def api_award_badge(user_id: str):
        data = request.json or {}
        name = data.get('name')
        if not name:
            return jsonify({'error': 'invalid_request', 'message': 'Badge name is required'}), 400

        badge = app.ranking.award_badge(
            user_id=user_id,
            name=name,
            badge_type=data.get('badge_type', 'achievement'),
            event_id=data.get('event_id'),
            points=_int_field(data, 'points'),
            description=data.get('description')
        )
        return jsonify({'message': 'Badge awarded', 'badge': badge.to_dict()}), 201

    # ==================== Organizations ====================

    @app.route('/api/v1/organizations', methods=['POST'])
    @login_required
    def api_create_organization():
        data = request.json or {}
        name = data.get('name')
        handle = data.get('handle')
        if not name or not handle:
            return jsonify({'error': 'invalid_request', 'message': 'name and handle are required'}), 400

        organization = app.registry.create_organization(name, handle, current_user.id)
        return jsonify({'message': 'Organization created', 'organization': organization.to_dict()}), 201

    # ==================== Events ====================

    @app.route('/api/v1/events', methods=['GET'])
    def api_list_events():
        """List events with optional filtering."""
        status = request.args.get('status')
        limit = request.args.get('limit', 50, type=int)
        offset = request.args.get('offset', 0, type=int)

        if request.args.get('public') == 'true':
            events = app.registry.list_public_events(limit=limit)
        else:
            events = app.registry.list_events(status=status, limit=limit, offset=offset)

        return jsonify({
            'events': [e.to_dict() for e in events],
            'count': len(events),
            'limit': limit,
            'offset': offset
        })

    @app.route('/api/v1/events', methods=['POST'])
    @login_required
    def api_create_event():
        data = request.json or {}
        title = data.get('title')
        if not title:
            return jsonify({'error': 'invalid_request', 'message': 'Event title is required'}), 400

        event = app.registry.create_event(
            title=title,
            created_by_id=current_user.id,
            organization_id=data.get('organization_id'),
            description=data.get('description'),
            event_type=data.get('event_type', 'hackathon'),
            max_participants=_int_field(data, 'max_participants'),
            registration_start_at=_parse_datetime(data.get('registration_start_at')),
            registration_end_at=_parse_datetime(data.get('registration_end_at')),
            start_at=_parse_datetime(data.get('start_at')),
            end_at=_parse_datetime(data.get('end_at'))
        )
        return jsonify({'message': 'Event created', 'event': event.to_dict()}), 201

    @app.route('/api/v1/events/<event_id>', methods=['GET'])
    def api_get_event(event_id: str):
        event = get_or_raise(Event, event_id)
        body = event.to_dict()
        body['rounds'] = [r.to_dict() for r in event.rounds]
        return jsonify(body)

    @app.route('/api/v1/events/<event_id>', methods=['DELETE'])
    @login_required
    def api_delete_event(event_id: str):
        """Delete an event (draft only)."""
        success, message = app.registry.delete_event(event_id)
        if not success:
            return jsonify({'error': 'invalid_request', 'message': message}), 400
        return jsonify({'message': message})

    # ==================== Event Lifecycle ====================

    lifecycle = {
        'publish': app.registry.publish_event,
        'start': app.registry.start_event,
        'complete': app.registry.complete_event,
        'cancel': app.registry.cancel_event,
    }

    @app.route('/api/v1/events/<event_id>/<any(publish, start, complete, cancel):action>', methods=['POST'])
    @login_required
    def api_event_lifecycle(event_id: str, action: str):
        get_or_raise(Event, event_id)
        success, message = lifecycle[action](event_id)
        if not success:
            return jsonify({'error': 'invalid_transition', 'message': message}), 409

        event = app.registry.get_event(event_id)
        return jsonify({'message': message, 'event': event.to_dict()})

    @app.route('/api/v1/events/<event_id>/rounds', methods=['POST'])
    @login_required
    def api_add_round(event_id: str):
        data = request.json or {}
        name = data.get('name')
        if not name:
            return jsonify({'error': 'invalid_request', 'message': 'Round name is required'}), 400

        event_round = app.registry.add_round(event_id, name, _int_field(data, 'max_score', 100))
        return jsonify({'message': 'Round added', 'round': event_round.to_dict()}), 201

    # ==================== Registration & Teams ====================

    @app.route('/api/v1/events/<event_id>/register', methods=['POST'])
    @login_required
    def api_register(event_id: str):
        registration = app.registration.register(current_user.id, event_id)
        return jsonify({'message': 'Registered', 'registration': registration.to_dict()}), 201

    @app.route('/api/v1/events/<event_id>/participants', methods=['GET'])
    def api_participants(event_id: str):
        users = app.registration.get_event_participants(event_id)
        return jsonify({
            'participants': [u.to_dict() for u in users],
            'count': len(users)
        })

    @app.route('/api/v1/events/<event_id>/teams', methods=['GET'])
    def api_list_teams(event_id: str):
        teams = app.registration.get_event_teams(event_id)
        return jsonify({
            'teams': [t.to_dict() for t in teams],
            'count': len(teams)
        })

    @app.route('/api/v1/events/<event_id>/teams', methods=['POST'])
    @login_required
    def api_create_team(event_id: str):
        data = request.json or {}
        name = data.get('name')
        if not name:
            return jsonify({'error': 'invalid_request', 'message': 'Team name is required'}), 400

        team = app.registration.create_team(
            leader_id=current_user.id,
            event_id=event_id,
            name=name,
            max_members=_int_field(data, 'max_members', 4),
            invite_code=data.get('invite_code')
        )
        return jsonify({'message': 'Team created', 'team': team.to_dict(reveal_invite_code=True)}), 201

    @app.route('/api/v1/teams/<team_id>/join', methods=['POST'])
    @login_required
    def api_join_team(team_id: str):
        data = request.json or {}
        membership = app.registration.join_team(current_user.id, team_id, data.get('invite_code'))
        return jsonify({'message': 'Joined team', 'membership': membership.to_dict()}), 201

    # ==================== Submissions ====================

    @app.route('/api/v1/submissions', methods=['POST'])
    @login_required
    def api_create_submission():
        data = request.json or {}
        team_id = data.get('team_id')
        round_id = data.get('round_id')
        if not team_id or not round_id:
            return jsonify({'error': 'invalid_request', 'message': 'team_id and round_id required'}), 400

        submission = app.submissions.create_submission(
            team_id, round_id, current_user.id, data.get('content')
        )
        return jsonify({'message': 'Submission received', 'submission': submission.to_dict()}), 201

    @app.route('/api/v1/submissions/<submission_id>/evaluations', methods=['POST'])
    @login_required
    def api_evaluate(submission_id: str):
        data = request.json or {}
        score = _int_field(data, 'score')
        if score is None:
            return jsonify({'error': 'invalid_request', 'message': 'Integer score is required'}), 400

        evaluation = app.submissions.record_evaluation(
            submission_id, current_user.id, score, data.get('feedback')
        )
        return jsonify({'message': 'Evaluation recorded', 'evaluation': evaluation.to_dict()}), 201

    # ==================== Rankings ====================

    @app.route('/api/v1/leaderboard/global', methods=['GET'])
    def api_global_leaderboard():
        limit = request.args.get('limit', 50, type=int)
        entries = app.ranking.compute_leaderboard(GLOBAL_SCOPE, limit=limit)
        return jsonify({
            'scope': GLOBAL_SCOPE,
            'entries': [e.to_dict() for e in entries]
        })

    @app.route('/api/v1/events/<event_id>/leaderboard', methods=['GET'])
    def api_event_leaderboard(event_id: str):
        get_or_raise(Event, event_id)
        limit = request.args.get('limit', 50, type=int)
        scope = event_scope(event_id)
        entries = app.ranking.compute_leaderboard(scope, limit=limit)
        return jsonify({
            'scope': scope,
            'entries': [e.to_dict() for e in entries]
        })

    @app.route('/api/v1/events/<event_id>/standings', methods=['GET'])
    def api_event_standings(event_id: str):
        get_or_raise(Event, event_id)
        standings = app.ranking.compute_team_standings(event_id)
        return jsonify({
            'event_id': event_id,
            'standings': [s.to_dict() for s in standings]
        })

    # ==================== Announcements & Activity ====================

    @app.route('/api/v1/events/<event_id>/announcements', methods=['GET'])
    def api_list_announcements(event_id: str):
        announcements = app.submissions.get_announcements(event_id)
        return jsonify({'announcements': [a.to_dict() for a in announcements]})

    @app.route('/api/v1/events/<event_id>/announcements', methods=['POST'])
    @login_required
    def api_post_announcement(event_id: str):
        data = request.json or {}
        title = data.get('title')
        content = data.get('content')
        if not title or not content:
            return jsonify({'error': 'invalid_request', 'message': 'title and content are required'}), 400

        announcement = app.submissions.post_announcement(
            event_id, current_user.id, title, content, data.get('is_pinned', False)
        )
        return jsonify({'message': 'Announcement posted', 'announcement': announcement.to_dict()}), 201

    @app.route('/api/v1/activity/recent', methods=['GET'])
    def api_recent_activity():
        limit = request.args.get('limit', 20, type=int)
        return jsonify({'activity': app.submissions.get_recent_activity(limit=limit)})

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False

        body = {
            'database': 'connected' if db_ok else 'disconnected',
            'subscribers': app.hub.subscriber_count
        }
        healthy = db_ok

        if app.relay is not None:
            try:
                app.relay.redis.ping()
                body['redis'] = 'connected'
            except redis.RedisError:
                body['redis'] = 'disconnected'
                healthy = False

        body['status'] = 'healthy' if healthy else 'unhealthy'
        return jsonify(body), 200 if healthy else 503
