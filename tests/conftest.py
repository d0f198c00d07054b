"""
Pytest configuration and fixtures for arena tests.
"""
import os
import sys
import itertools
import threading
from datetime import datetime, timedelta
import pytest
from flask import g
from flask.testing import FlaskClient

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from arena.app import create_app
from arena.models import db, User, Event, EventRound

_sequence = itertools.count(1)


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing.

    Uses a file database so that worker threads in the concurrency tests
    share the store with the test body.
    """
    db_path = tmp_path_factory.mktemp('store') / 'arena-test.db'
    app = create_app('testing', {'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_path}'})

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


class CommittingClient(FlaskClient):
    """Ends the test body's transaction before each request so the request can take the store lock."""

    def open(self, *args, **kwargs):
        db.session.commit()
        g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    app.test_client_class = CommittingClient
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    # Clear all tables before each test
    db.session.remove()

    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    app.hub.close_all()

    yield db.session

    db.session.rollback()
    app.hub.close_all()


@pytest.fixture
def make_user(db_session):
    """Factory for users. Later users are created later unless created_at is given."""
    base = datetime(2024, 1, 1)

    def _make(username=None, points=0, created_at=None, role='participant'):
        n = next(_sequence)
        user = User(
            username=username or f'user-{n}',
            global_points=points,
            role=role,
            created_at=created_at or base + timedelta(seconds=n)
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_participant(app, make_user):
    """Factory for users already registered for an event."""

    def _make(event, **kwargs):
        user = make_user(**kwargs)
        app.registration.register(user.id, event.id)
        return user

    return _make


@pytest.fixture
def organizer(make_user):
    return make_user('organizer', role='organizer')


@pytest.fixture
def make_event(db_session, organizer):
    """Factory for events in any lifecycle state."""

    def _make(status='published', max_participants=None, rounds=0, **kwargs):
        event = Event(
            title=kwargs.pop('title', f'Event {next(_sequence)}'),
            status=status,
            max_participants=max_participants,
            created_by_id=organizer.id,
            **kwargs
        )
        db_session.add(event)
        db_session.flush()
        for i in range(rounds):
            db_session.add(EventRound(event_id=event.id, name=f'Round {i + 1}', round_number=i + 1))
        db_session.commit()
        return event

    return _make


@pytest.fixture
def published_event(make_event):
    return make_event('published')


@pytest.fixture
def ongoing_event(make_event):
    return make_event('ongoing', rounds=1)


@pytest.fixture
def hub_events(app, mocker):
    """Spy on everything the hub publishes."""
    return mocker.spy(app.hub, 'publish')


@pytest.fixture
def as_user(app):
    """Identity header the upstream gateway would forward."""
    def _headers(user_id):
        return {app.config["IDENTITY_HEADER"]: user_id}
    return _headers


@pytest.fixture
def concurrently(app):
    """
    Run fn(*args) in one thread per entry, released together by a barrier.

    The main thread's transaction is committed first so workers can take the
    write lock. fn should return plain values, not ORM objects.
    """
    def _run(fn, args_list):
        db.session.commit()
        return _run_threads(app, fn, args_list)
    return _run


def _run_threads(app, fn, args_list):
    barrier = threading.Barrier(len(args_list))
    results = [None] * len(args_list)

    def worker(index, args):
        with app.app_context():
            barrier.wait()
            try:
                results[index] = ('ok', fn(*args))
            except Exception as e:
                results[index] = ('error', e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i, args)) for i, args in enumerate(args_list)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results
