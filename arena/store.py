"""
Store plumbing shared by the coordinators.

- Engine hooks so SQLite writers serialize instead of dead-locking
- Bounded retry of transient store failures
- Lookup helpers that raise NotFound
"""
import time
import logging
import functools
from flask import Flask, current_app
from sqlalchemy import event
from sqlalchemy.exc import OperationalError, DisconnectionError, TimeoutError as PoolTimeoutError

from .models import db
from shared.errors import NotFound, TransientStoreError, Unavailable

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def init_store(app: Flask):
    """Install engine hooks and create tables. Must run before the first connection."""
    with app.app_context():
        engine = db.engine
        if engine.dialect.name == 'sqlite':
            _serialize_sqlite_writers(engine)
        db.create_all()


def _serialize_sqlite_writers(engine):
    # pysqlite defers BEGIN until the first write, which lets two readers
    # upgrade to writers at once and fail. Take the write lock up front.
    @event.listens_for(engine, 'connect')
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def store_retry(operation: str = None):
    """Retry a unit of work on transient store errors, then raise Unavailable."""
    def decorator(fn):
        name = operation or fn.__name__

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            attempts = current_app.config.get('STORE_RETRY_ATTEMPTS', 5)
            base_delay = current_app.config.get('STORE_RETRY_BASE_DELAY', 0.05)
            error = None

            for attempt in range(attempts):
                try:
                    return fn(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    db.session.rollback()
                    error = TransientStoreError(str(e), original=e)
                    logger.warning(f"{name}: transient store error (attempt {attempt + 1}/{attempts}): {e}")
                    if attempt + 1 < attempts:
                        time.sleep(base_delay * (2 ** attempt))

            raise Unavailable(name, attempts) from error
        return wrapper
    return decorator


def get_or_raise(model, key: str, kind: str = None):
    instance = db.session.get(model, key)
    if instance is None:
        raise NotFound(kind or model.__name__, key)
    return instance
