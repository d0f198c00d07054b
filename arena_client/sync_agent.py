import logging
import functools
import threading
from enum import Enum
from typing import Callable, Optional

from shared.state_machine import StateMachine, Transition
from .transport import Scheduler, ThreadingScheduler
from .views import ViewCache, INVALIDATIONS

logger = logging.getLogger(__name__)

DEFAULT_BASE_MS = 1000
DEFAULT_CAP_MS = 30000
DEFAULT_MAX_ATTEMPTS = 5


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionStateMachine(StateMachine):
    TRANSITIONS = [
        Transition(ConnectionStatus.DISCONNECTED, ConnectionStatus.CONNECTING, "connect"),
        Transition(ConnectionStatus.DISCONNECTED, ConnectionStatus.FAILED, "give_up"),
        Transition(ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED, "opened"),
        Transition(ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED, "dropped"),
        Transition(ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED, "close"),
        Transition(ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED, "dropped"),
        Transition(ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED, "close"),
        # Only an explicit start() leaves the failed state
        Transition(ConnectionStatus.FAILED, ConnectionStatus.CONNECTING, "connect"),
    ]

    ALLOWED_ACTIONS = {
        ConnectionStatus.DISCONNECTED: ["connect"],
        ConnectionStatus.CONNECTING: ["close"],
        ConnectionStatus.CONNECTED: ["send", "close"],
        ConnectionStatus.FAILED: ["connect"],
    }

    def __init__(self, initial_state: ConnectionStatus = ConnectionStatus.DISCONNECTED):
        super().__init__(initial_state)


def backoff_delay_ms(attempt: int, base_ms: int = DEFAULT_BASE_MS, cap_ms: int = DEFAULT_CAP_MS) -> int:
    return min(base_ms * (2 ** attempt), cap_ms)


class SyncAgent:
    """
    Keeps a client's cached views consistent with the server.

    Holds one stream connection at a time. Frames only invalidate views;
    after every (re)connect all views are invalidated because frames may
    have been missed. Reconnects back off exponentially and give up after
    max_attempts consecutive failures.
    """

    def __init__(
        self,
        connection_factory: Callable,
        views: ViewCache = None,
        scheduler: Scheduler = None,
        base_ms: int = DEFAULT_BASE_MS,
        cap_ms: int = DEFAULT_CAP_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ):
        self.connection_factory = connection_factory
        self.views = views or ViewCache()
        self.scheduler = scheduler or ThreadingScheduler()
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.max_attempts = max_attempts
        self.last_message: Optional[dict] = None

        self._sm = ConnectionStateMachine()
        self._attempt = 0
        self._connection = None
        self._timer = None
        self._generation = 0
        self._closed = False
        self._lock = threading.RLock()

    @property
    def status(self) -> ConnectionStatus:
        return self._sm.state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def connected(self) -> bool:
        return self._sm.state == ConnectionStatus.CONNECTED

    def start(self):
        with self._lock:
            if not self._sm.can_perform("connect"):
                return
            self._closed = False
            self._attempt = 0
            self._connect()

    def _connect(self):
        self._sm.transition("connect")
        self._generation += 1
        generation = self._generation

        connection = self.connection_factory(
            on_open=functools.partial(self._on_open, generation),
            on_message=functools.partial(self._on_message, generation),
            on_close=functools.partial(self._on_close, generation)
        )
        self._connection = connection
        logger.info(f"Connecting (attempt {self._attempt})")
        try:
            connection.open()
        except OSError as e:
            logger.warning(f"Connection attempt failed: {e}")
            self._on_close(generation, str(e))

    def _current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def _on_open(self, generation: int):
        with self._lock:
            if not self._current(generation):
                return
            self._sm.transition("opened")
            self._attempt = 0
            # Frames may have been missed while away
            self.views.invalidate_all()
            self.views.set_live(True)
        logger.info("Connected")

    def _on_message(self, generation: int, frame: dict):
        with self._lock:
            if not self._current(generation):
                return
            self.last_message = frame
            if frame.get("type") not in INVALIDATIONS:
                logger.info(f"Ignoring unknown frame type: {frame.get('type')}")
                return
            self.views.invalidate_for_frame(frame)

    def _on_close(self, generation: int, reason: str = None):
        with self._lock:
            if not self._current(generation):
                return
            self._generation += 1
            self._connection = None
            self._sm.transition("dropped")
            self.views.set_live(False)

            if self._attempt >= self.max_attempts:
                self._sm.transition("give_up")
                logger.error(f"Giving up after {self._attempt} reconnect attempts ({reason})")
                return

            delay_ms = backoff_delay_ms(self._attempt, self.base_ms, self.cap_ms)
            self._attempt += 1
            logger.warning(f"Disconnected ({reason}); reconnecting in {delay_ms}ms (attempt {self._attempt})")
            self._timer = self.scheduler.call_later(delay_ms / 1000.0, self._reconnect)

    def _reconnect(self):
        with self._lock:
            self._timer = None
            if self._closed or self._sm.state != ConnectionStatus.DISCONNECTED:
                return
            self._connect()

    def send(self, message_type: str, data: dict = None) -> bool:
        """Send an application message. Dropped with a warning unless connected."""
        with self._lock:
            connection = self._connection
            if not self._sm.can_perform("send") or connection is None:
                logger.warning(f"Not connected, dropping message {message_type}")
                return False
        try:
            connection.send({"type": message_type, "data": data or {}})
        except OSError as e:
            logger.warning(f"Sending {message_type} failed: {e}")
            return False
        return True

    def close(self):
        """Stop reconnecting and close the connection. No handler runs afterwards."""
        with self._lock:
            self._closed = True
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            connection, self._connection = self._connection, None
            if self._sm.can_perform("close"):
                self._sm.transition("close")
            self._attempt = 0
            self.views.set_live(False)
            if connection is not None:
                connection.close()
