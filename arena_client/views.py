"""
Client-side cache of server views.

Frames from the stream never carry state into the cache. They only mark
views stale; the next read re-fetches from the API.
"""
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# wire type -> views to invalidate, as (view name, payload key of its parameter)
INVALIDATIONS: Dict[str, List[Tuple[str, Optional[str]]]] = {
    "new_event": [("events", None)],
    "event_updated": [("events", None), ("event", "event_id")],
    "new_registration": [
        ("events", None), ("event_participants", "event_id"), ("user_dashboard", "user_id"), ("leaderboard", "scope")
    ],
    "team_created": [("event_teams", "event_id"), ("event_standings", "event_id"), ("user_dashboard", "user_id")],
    "team_joined": [("event_teams", "event_id"), ("user_dashboard", "user_id")],
    "new_submission": [("activity_feed", None), ("leaderboard", "scope")],
    "leaderboard_update": [("leaderboard", "scope")],
    "standings_update": [("event_standings", "event_id")],
    "badge_awarded": [("user_dashboard", "user_id")],
    "announcement": [("announcements", "event_id")],
}


@dataclass
class ViewSnapshot:
    value: Any
    stale: bool
    fetched_at: Optional[float] = None


@dataclass
class _Entry:
    value: Any
    fetched_at: float
    valid: bool = True


class ViewCache:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._fetchers: Dict[str, Callable] = {}
        self._entries: Dict[Tuple[str, tuple], _Entry] = {}
        self._live = False
        self._lock = threading.RLock()

    def register(self, name: str, fetcher: Callable):
        """fetcher(*params) returns the authoritative value of a view."""
        self._fetchers[name] = fetcher

    @property
    def live(self) -> bool:
        return self._live

    def set_live(self, live: bool):
        with self._lock:
            self._live = live

    def read(self, name: str, *params) -> ViewSnapshot:
        """
        Return the cached value of a view, fetching it first if it is missing
        or was invalidated. While not live every snapshot is marked stale.
        """
        key = (name, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.valid:
                entry = self._fetch(key, entry)
            if entry is None:
                return ViewSnapshot(value=None, stale=True)
            return ViewSnapshot(
                value=entry.value,
                stale=not (self._live and entry.valid),
                fetched_at=entry.fetched_at
            )

    def _fetch(self, key: Tuple[str, tuple], previous: Optional[_Entry]) -> Optional[_Entry]:
        name, params = key
        fetcher = self._fetchers.get(name)
        if fetcher is None:
            raise KeyError(f"No fetcher registered for view '{name}'")
        try:
            value = fetcher(*params)
        except Exception as e:
            # Keep serving the last known value, still marked for re-fetch
            logger.warning(f"Fetching view {name}{params} failed: {e}")
            return previous

        entry = _Entry(value=value, fetched_at=self._clock())
        self._entries[key] = entry
        return entry

    def is_stale(self, name: str, *params) -> bool:
        with self._lock:
            entry = self._entries.get((name, params))
            return entry is None or not entry.valid or not self._live

    def invalidate(self, name: str, *params) -> int:
        """Mark one entry stale, or every entry of the view when no params are given."""
        with self._lock:
            if not params:
                return self.invalidate_view(name)
            entry = self._entries.get((name, params))
            if entry is None:
                return 0
            entry.valid = False
            return 1

    def invalidate_view(self, name: str) -> int:
        with self._lock:
            count = 0
            for (view, _), entry in self._entries.items():
                if view == name:
                    entry.valid = False
                    count += 1
            return count

    def invalidate_all(self):
        with self._lock:
            for entry in self._entries.values():
                entry.valid = False

    def invalidate_for_frame(self, frame: dict) -> bool:
        """Apply the invalidation table to a frame. Returns False for unknown types."""
        targets = INVALIDATIONS.get(frame.get("type"))
        if targets is None:
            return False

        data = frame.get("data") or {}
        with self._lock:
            for view, param in targets:
                if param is None or data.get(param) is None:
                    self.invalidate_view(view)
                else:
                    self.invalidate(view, data[param])
        return True
