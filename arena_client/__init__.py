"""
Arena client - keeps cached views in sync with the arena service

- SyncAgent: reconnecting stream consumer that invalidates views
- ViewCache: per-view cache with explicit staleness
- SSEConnection: requests-based transport for the server's event stream
"""
import functools

from arena.config import Config
from .sync_agent import SyncAgent, ConnectionStatus
from .views import ViewCache, ViewSnapshot, INVALIDATIONS
from .transport import SSEConnection, ThreadingScheduler


def connect(base_url: str, views: ViewCache = None, user_id: str = None, **agent_options) -> SyncAgent:
    """Build and start an agent against a running arena service.

    Reconnect settings default to RECONNECT_BASE_MS, RECONNECT_CAP_MS and
    RECONNECT_MAX_ATTEMPTS from the environment.
    """
    agent_options.setdefault('base_ms', Config.RECONNECT_BASE_MS)
    agent_options.setdefault('cap_ms', Config.RECONNECT_CAP_MS)
    agent_options.setdefault('max_attempts', Config.RECONNECT_MAX_ATTEMPTS)

    headers = {Config.IDENTITY_HEADER: user_id} if user_id else {}
    factory = functools.partial(
        SSEConnection,
        base_url.rstrip('/') + '/api/v1/stream',
        headers=headers
    )
    agent = SyncAgent(factory, views=views, **agent_options)
    agent.start()
    return agent
