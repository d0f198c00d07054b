import os
import json
import uuid
import logging
import redis
from typing import Optional
from .events import DomainEvent

logger = logging.getLogger(__name__)


class RedisRelay:
    """
    Bridges a process-local broadcast hub over a redis channel so several
    app instances see each other's events. Frames carry the origin instance id;
    an instance never re-publishes its own frames.
    """

    def __init__(
        self,
        hub,
        redis_url: str = None,
        channel: str = 'arena:broadcast',
        redis_client: Optional[redis.Redis] = None,
        instance_id: str = None
    ):
        self.hub = hub
        self.channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5
        )
        self._pubsub = None
        self._listener_thread = None

    def attach(self):
        self.hub.add_listener(self.forward)

    def forward(self, event: DomainEvent):
        envelope = {"origin": self.instance_id, "event": event.to_dict()}
        self.redis.publish(self.channel, json.dumps(envelope))

    def _message_handler(self, message):
        if message['type'] != 'message':
            return
        try:
            envelope = json.loads(message['data'])
            if envelope.get('origin') == self.instance_id:
                return
            event = DomainEvent.from_dict(envelope['event'])
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Discarding malformed relay frame on {self.channel}: {e}")
            return
        self.hub.publish(event, forward=False)

    def start_listening(self):
        if self._pubsub is not None:
            return
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: self._message_handler})
        self._listener_thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        logger.info(f"Relay {self.instance_id} listening on {self.channel}")

    def stop_listening(self):
        if self._listener_thread:
            self._listener_thread.stop()
            self._listener_thread = None
        if self._pubsub:
            self._pubsub.close()
            self._pubsub = None
