import json
import uuid
import logging
from flask import Blueprint, request, jsonify, Response, current_app
from flask_login import login_required, current_user

from arena.broadcast import SubscriptionClosed

logger = logging.getLogger(__name__)

bp = Blueprint('stream', __name__, url_prefix='/api/v1/stream')


def stream_frames(hub, subscription, keepalive_seconds: float):
    """Render a subscription as server-sent events until it is closed."""
    connection_id = subscription.connection_id
    try:
        yield ": connected\n\n"
        while True:
            try:
                frame = subscription.get(timeout=keepalive_seconds)
            except SubscriptionClosed as e:
                logger.info(f"Stream {connection_id} ended: {e.reason}")
                return
            if frame is None:
                yield ": keepalive\n\n"
            else:
                yield f"data: {json.dumps(frame)}\n\n"
    finally:
        hub.unsubscribe(connection_id, subscription)


@bp.route('', methods=['GET'])
def open_stream():
    """SSE endpoint carrying every broadcast frame. Connection ids are always minted here."""
    hub = current_app.hub
    connection_id = uuid.uuid4().hex
    subscription = hub.subscribe(connection_id)
    keepalive = current_app.config['STREAM_KEEPALIVE_SECONDS']

    return Response(stream_frames(hub, subscription, keepalive), mimetype='text/event-stream', headers={
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no',
        'X-Connection-Id': connection_id
    })


@bp.route('/messages', methods=['POST'])
@login_required
def post_message():
    """Client to server application messages."""
    data = request.json or {}
    message_type = data.get('type')
    if not message_type:
        return jsonify({'error': 'invalid_request', 'message': 'Message type is required'}), 400

    logger.info(f"Client message {message_type} from {current_user.id}")
    return jsonify({'accepted': True, 'type': message_type}), 202
