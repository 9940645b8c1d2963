"""HTTP surface of the relay server.

Clients use `GET /validate-room/<room_id>` to check that a room exists
before joining it (e.g., when following a shared meeting link).
"""
from __future__ import annotations

import datetime
import json
import logging

import quart
from quart import Response

from huddle.relay.rooms import RoomRegistry

logger = logging.getLogger(__name__)

routes_blueprint = quart.Blueprint('routes', __name__)


def create_app(registry: RoomRegistry) -> quart.Quart:
    """Create quart app for a room registry and register routes.

    Args:
        registry: Room registry to answer queries from.

    Returns:
        Quart app.
    """
    app = quart.Quart(__name__)

    app.config['registry'] = registry

    app.register_blueprint(routes_blueprint, url_prefix='')

    return app


def _timestamp() -> str:
    return datetime.datetime.now(tz=datetime.timezone.utc).isoformat()


@routes_blueprint.route('/')
async def _home() -> tuple[str, int]:
    return ('Relay server running', 200)


@routes_blueprint.route('/validate-room/<room_id>', methods=['GET'])
async def validate_room_handler(room_id: str) -> Response:
    """Route handler for `GET /validate-room/<room_id>`.

    Validating a room counts as activity and postpones its expiry.

    Responses:

    * `Status Code 200`: JSON with `exists` set to `true` and the keys
      `room_id`, `participants`, `created_at`, `last_activity`, and
      `timestamp` if the room exists. Otherwise `exists` is `false` and
      only `room_id` and `timestamp` are present.
    """
    registry: RoomRegistry = quart.current_app.config['registry']
    room = registry.get_room(room_id, touch=True)
    logger.debug(f'Validated room {room_id} (exists={room is not None})')

    if room is None:
        body = {'exists': False, 'room_id': room_id, 'timestamp': _timestamp()}
    else:
        body = {
            'exists': True,
            'room_id': room_id,
            'participants': len(room.members),
            'created_at': room.created.isoformat(),
            'last_activity': room.last_activity.isoformat(),
            'timestamp': _timestamp(),
        }

    return Response(json.dumps(body), 200, content_type='application/json')
