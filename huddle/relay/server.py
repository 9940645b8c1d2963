"""Relay server implementation for room rendezvous and WebRTC signaling.

The relay server (or signaling server) is a lightweight server accessible by
all clients (e.g., has a public IP address). Clients register with an
identifier, join rooms, and exchange the session descriptions and
connectivity candidates needed to establish direct peer connections. Once
connected, media flows between peers and never passes through the relay.
"""
from __future__ import annotations

import logging
import sys

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from huddle.relay.exceptions import BadRequestError
from huddle.relay.exceptions import NotRegisteredError
from huddle.relay.exceptions import RelayServerError
from huddle.relay.manager import Client
from huddle.relay.manager import ClientManager
from huddle.relay.messages import ChatMessage
from huddle.relay.messages import decode_relay_message
from huddle.relay.messages import encode_relay_message
from huddle.relay.messages import EndMeetingRequest
from huddle.relay.messages import JoinRoomRequest
from huddle.relay.messages import LeaveRoomRequest
from huddle.relay.messages import MediaStatusChange
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RelayMessageDecodeError
from huddle.relay.messages import RelayMessageEncodeError
from huddle.relay.messages import RelayRegistrationRequest
from huddle.relay.messages import RelayResponse
from huddle.relay.messages import RoomInfo
from huddle.relay.messages import SIGNAL_TYPES
from huddle.relay.rooms import RoomRegistry
from huddle.relay.rooms import validate_identifier

logger = logging.getLogger(__name__)


class RelayServer:
    """WebRTC relay server.

    The relay server acts as a public third-party that helps clients find
    each other in named rooms and forwards the messages needed to negotiate
    peer connections. Room state lives in a
    [`RoomRegistry`][huddle.relay.rooms.RoomRegistry]; this class owns the
    websocket connections and translates between messages and registry
    operations.

    The relay server is built on websockets and designed to be
    served using [`serve()`][huddle.relay.run.serve].

    Args:
        room_expiry: Seconds of inactivity after which a room is expired
            by [`RoomRegistry.expire()`][huddle.relay.rooms.RoomRegistry.expire].
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        *,
        room_expiry: float = 24 * 60 * 60,
        max_message_bytes: int | None = None,
    ) -> None:
        self._client_manager = ClientManager()
        self._registry = RoomRegistry(self.send_to, expiry=room_expiry)
        self._max_message_bytes = max_message_bytes

    @property
    def client_manager(self) -> ClientManager:
        """Manager of registered clients."""
        return self._client_manager

    @property
    def registry(self) -> RoomRegistry:
        """Room membership registry."""
        return self._registry

    async def send(self, client: Client, message: RelayMessage) -> None:
        """Send message on the socket.

        Note:
            Messages are JSON string encoded using
            [`encode_relay_message()`][huddle.relay.messages.encode_relay_message].

        Args:
            client: Client to send message to.
            message: Message to encode and send via the websocket connection
                to the client.
        """
        try:
            message_str = encode_relay_message(message)
        except RelayMessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await client.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Connection to {client.client_id} closed while attempting '
                'to send message',
            )

    async def send_to(self, client_id: str, message: RelayMessage) -> None:
        """Send message to the client registered as `client_id`.

        Messages to clients that are not connected are logged and dropped.
        """
        client = self.client_manager.get_client_by_id(client_id)
        if client is None:
            logger.warning(
                f'Dropping {type(message).__name__} for {client_id} because '
                'the client is not connected',
            )
            return
        await self.send(client, message)

    async def register(
        self,
        websocket: ServerConnection,
        request: RelayRegistrationRequest,
    ) -> None:
        """Register client with relay server.

        If the identifier is already registered on another connection, the
        old connection is unregistered and closed. This happens when a
        client reconnects before the server noticed the old connection
        dropped.

        Args:
            websocket: Websocket connection with client wanting to register.
            request: Registration request message.

        Raises:
            BadRequestError: If the client identifier is malformed.
        """
        validate_identifier(request.client_id, 'client id')

        existing_client = self.client_manager.get_client_by_id(
            request.client_id,
        )
        if existing_client is not None:
            if existing_client.websocket is websocket:
                await self.send(existing_client, RelayResponse(success=True))
                return
            logger.info(
                f'Previously registered client {request.client_id} '
                'attempting to reregister on new socket so old socket '
                'associated with existing registration will be closed',
            )
            await self.unregister(existing_client, False)

        client = Client(client_id=request.client_id, websocket=websocket)
        self.client_manager.add_client(client)
        logger.info(f'Registered client: {client}')

        await self.send(client, RelayResponse(success=True))

    async def unregister(self, client: Client, expected: bool) -> None:
        """Unregister the client and remove it from all rooms.

        Args:
            client: Client to unregister.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        reason = 'ok' if expected else 'unexpected'
        logger.info(
            f'Unregistering client {client.client_id} for {reason} reason',
        )
        self.client_manager.remove_client(client)
        await self.registry.leave(client.client_id)
        await client.websocket.close(code=1000 if expected else 1001)

    async def _process_message(
        self,
        websocket: ServerConnection,
        message: RelayMessage,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, RelayRegistrationRequest):
            await self.register(websocket, message)
            return

        client = self.client_manager.get_client_by_websocket(websocket)
        if client is None:
            logger.warning(
                f'Unregistered client at {websocket.remote_address} '
                f'sent {type(message).__name__} without being registered',
            )
            raise NotRegisteredError(
                'Client has not registered with the relay server.',
            )

        if isinstance(message, SIGNAL_TYPES):
            await self.registry.relay(
                message.room_id,
                client.client_id,
                message,
            )
        elif isinstance(message, JoinRoomRequest):
            result = await self.registry.join(
                message.room_id,
                client.client_id,
            )
            await self.send(
                client,
                RoomInfo(
                    room_id=message.room_id,
                    is_host=result.is_host,
                    existing_members=result.existing_members,
                ),
            )
        elif isinstance(message, LeaveRoomRequest):
            await self.registry.leave_room(message.room_id, client.client_id)
        elif isinstance(message, MediaStatusChange):
            await self.registry.broadcast_media_status(
                message.room_id,
                client.client_id,
                message.audio_enabled,
                message.video_enabled,
            )
        elif isinstance(message, ChatMessage):
            await self.registry.broadcast_chat(
                message.room_id,
                client.client_id,
                message.message,
            )
        elif isinstance(message, EndMeetingRequest):
            await self.registry.end_meeting(message.room_id, client.client_id)
        else:
            raise BadRequestError(
                f'Clients cannot send {type(message).__name__} messages.',
            )

    async def handler(self, websocket: ServerConnection) -> None:  # noqa: C901
        """Websocket server message handler.

        The handler will close the connection for the following reasons.

        - An undecodable message is received (code 4000).
        - The client sends a request before registering (code 4002).
        - The client sends a message larger than the allowed size (code 4003).

        Other request errors, such as a malformed room identifier, are
        reported to the client with a
        [`RelayResponse`][huddle.relay.messages.RelayResponse] error and
        leave the connection and all room state unchanged.

        Args:
            websocket: Websocket message was received on.
        """
        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                client = self.client_manager.get_client_by_websocket(websocket)
                if client is not None:
                    await self.unregister(client, expected=True)
                break
            except websockets.exceptions.ConnectionClosedError:
                client = self.client_manager.get_client_by_websocket(websocket)
                if client is not None:
                    await self.unregister(client, expected=False)
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {websocket.remote_address} sent message with '
                    f'size {sys.getsizeof(message_str)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                continue

            try:
                if isinstance(message_str, bytes):
                    raise RelayMessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_relay_message(message_str)
            except RelayMessageDecodeError as e:
                logger.error(
                    'Closing websocket because deserialization error was '
                    'caught on message received from '
                    f'{websocket.remote_address}. {e}',
                )
                await websocket.close(4000, reason='Unknown message type.')
                continue

            try:
                await self._process_message(websocket, message)
            except NotRegisteredError as e:
                await websocket.close(
                    code=4002,
                    reason=f'{e.__class__.__name__}: {e}',
                )
            except RelayServerError as e:
                logger.warning(
                    f'Rejected {type(message).__name__} from '
                    f'{websocket.remote_address}: {e}',
                )
                response = RelayResponse(
                    success=False,
                    message=f'{e.__class__.__name__}: {e}',
                    error=True,
                )
                try:
                    await websocket.send(encode_relay_message(response))
                except websockets.exceptions.ConnectionClosed:
                    # Handled by the next recv()
                    pass
