"""Client interface to a relay server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import uuid
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from huddle.relay.exceptions import RelayNotConnectedError
from huddle.relay.exceptions import RelayRegistrationError
from huddle.relay.messages import decode_relay_message
from huddle.relay.messages import encode_relay_message
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RelayMessageDecodeError
from huddle.relay.messages import RelayRegistrationRequest
from huddle.relay.messages import RelayResponse
from huddle.utils.tasks import cancel_and_wait
from huddle.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class RelayClient:
    """Client interface to a relay server.

    This interface abstracts the low-level WebSocket connection to a
    relay server to provide registration and automatic reconnection.

    Tip:
        This class can be used as an async context manager!
        ```python
        from huddle.relay.client import RelayClient

        async with RelayClient('ws://localhost:8700') as client:
            await client.send(JoinRoomRequest('my-room'))
            message = await client.recv()
        ```

    Note:
        WebSocket connections are not opened until a message is sent,
        a message is received, or
        [`connect()`][huddle.relay.client.RelayClient.connect]
        is called.

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        client_id: Optional identifier to register with the relay server.
            If `None`, a random UUID string is used.
        extra_headers: Arbitrary HTTP headers to add to the handshake request.
        reconnect_task: Spawn a background task which will automatically
            reconnect to the relay server when the websocket client closes.
            Otherwise, reconnections will only be attempted when sending or
            receiving a message.
        ssl_context: Custom SSL context to pass to
            [`websockets.asyncio.client.connect()`][websockets.asyncio.client.connect].
            A TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on relay server connection.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        client_id: str | None = None,
        extra_headers: dict[str, str] | None = None,
        reconnect_task: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._client_id = str(uuid.uuid4()) if client_id is None else client_id
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._extra_headers = extra_headers
        self._ssl_context = ssl_context
        self._create_reconnect_task = reconnect_task

        self._initial_backoff_seconds = 1.0

        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def _register(self, timeout: float) -> ClientConnection:
        """Open a websocket connection and register with the relay server.

        Args:
            timeout: Timeout to wait on opening the initial connection and
                waiting for a server response.

        Returns:
            Open websocket connection with the relay server.

        Raises:
            ConnectionRefusedError: If the server could not be connected to.
            asyncio.TimeoutError: If the server did not reply within the
                timeout.
            websockets.exceptions.ConnectionClosed: If the websocket connection
                was closed while registering.
            RelayRegistrationError: If the registration process failed.
        """
        websocket = await websockets_connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
            additional_headers=self._extra_headers,
        )

        registration_message = RelayRegistrationRequest(self.client_id)
        await websocket.send(encode_relay_message(registration_message))

        try:
            message_str = await asyncio.wait_for(websocket.recv(), timeout)
            if isinstance(message_str, str):
                message = decode_relay_message(message_str)
            else:
                raise AssertionError('Received non-string type on websocket.')
        except RelayMessageDecodeError as e:
            await websocket.close()
            raise RelayRegistrationError(
                'Unable to decode response message from relay server.',
            ) from e

        if isinstance(message, RelayResponse):
            if message.success:
                logger.info(
                    'Established client connection to relay server at '
                    f'{self._address} with client id={self.client_id}',
                )
                return websocket
            else:
                await websocket.close()
                raise RelayRegistrationError(
                    'Failed to register with the relay server. '
                    f'Got exception: {message.message}',
                )
        else:
            await websocket.close()
            raise RelayRegistrationError(
                'Relay server replied with unknown message type: '
                f'{type(message).__name__}.',
            )

    async def _reconnect_on_close(self) -> None:
        """Wait for websocket to close and immediately reconnect.

        This is intended to be run as an asyncio tasks and should only
        be started after the websocket connection has been created.
        """
        while True:
            assert self._websocket is not None
            await self._websocket.wait_closed()
            logger.warning(
                f'Connection to relay server at {self._address} closed, '
                'reconnecting',
            )
            await self.connect()

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def client_id(self) -> str:
        """Identifier of the client as registered with the relay server."""
        return self._client_id

    @property
    def connected(self) -> bool:
        """Check if the websocket connection is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            RelayNotConnectedError: if the websocket connection to the relay
                server is not open. This usually indicates that
                [`connect()`][huddle.relay.client.RelayClient.connect]
                needs to be called.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        else:
            raise RelayNotConnectedError(
                'Websocket connection to the relay server is not open. '
                'Try calling connect() first.',
            )

    async def connect(self, retry: bool = True) -> None:
        """Connect to the relay server.

        Note:
            Typically this does not need to be called because the
            send and receive methods will automatically call this.

        Note:
            This method is a no-op if a connection is already established.
            Otherwise, a new connection will be attempted with
            exponential backoff when `retry` is True for connection failures.

        Args:
            retry: Retry the connection with exponential backoff starting at
                one second and increasing to a max of 60 seconds.
        """
        async with self._connect_lock:
            if self.connected:
                return

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._register(
                        timeout=self._timeout,
                    )
                    if (
                        self._reconnect_task is None
                        and self._create_reconnect_task
                    ):
                        self._reconnect_task = spawn_guarded_background_task(
                            self._reconnect_on_close,
                            name='relay-client-reconnect',
                        )
                except (
                    # Exceptions that we should wait and retry again for
                    OSError,
                    asyncio.TimeoutError,
                    websockets.exceptions.ConnectionClosed,
                ) as e:
                    if not retry:
                        raise

                    logger.warning(
                        f'Registration with relay server at {self._address} '
                        f'failed because of {e!r}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                else:
                    break

    async def close(self) -> None:
        """Close the connection to the relay server."""
        await cancel_and_wait(self._reconnect_task)
        self._reconnect_task = None

        if self._websocket is not None:
            await self._websocket.close()
            logger.info(
                f'Closed connection to relay server at {self._address}',
            )

    async def recv(self) -> RelayMessage:
        """Receive the next message.

        Returns:
            The message received from the relay server.

        Raises:
            RelayMessageDecodeError: If the message received cannot
                be decoded into the appropriate message type.
            websockets.exceptions.ConnectionClosed: If the connection closes
                while waiting on a message.
        """
        try:
            websocket = self.websocket
        except RelayNotConnectedError:
            await self.connect()
            websocket = self.websocket

        message_str = await websocket.recv()
        if not isinstance(message_str, str):
            raise RelayMessageDecodeError(
                'Received non-string message from the relay server.',
            )
        return decode_relay_message(message_str)

    async def send(self, message: RelayMessage) -> None:
        """Send a message.

        Args:
            message: The message to send to the relay server.
        """
        message_str = encode_relay_message(message)

        try:
            websocket = self.websocket
        except RelayNotConnectedError:
            await self.connect()
            websocket = self.websocket

        await websocket.send(message_str)
