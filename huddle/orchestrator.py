"""Coordinator of the negotiations of one client in a room."""
from __future__ import annotations

import asyncio
import enum
import logging
from types import TracebackType
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generator
from typing import NamedTuple

import websockets.exceptions
from aiortc import MediaStreamTrack
from aiortc import RTCPeerConnection

from huddle.config import PeerConfig
from huddle.exceptions import NegotiationError
from huddle.media import LocalMedia
from huddle.negotiator import PeerConnectionFactory
from huddle.negotiator import PeerNegotiator
from huddle.relay.client import RelayClient
from huddle.relay.exceptions import RelayClientError
from huddle.relay.messages import AnswerSignal
from huddle.relay.messages import CandidateSignal
from huddle.relay.messages import ChatMessage
from huddle.relay.messages import EndMeetingRequest
from huddle.relay.messages import HostTransferred
from huddle.relay.messages import JoinRoomRequest
from huddle.relay.messages import LeaveRoomRequest
from huddle.relay.messages import MediaStatusChange
from huddle.relay.messages import MeetingEnded
from huddle.relay.messages import OfferSignal
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RelayMessageDecodeError
from huddle.relay.messages import RelayResponse
from huddle.relay.messages import RoomExpired
from huddle.relay.messages import RoomInfo
from huddle.relay.messages import SIGNAL_TYPES
from huddle.relay.messages import SignalMessage
from huddle.relay.messages import UserJoined
from huddle.relay.messages import UserLeft
from huddle.utils.tasks import cancel_and_wait
from huddle.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

PeerOperation = Callable[[], Awaitable[None]]


class RoomEventType(enum.Enum):
    """Types of events emitted by a
    [`ConnectionOrchestrator`][huddle.orchestrator.ConnectionOrchestrator].
    """

    JOINED = 'joined'
    """The room was joined. Data is the list of existing members."""
    PEER_JOINED = 'peer-joined'
    """Another member joined."""
    PEER_LEFT = 'peer-left'
    """Another member left."""
    PEER_FAILED = 'peer-failed'
    """Negotiation with a member was given up after the maximum retries."""
    TRACK = 'track'
    """A remote track was received. Data is the track."""
    HOST = 'host'
    """This client became the room host."""
    MEDIA_STATUS = 'media-status'
    """A member changed its media status. Data is the
    [`MediaStatus`][huddle.orchestrator.MediaStatus]."""
    MEDIA_UNAVAILABLE = 'media-unavailable'
    """Local media could not be opened. Data is the error."""
    ERROR = 'error'
    """The relay server rejected a request. Data is the error message."""
    DISCONNECTED = 'disconnected'
    """The connection to the relay server was lost."""
    RECONNECTED = 'reconnected'
    """The relay server connection was restored and the room rejoined."""
    ENDED = 'ended'
    """The host ended the meeting."""
    EXPIRED = 'expired'
    """The room was closed by the relay server for inactivity."""
    CHAT = 'chat'
    """A member sent a chat message. Data is the text of the message."""


class RoomEvent(NamedTuple):
    """Event emitted by a connection orchestrator.

    Attributes:
        type: Type of the event.
        peer_id: Member the event is about, if any.
        data: Event specific data.
    """

    type: RoomEventType
    peer_id: str | None = None
    data: Any = None


class MediaStatus(NamedTuple):
    """Advisory audio and video enabled state of a member."""

    audio_enabled: bool
    video_enabled: bool


class _PeerSession:
    # Negotiator with a remote peer and the ordered operations on it
    def __init__(self, negotiator: PeerNegotiator) -> None:
        self.negotiator = negotiator
        self.inbox: asyncio.Queue[PeerOperation] = asyncio.Queue()
        self.worker: asyncio.Task[None] | None = None

    def submit(self, operation: PeerOperation) -> None:
        self.inbox.put_nowait(operation)


class ConnectionOrchestrator:
    """Connects one client with every other member of a room.

    The orchestrator joins a room through the relay server and keeps one
    [`PeerNegotiator`][huddle.negotiator.PeerNegotiator] per other member.
    Newcomers and existing members both start offers when they learn of each
    other and the negotiator's glare rule settles which offer is answered.

    Each peer has its own inbox and worker task so a slow negotiation with
    one peer never delays another while the operations on a single peer are
    processed strictly in arrival order. A negotiation that does not finish
    within the handshake timeout, or whose connection fails, is restarted
    with a fresh negotiator up to `max_retries` times. The count resets once
    a replacement connects.

    Example:
        ```python
        from huddle.orchestrator import ConnectionOrchestrator
        from huddle.relay.client import RelayClient

        relay_client = RelayClient('ws://localhost:8700')

        async with ConnectionOrchestrator(relay_client, 'my-room') as room:
            event = await room.next_event()
        ```

    Note:
        The orchestrator can be initialized with `await`.

        ```python
        room = await ConnectionOrchestrator(relay_client, 'my-room')
        ```

    Args:
        relay_client: Client interface to a relay server.
        room_id: Room to join.
        media: Local media shared with all peers. If `None`, no local
            tracks are sent.
        config: Peer connection configuration.
        pc_factory: Callable returning new peer connections. Defaults to
            creating [`RTCPeerConnection`][aiortc.RTCPeerConnection] with the
            ICE servers of `config`.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        room_id: str,
        *,
        media: LocalMedia | None = None,
        config: PeerConfig | None = None,
        pc_factory: PeerConnectionFactory | None = None,
    ) -> None:
        self._relay_client = relay_client
        self._room_id = room_id
        self._media = LocalMedia() if media is None else media
        self._config = PeerConfig() if config is None else config
        self._pc_factory = (
            self._default_pc_factory if pc_factory is None else pc_factory
        )

        self._sessions: dict[str, _PeerSession] = {}
        self._retries: dict[str, int] = {}
        self._remote_media: dict[str, MediaStatus] = {}
        self._events: asyncio.Queue[RoomEvent] = asyncio.Queue()

        self._is_host = False
        self._joined = False
        self._ended = False
        self._closing = False
        self._server_task: asyncio.Task[None] | None = None

    @property
    def _log_prefix(self) -> str:
        return (
            f'{self.__class__.__name__}'
            f'[{self.client_id} @ {self._room_id}]'
        )

    def _default_pc_factory(self) -> RTCPeerConnection:
        return RTCPeerConnection(self._config.to_rtc_configuration())

    @property
    def client_id(self) -> str:
        """Identifier of this client as registered with the relay server."""
        return self._relay_client.client_id

    @property
    def room_id(self) -> str:
        """Room this orchestrator joins."""
        return self._room_id

    @property
    def is_host(self) -> bool:
        """This client is the host of the room."""
        return self._is_host

    @property
    def joined(self) -> bool:
        """The relay server confirmed this client's membership."""
        return self._joined

    @property
    def ended(self) -> bool:
        """The meeting was ended, left, or expired."""
        return self._ended

    @property
    def media(self) -> LocalMedia:
        """Local media shared with all peers."""
        return self._media

    @property
    def media_status(self) -> MediaStatus:
        """Current local audio and video enabled state."""
        return MediaStatus(
            audio_enabled=self._media.audio_enabled,
            video_enabled=self._media.video_enabled,
        )

    @property
    def remote_media_status(self) -> dict[str, MediaStatus]:
        """Last media status reported by each peer."""
        return dict(self._remote_media)

    @property
    def negotiators(self) -> dict[str, PeerNegotiator]:
        """Negotiators of all current peers keyed by peer identifier."""
        return {
            peer_id: session.negotiator
            for peer_id, session in self._sessions.items()
        }

    @property
    def relay_client(self) -> RelayClient:
        """Relay client interface.

        Raises:
            RuntimeError: if the orchestrator is not initialized with `await`
                or [`async_init()`][huddle.orchestrator.ConnectionOrchestrator.async_init]
                has not been called.
        """
        if self._server_task is not None:
            return self._relay_client
        raise RuntimeError(
            'The relay server message handler has not been created yet. '
            'This is likely because async_init() has not been called. '
            'Is the orchestrator being initialized with await?',
        )

    async def async_init(self) -> None:
        """Connect to the relay server and join the room."""
        await self._relay_client.connect()
        if self._server_task is None:
            self._server_task = spawn_guarded_background_task(
                self._handle_server_messages,
                name=f'orchestrator-server-message-handler-{self._room_id}',
            )
        if self._media.acquisition_error is not None:
            self._emit(
                RoomEventType.MEDIA_UNAVAILABLE,
                data=self._media.acquisition_error,
            )
        await self._relay_client.send(JoinRoomRequest(self._room_id))
        logger.info(f'{self._log_prefix}: requested to join room')

    async def __aenter__(self) -> ConnectionOrchestrator:
        await self.async_init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, ConnectionOrchestrator]:
        return self.__aenter__().__await__()

    def _emit(
        self,
        event_type: RoomEventType,
        peer_id: str | None = None,
        data: Any = None,
    ) -> None:
        self._events.put_nowait(RoomEvent(event_type, peer_id, data))

    async def next_event(self) -> RoomEvent:
        """Wait for the next room event."""
        return await self._events.get()

    def _get_or_create_session(
        self,
        peer_id: str,
    ) -> tuple[_PeerSession, bool]:
        # No suspension point between the lookup and the insert so at most
        # one session per peer can exist
        session = self._sessions.get(peer_id)
        if session is not None:
            return session, False

        negotiator = PeerNegotiator(
            self._relay_client,
            self._room_id,
            peer_id,
            tracks=self._media.subscribe(),
            pc_factory=self._pc_factory,
            handshake_timeout=self._config.handshake_timeout,
            on_timeout=self._on_handshake_timeout,
            on_track=self._on_track,
            on_failed=self._on_connection_failed,
            on_connected=self._on_connected,
        )
        session = _PeerSession(negotiator)
        session.worker = spawn_guarded_background_task(
            self._run_peer_worker,
            session,
            name=f'peer-worker-{peer_id}',
            fatal=False,
        )
        self._sessions[peer_id] = session
        logger.debug(f'{self._log_prefix}: created negotiator for {peer_id}')
        return session, True

    async def _run_peer_worker(self, session: _PeerSession) -> None:
        peer_id = session.negotiator.remote_id
        while True:
            operation = await session.inbox.get()
            try:
                await operation()
            except NegotiationError as e:
                logger.warning(
                    f'{self._log_prefix}: negotiation with {peer_id} '
                    f'failed: {e}',
                )
            except (
                RelayClientError,
                websockets.exceptions.ConnectionClosed,
            ) as e:
                logger.warning(
                    f'{self._log_prefix}: unable to send signal to {peer_id} '
                    f'because of {e!r}',
                )

    async def _close_session(self, peer_id: str) -> bool:
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return False
        await cancel_and_wait(session.worker)
        await session.negotiator.close()
        return True

    async def _close_all_sessions(self) -> None:
        for peer_id in list(self._sessions):
            await self._close_session(peer_id)

    def _start_negotiation(self, peer_id: str) -> None:
        session, created = self._get_or_create_session(peer_id)
        if created:
            session.submit(session.negotiator.start_offer)

    async def _restart_negotiation(
        self,
        negotiator: PeerNegotiator,
        reason: str,
    ) -> None:
        peer_id = negotiator.remote_id
        session = self._sessions.get(peer_id)
        if session is None or session.negotiator is not negotiator:
            return

        await self._close_session(peer_id)
        retries = self._retries.get(peer_id, 0)
        if retries >= self._config.max_retries or self._ended:
            logger.error(
                f'{self._log_prefix}: giving up on {peer_id} after '
                f'{retries} retries ({reason})',
            )
            self._emit(RoomEventType.PEER_FAILED, peer_id, reason)
            return

        self._retries[peer_id] = retries + 1
        logger.info(
            f'{self._log_prefix}: restarting negotiation with {peer_id} '
            f'(retry {retries + 1}/{self._config.max_retries}, {reason})',
        )
        self._start_negotiation(peer_id)

    async def _on_handshake_timeout(self, negotiator: PeerNegotiator) -> None:
        await self._restart_negotiation(negotiator, 'handshake timeout')

    async def _on_connection_failed(self, negotiator: PeerNegotiator) -> None:
        await self._restart_negotiation(negotiator, 'connection failed')

    def _on_connected(self, negotiator: PeerNegotiator) -> None:
        peer_id = negotiator.remote_id
        session = self._sessions.get(peer_id)
        if session is None or session.negotiator is not negotiator:
            return
        # Retries bound consecutive failures of a peer
        retries = self._retries.pop(peer_id, 0)
        if retries > 0:
            logger.info(
                f'{self._log_prefix}: connected to {peer_id} after '
                f'{retries} retries',
            )

    def _on_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        self._emit(RoomEventType.TRACK, peer_id, track)

    def _dispatch_signal(self, signal: SignalMessage) -> None:
        if signal.target is not None and signal.target != self.client_id:
            logger.debug(
                f'{self._log_prefix}: ignoring {signal.message_type} '
                f'addressed to {signal.target}',
            )
            return
        if signal.sender is None or signal.sender == self.client_id:
            logger.warning(
                f'{self._log_prefix}: ignoring {signal.message_type} with '
                f'invalid sender {signal.sender}',
            )
            return
        if signal.room_id != self._room_id:
            logger.warning(
                f'{self._log_prefix}: ignoring {signal.message_type} for '
                f'room {signal.room_id}',
            )
            return

        session, created = self._get_or_create_session(signal.sender)
        if created:
            logger.info(
                f'{self._log_prefix}: received {signal.message_type} from '
                f'{signal.sender} before knowing the peer',
            )
        negotiator = session.negotiator

        async def _handle() -> None:
            if isinstance(signal, OfferSignal):
                await negotiator.on_remote_offer(signal)
            elif isinstance(signal, AnswerSignal):
                await negotiator.on_remote_answer(signal)
            elif isinstance(signal, CandidateSignal):
                await negotiator.on_remote_candidate(signal)
            else:
                raise AssertionError('Unreachable.')

        session.submit(_handle)

    async def _handle_server_message(  # noqa: C901
        self,
        message: RelayMessage,
    ) -> None:
        if isinstance(message, SIGNAL_TYPES):
            self._dispatch_signal(message)
        elif isinstance(message, RoomInfo):
            if message.room_id != self._room_id:
                return
            self._joined = True
            self._is_host = message.is_host
            logger.info(
                f'{self._log_prefix}: joined room (host={message.is_host}, '
                f'existing members={len(message.existing_members)})',
            )
            self._emit(
                RoomEventType.JOINED,
                data=list(message.existing_members),
            )
            if self._is_host:
                self._emit(RoomEventType.HOST)
            for member in message.existing_members:
                if member != self.client_id:
                    self._start_negotiation(member)
        elif isinstance(message, UserJoined):
            if (
                message.room_id != self._room_id
                or message.peer_id == self.client_id
            ):
                return
            logger.info(f'{self._log_prefix}: {message.peer_id} joined')
            self._emit(RoomEventType.PEER_JOINED, message.peer_id)
            self._start_negotiation(message.peer_id)
        elif isinstance(message, UserLeft):
            if message.room_id != self._room_id:
                return
            logger.info(f'{self._log_prefix}: {message.peer_id} left')
            await self._close_session(message.peer_id)
            self._retries.pop(message.peer_id, None)
            self._remote_media.pop(message.peer_id, None)
            self._emit(RoomEventType.PEER_LEFT, message.peer_id)
        elif isinstance(message, HostTransferred):
            if message.room_id != self._room_id:
                return
            logger.info(f'{self._log_prefix}: became the room host')
            self._is_host = True
            self._emit(RoomEventType.HOST)
        elif isinstance(message, (MeetingEnded, RoomExpired)):
            if message.room_id != self._room_id:
                return
            expired = isinstance(message, RoomExpired)
            logger.info(
                f'{self._log_prefix}: '
                f'{"room expired" if expired else "host ended the meeting"}',
            )
            await self._end()
            self._emit(
                RoomEventType.EXPIRED if expired else RoomEventType.ENDED,
            )
        elif isinstance(message, MediaStatusChange):
            if message.sender is None or message.room_id != self._room_id:
                return
            status = MediaStatus(message.audio_enabled, message.video_enabled)
            self._remote_media[message.sender] = status
            self._emit(RoomEventType.MEDIA_STATUS, message.sender, status)
        elif isinstance(message, ChatMessage):
            if message.sender is None or message.room_id != self._room_id:
                return
            self._emit(RoomEventType.CHAT, message.sender, message.message)
        elif isinstance(message, RelayResponse):
            if message.error:
                logger.error(
                    f'{self._log_prefix}: relay server returned error: '
                    f'{message.message}',
                )
                self._emit(RoomEventType.ERROR, data=message.message)
            else:
                logger.debug(
                    f'{self._log_prefix}: relay server response: '
                    f'{message.message}',
                )
        else:
            logger.error(
                f'{self._log_prefix}: received unknown message type '
                f'{type(message).__name__} from relay server',
            )

    async def _handle_disconnect(self) -> None:
        logger.warning(
            f'{self._log_prefix}: connection to relay server lost, closing '
            f'{len(self._sessions)} peer connection(s)',
        )
        await self._close_all_sessions()
        self._joined = False
        self._emit(RoomEventType.DISCONNECTED)

        await self._relay_client.connect()
        await self._relay_client.send(JoinRoomRequest(self._room_id))
        logger.info(f'{self._log_prefix}: reconnected and rejoining room')
        self._emit(RoomEventType.RECONNECTED)

    async def _handle_server_messages(self) -> None:
        """Handle messages from the relay server.

        Forwards signals to the negotiator of the sending peer.
        """
        logger.info(
            f'{self._log_prefix}: listening for messages from relay server',
        )
        while True:
            try:
                message = await self._relay_client.recv()
            except websockets.exceptions.ConnectionClosed:
                if self._closing or self._ended:
                    break
                await self._handle_disconnect()
                continue
            except RelayMessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error deserializing message from '
                    f'relay server: {e} ...skipping message',
                )
                continue

            await self._handle_server_message(message)

    async def _end(self) -> None:
        self._ended = True
        self._joined = False
        await self._close_all_sessions()

    async def _broadcast_media_status(self) -> None:
        if not self._joined:
            return
        status = self.media_status
        await self._relay_client.send(
            MediaStatusChange(
                room_id=self._room_id,
                audio_enabled=status.audio_enabled,
                video_enabled=status.video_enabled,
            ),
        )

    async def set_audio_enabled(self, enabled: bool) -> None:
        """Enable or disable local audio for all peers.

        The other members are notified with a
        [`MediaStatusChange`][huddle.relay.messages.MediaStatusChange].
        """
        self._media.audio_enabled = enabled
        await self._broadcast_media_status()

    async def set_video_enabled(self, enabled: bool) -> None:
        """Enable or disable local video for all peers.

        The other members are notified with a
        [`MediaStatusChange`][huddle.relay.messages.MediaStatusChange].
        """
        self._media.video_enabled = enabled
        await self._broadcast_media_status()

    async def send_chat(self, message: str) -> None:
        """Send a chat message to every member of the room.

        The relay server echoes the message back to this client so it is
        also emitted as a [`CHAT`][huddle.orchestrator.RoomEventType.CHAT]
        event here, in the same order the other members see it.
        """
        await self._relay_client.send(ChatMessage(self._room_id, message))

    async def leave(self) -> None:
        """Leave the room and close all peer connections."""
        if self._ended:
            return
        await self._relay_client.send(LeaveRoomRequest(self._room_id))
        await self._end()
        logger.info(f'{self._log_prefix}: left room')

    async def end_meeting(self) -> None:
        """End the meeting for all members.

        Only the host can end a meeting. Requests from other members are
        rejected by the relay server which is reported as an
        [`ERROR`][huddle.orchestrator.RoomEventType.ERROR] event.
        """
        await self._relay_client.send(EndMeetingRequest(self._room_id))
        if not self._is_host:
            logger.warning(
                f'{self._log_prefix}: requested to end the meeting without '
                'being the host',
            )
            return
        await self._end()
        self._emit(RoomEventType.ENDED)
        logger.info(f'{self._log_prefix}: ended the meeting')

    async def close(self) -> None:
        """Close the orchestrator.

        Warning:
            This will close all peer connections and close the connection
            to the relay server. Local media is not stopped.
        """
        self._closing = True
        await cancel_and_wait(self._server_task)
        await self._close_all_sessions()
        await self._relay_client.close()
        logger.info(f'{self._log_prefix}: orchestrator closed')
