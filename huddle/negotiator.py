"""Offer/answer negotiation with a single remote peer."""
from __future__ import annotations

import asyncio
import collections
import enum
import logging
from typing import Awaitable
from typing import Callable
from typing import Iterable

from aiortc import MediaStreamTrack
from aiortc import RTCIceCandidate
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from huddle.exceptions import NegotiationError
from huddle.exceptions import NegotiationStateError
from huddle.exceptions import NegotiationTimeoutError
from huddle.relay.client import RelayClient
from huddle.relay.messages import AnswerSignal
from huddle.relay.messages import CandidateSignal
from huddle.relay.messages import OfferSignal
from huddle.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

# Errors raised by RTCPeerConnection for invalid descriptions or calls made
# in the wrong signaling state
_PRIMITIVE_ERRORS = (InvalidAccessError, InvalidStateError, ValueError)

PeerConnectionFactory = Callable[[], RTCPeerConnection]
TimeoutCallback = Callable[['PeerNegotiator'], Awaitable[None]]
FailedCallback = Callable[['PeerNegotiator'], Awaitable[None]]
ConnectedCallback = Callable[['PeerNegotiator'], None]
TrackCallback = Callable[[str, MediaStreamTrack], None]


class NegotiationState(enum.Enum):
    """Negotiation state of a [`PeerNegotiator`][huddle.negotiator.PeerNegotiator]."""

    IDLE = 'idle'
    """No negotiation has happened yet."""
    HAVE_LOCAL_OFFER = 'have-local-offer'
    """A local offer is being created or waits for an answer."""
    HAVE_REMOTE_OFFER = 'have-remote-offer'
    """A remote offer is being answered."""
    STABLE = 'stable'
    """Offer and answer have been exchanged."""
    CLOSED = 'closed'
    """The negotiator was closed and cannot be used again."""


READY_STATES = frozenset({NegotiationState.IDLE, NegotiationState.STABLE})
"""States from which a new negotiation may start."""


def parse_candidate(signal: CandidateSignal) -> RTCIceCandidate:
    """Convert a candidate signal to an aiortc candidate.

    Raises:
        ValueError: If the candidate attribute is malformed.
    """
    sdp = signal.candidate
    if sdp.startswith('candidate:'):
        sdp = sdp[len('candidate:') :]
    # foundation component transport priority address port "typ" type
    if len(sdp.split()) < 8:
        raise ValueError(f'Malformed candidate {signal.candidate!r}.')
    try:
        candidate = candidate_from_sdp(sdp)
    except (IndexError, ValueError) as e:
        raise ValueError(f'Malformed candidate {signal.candidate!r}.') from e
    candidate.sdpMid = signal.sdp_mid
    candidate.sdpMLineIndex = signal.sdp_mline_index
    return candidate


class PeerNegotiator:
    """Negotiates and owns the peer connection with one remote peer.

    The negotiator drives the offer/answer exchange for its
    [`RTCPeerConnection`][aiortc.RTCPeerConnection] and sends the resulting
    session descriptions through the relay server. The
    [`state`][huddle.negotiator.PeerNegotiator.state] is updated before any
    suspension point so it doubles as the gate that rejects competing
    transitions.

    Remote connectivity candidates that arrive before the remote description
    is applied are buffered in arrival order and applied exactly once right
    after the remote description is set.

    When both peers send offers at the same time (glare), the offer of the
    peer with the lexicographically smaller identifier wins. The loser
    abandons its own offer by replacing the peer connection with a fresh one
    (aiortc does not support rolling back a local description), re-attaches
    its local tracks, and answers the winning offer.

    Note:
        aiortc gathers all local candidates before
        `setLocalDescription()` returns and embeds them in the session
        description so this class never sends
        [`CandidateSignal`][huddle.relay.messages.CandidateSignal] messages.
        Trickled candidates from other implementations are accepted.

    Warning:
        Methods of a single negotiator must not be called concurrently
        except for [`close()`][huddle.negotiator.PeerNegotiator.close].
        The [`ConnectionOrchestrator`][huddle.orchestrator.ConnectionOrchestrator]
        processes the operations of each peer in order.

    Args:
        relay_client: Client connection to the relay server.
        room_id: Room the local and remote peers are members of.
        remote_id: Identifier of the remote peer.
        tracks: Local tracks to send to the remote peer.
        pc_factory: Callable returning a new peer connection. Defaults to
            [`RTCPeerConnection`][aiortc.RTCPeerConnection].
        handshake_timeout: Seconds to wait for a negotiation to reach
            [`STABLE`][huddle.negotiator.NegotiationState.STABLE] after an
            offer is sent or received. `None` disables the timeout.
        on_timeout: Coroutine function called with this negotiator when the
            handshake timeout expires.
        on_track: Function called with the remote identifier and track when
            a remote track is received.
        on_failed: Coroutine function called with this negotiator when the
            peer connection fails.
        on_connected: Function called with this negotiator each time the
            peer connection becomes connected.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        room_id: str,
        remote_id: str,
        *,
        tracks: Iterable[MediaStreamTrack] = (),
        pc_factory: PeerConnectionFactory | None = None,
        handshake_timeout: float | None = None,
        on_timeout: TimeoutCallback | None = None,
        on_track: TrackCallback | None = None,
        on_failed: FailedCallback | None = None,
        on_connected: ConnectedCallback | None = None,
    ) -> None:
        self._relay_client = relay_client
        self._room_id = room_id
        self._remote_id = remote_id
        self._pc_factory = (
            RTCPeerConnection if pc_factory is None else pc_factory
        )
        self._handshake_timeout = handshake_timeout
        self._on_timeout = on_timeout
        self._on_track = on_track
        self._on_failed = on_failed
        self._on_connected = on_connected

        self._state = NegotiationState.IDLE
        self._offer_sent = False
        self._pending: collections.deque[RTCIceCandidate] = (
            collections.deque()
        )
        self._draining = False
        self._timer: asyncio.TimerHandle | None = None
        self._tracks: list[MediaStreamTrack] = []

        self._connected = self._new_connected_future()

        self._pc = self._create_peer_connection()
        self.attach_local_tracks(tracks)

    @property
    def _log_prefix(self) -> str:
        return (
            f'{self.__class__.__name__}'
            f'[{self.local_id} > {self._remote_id}]'
        )

    @property
    def local_id(self) -> str:
        """Identifier of the local client."""
        return self._relay_client.client_id

    @property
    def remote_id(self) -> str:
        """Identifier of the remote peer."""
        return self._remote_id

    @property
    def room_id(self) -> str:
        """Room this negotiation belongs to."""
        return self._room_id

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def connection_state(self) -> str:
        """Connection state of the underlying peer connection."""
        return self._pc.connectionState

    @property
    def peer_connection(self) -> RTCPeerConnection:
        """Peer connection currently owned by this negotiator."""
        return self._pc

    @property
    def pending_candidates(self) -> tuple[RTCIceCandidate, ...]:
        """Remote candidates waiting for the remote description."""
        return tuple(self._pending)

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        """Local tracks sent to the remote peer."""
        return list(self._tracks)

    def _create_peer_connection(self) -> RTCPeerConnection:
        pc = self._pc_factory()

        def _on_track(track: MediaStreamTrack) -> None:
            if pc is not self._pc:
                return
            logger.info(
                f'{self._log_prefix}: received remote {track.kind} track',
            )
            if self._on_track is not None:
                self._on_track(self._remote_id, track)

        async def _on_state_change() -> None:
            if pc is not self._pc:
                return
            logger.debug(
                f'{self._log_prefix}: connection entered '
                f'{pc.connectionState} state',
            )
            if pc.connectionState == 'connected':
                if not self._connected.done():
                    self._connected.set_result(None)
                logger.info(f'{self._log_prefix}: peer connection established')
                if self._on_connected is not None:
                    self._on_connected(self)
            elif pc.connectionState == 'failed':
                logger.warning(f'{self._log_prefix}: peer connection failed')
                if not self._connected.done():
                    self._connected.set_exception(
                        NegotiationError(
                            f'Connection with {self._remote_id} failed.',
                        ),
                    )
                if self._on_failed is not None:
                    await self._on_failed(self)

        pc.on('track', _on_track)
        pc.on('connectionstatechange', _on_state_change)
        return pc

    def _superseded(self, pc: RTCPeerConnection) -> bool:
        # True if pc was replaced or closed while an operation was suspended
        return pc is not self._pc or self._state is NegotiationState.CLOSED

    def _arm_timer(self) -> None:
        self._disarm_timer()
        if self._handshake_timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self._handshake_timeout,
            self._handshake_expired,
        )

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _handshake_expired(self) -> None:
        self._timer = None
        if self._state not in (
            NegotiationState.HAVE_LOCAL_OFFER,
            NegotiationState.HAVE_REMOTE_OFFER,
        ):
            return
        logger.warning(
            f'{self._log_prefix}: negotiation did not complete within '
            f'{self._handshake_timeout} seconds (state={self._state.value})',
        )
        if self._on_timeout is not None:
            spawn_guarded_background_task(
                self._on_timeout,
                self,
                name=f'negotiation-timeout-{self._remote_id}',
                fatal=False,
            )

    def _set_stable(self) -> None:
        self._state = NegotiationState.STABLE
        self._disarm_timer()
        logger.info(f'{self._log_prefix}: negotiation complete')

    def _new_connected_future(self) -> asyncio.Future[None]:
        future: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )
        # Retrieve the exception for when nobody waits on ready()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        return future

    async def _replace_peer_connection(self) -> None:
        old = self._pc
        if self._connected.done():
            self._connected = self._new_connected_future()
        self._pc = self._create_peer_connection()
        self._offer_sent = False
        self.attach_local_tracks(self._tracks)
        await old.close()

    async def _apply_candidate(
        self,
        pc: RTCPeerConnection,
        candidate: RTCIceCandidate,
    ) -> None:
        try:
            await pc.addIceCandidate(candidate)
        except _PRIMITIVE_ERRORS as e:
            logger.warning(
                f'{self._log_prefix}: failed to apply remote candidate: {e}',
            )

    async def _drain_candidates(self, pc: RTCPeerConnection) -> None:
        if self._pending:
            logger.debug(
                f'{self._log_prefix}: applying {len(self._pending)} '
                'buffered candidate(s)',
            )
        self._draining = True
        try:
            while self._pending and not self._superseded(pc):
                await self._apply_candidate(pc, self._pending.popleft())
        finally:
            self._draining = False

    def attach_local_tracks(self, tracks: Iterable[MediaStreamTrack]) -> None:
        """Send local tracks to the remote peer.

        Tracks already attached to the peer connection are skipped so this
        can be called repeatedly with the same tracks.
        """
        if self._state is NegotiationState.CLOSED:
            return
        sending = [
            sender.track
            for sender in self._pc.getSenders()
            if sender.track is not None
        ]
        for track in tracks:
            if not any(track is t for t in self._tracks):
                self._tracks.append(track)
            if any(track is t for t in sending):
                continue
            self._pc.addTrack(track)
            logger.debug(f'{self._log_prefix}: attached local {track.kind}')

    async def start_offer(self) -> None:
        """Create an offer and send it to the remote peer.

        Raises:
            NegotiationStateError: If the negotiator is not in a ready state.
                The state is unchanged and nothing is sent.
            NegotiationError: If the peer connection fails to create or apply
                the offer.
        """
        if self._state not in READY_STATES:
            logger.warning(
                f'{self._log_prefix}: cannot start an offer in state '
                f'{self._state.value}',
            )
            raise NegotiationStateError(
                f'Cannot start an offer in state {self._state.value}.',
            )

        previous = self._state
        self._state = NegotiationState.HAVE_LOCAL_OFFER
        self._offer_sent = False
        self._arm_timer()
        pc = self._pc

        try:
            offer = await pc.createOffer()
            if self._superseded(pc):
                return
            await pc.setLocalDescription(offer)
        except _PRIMITIVE_ERRORS as e:
            if self._superseded(pc):
                return
            self._state = previous
            self._disarm_timer()
            raise NegotiationError(f'Failed to create offer: {e}') from e

        if self._superseded(pc):
            return

        self._offer_sent = True
        logger.info(f'{self._log_prefix}: sending offer')
        await self._relay_client.send(
            OfferSignal(
                room_id=self._room_id,
                sdp=pc.localDescription.sdp,
                target=self._remote_id,
            ),
        )

    async def on_remote_offer(self, signal: OfferSignal) -> None:
        """Answer an offer from the remote peer.

        Raises:
            NegotiationError: If the peer connection rejects the offer or
                fails to create the answer.
        """
        if self._state is NegotiationState.CLOSED:
            logger.debug(f'{self._log_prefix}: ignoring offer after close')
            return
        elif self._state is NegotiationState.HAVE_REMOTE_OFFER:
            logger.warning(
                f'{self._log_prefix}: ignoring offer while another remote '
                'offer is being answered',
            )
            return
        elif self._state is NegotiationState.HAVE_LOCAL_OFFER:
            if self.local_id < self._remote_id:
                logger.info(
                    f'{self._log_prefix}: simultaneous offers, ignoring '
                    'remote offer because the local offer takes precedence',
                )
                return
            logger.info(
                f'{self._log_prefix}: simultaneous offers, abandoning local '
                'offer in favor of remote offer',
            )
        elif self._state is NegotiationState.STABLE:
            logger.info(
                f'{self._log_prefix}: remote peer restarted the negotiation, '
                'replacing peer connection',
            )

        replace = self._state is not NegotiationState.IDLE
        self._state = NegotiationState.HAVE_REMOTE_OFFER
        self._arm_timer()
        if replace:
            await self._replace_peer_connection()
        pc = self._pc
        if self._superseded(pc):
            return
        logger.info(f'{self._log_prefix}: received offer')

        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=signal.sdp, type='offer'),
            )
            if self._superseded(pc):
                return
            await self._drain_candidates(pc)
            if self._superseded(pc):
                return
            self.attach_local_tracks(self._tracks)
            answer = await pc.createAnswer()
            if self._superseded(pc):
                return
            await pc.setLocalDescription(answer)
        except _PRIMITIVE_ERRORS as e:
            if self._superseded(pc):
                return
            self._state = NegotiationState.IDLE
            self._disarm_timer()
            raise NegotiationError(f'Failed to answer offer: {e}') from e

        if self._superseded(pc):
            return

        self._set_stable()
        logger.info(f'{self._log_prefix}: sending answer')
        await self._relay_client.send(
            AnswerSignal(
                room_id=self._room_id,
                sdp=pc.localDescription.sdp,
                target=self._remote_id,
            ),
        )

    async def on_remote_answer(self, signal: AnswerSignal) -> None:
        """Apply the remote peer's answer to the local offer.

        Answers received in any state other than
        [`HAVE_LOCAL_OFFER`][huddle.negotiator.NegotiationState.HAVE_LOCAL_OFFER]
        with the offer sent are stale or duplicated and are ignored.

        Raises:
            NegotiationError: If the peer connection rejects the answer.
        """
        if (
            self._state is not NegotiationState.HAVE_LOCAL_OFFER
            or not self._offer_sent
        ):
            logger.warning(
                f'{self._log_prefix}: ignoring unexpected answer in state '
                f'{self._state.value}',
            )
            return

        pc = self._pc
        logger.info(f'{self._log_prefix}: received answer')
        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=signal.sdp, type='answer'),
            )
        except _PRIMITIVE_ERRORS as e:
            if self._superseded(pc):
                return
            raise NegotiationError(f'Failed to apply answer: {e}') from e

        if self._superseded(pc):
            return
        await self._drain_candidates(pc)
        if self._superseded(pc):
            return
        self._set_stable()

    async def on_remote_candidate(self, signal: CandidateSignal) -> None:
        """Apply or buffer a connectivity candidate from the remote peer."""
        if self._state is NegotiationState.CLOSED:
            return
        if not signal.candidate:
            logger.debug(f'{self._log_prefix}: remote end of candidates')
            return

        try:
            candidate = parse_candidate(signal)
        except ValueError as e:
            logger.warning(f'{self._log_prefix}: {e} Ignoring candidate')
            return

        pc = self._pc
        if (
            pc.remoteDescription is not None
            and not self._pending
            and not self._draining
        ):
            await self._apply_candidate(pc, candidate)
        else:
            self._pending.append(candidate)
            logger.debug(
                f'{self._log_prefix}: buffered remote candidate '
                f'({len(self._pending)} pending)',
            )

    async def ready(self, timeout: float | None = None) -> None:
        """Wait for the peer connection to be established.

        Args:
            timeout: The maximum time in seconds to wait for the peer
                connection to establish. If None, block until the
                connection is established.

        Raises:
            NegotiationTimeoutError: If the connection is not ready within
                the timeout.
            NegotiationError: If the connection failed or was closed.
        """
        try:
            await asyncio.wait_for(asyncio.shield(self._connected), timeout)
        except asyncio.TimeoutError as e:
            raise NegotiationTimeoutError(
                f'Connection with {self._remote_id} was not established '
                f'within {timeout} seconds.',
            ) from e

    async def close(self) -> None:
        """Close the negotiator and release the peer connection.

        Safe to call from any state and more than once. Buffered candidates
        are discarded and operations suspended when this is called finish
        without sending anything.
        """
        if self._state is NegotiationState.CLOSED:
            return
        self._state = NegotiationState.CLOSED
        self._disarm_timer()
        self._pending.clear()
        if not self._connected.done():
            self._connected.set_exception(
                NegotiationError(f'Negotiator for {self._remote_id} closed.'),
            )
        logger.info(f'{self._log_prefix}: closing connection')
        await self._pc.close()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(local={self.local_id!r}, '
            f'remote={self._remote_id!r}, state={self._state.value!r})'
        )