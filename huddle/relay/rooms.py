"""Room membership and host election for the relay server."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import datetime
import itertools
import logging
import re
from typing import AsyncGenerator
from typing import Awaitable
from typing import Callable
from typing import NamedTuple

from huddle.relay.exceptions import BadRequestError
from huddle.relay.exceptions import ForbiddenError
from huddle.relay.messages import ChatMessage
from huddle.relay.messages import HostTransferred
from huddle.relay.messages import MediaStatusChange
from huddle.relay.messages import MeetingEnded
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RoomExpired
from huddle.relay.messages import SignalMessage
from huddle.relay.messages import UserJoined
from huddle.relay.messages import UserLeft

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.:@-]{1,128}$')
"""Pattern room and client identifiers must match."""

SendCallable = Callable[[str, RelayMessage], Awaitable[None]]


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


def validate_identifier(value: object, kind: str) -> str:
    """Check that a room or client identifier is well formed.

    Args:
        value: Identifier to check.
        kind: Description of the identifier used in the error message.

    Returns:
        The identifier.

    Raises:
        BadRequestError: If the identifier is not a string matching
            [`IDENTIFIER_PATTERN`][huddle.relay.rooms.IDENTIFIER_PATTERN].
    """
    if not isinstance(value, str) or IDENTIFIER_PATTERN.match(value) is None:
        raise BadRequestError(f'Malformed {kind}: {value!r}.')
    return value


@dataclasses.dataclass
class Room:
    """Membership state of a single room.

    Attributes:
        room_id: Identifier of the room.
        members: Member identifiers mapped to the time they joined. The
            mapping preserves join order which is used for host election.
        host: Current host or `None` if the room is empty.
        created: Time the room was created at.
        last_activity: Time of the last join, leave, or relayed message.
    """

    room_id: str
    members: dict[str, datetime.datetime] = dataclasses.field(
        default_factory=dict,
    )
    host: str | None = None
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )
    last_activity: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def touch(self) -> None:
        """Update the last activity time to now."""
        self.last_activity = _utc_current_time()

    def others(self, client_id: str) -> list[str]:
        """Get all members except `client_id` in join order."""
        return [member for member in self.members if member != client_id]


class RoomSnapshot(NamedTuple):
    """Read-only view of a room returned to callers outside the registry."""

    room_id: str
    members: tuple[str, ...]
    host: str | None
    created: datetime.datetime
    last_activity: datetime.datetime


class JoinResult(NamedTuple):
    """Result of [`RoomRegistry.join()`][huddle.relay.rooms.RoomRegistry.join].

    Attributes:
        is_host: If the joining client is the room host.
        existing_members: Other members of the room in join order.
    """

    is_host: bool
    existing_members: list[str]


class RoomRegistry:
    """Authoritative membership and host election state of all rooms.

    Every operation on a room runs while holding that room's lock so all
    joins, leaves, and relayed messages of one room form a single sequential
    stream. This keeps the invariant that a non-empty room has exactly one
    host which is a current member. Operations on different rooms do not
    contend.

    Messages are delivered with the `send` callable given at construction.
    The callable must not raise on delivery failure; the relay server's
    implementation logs and drops messages for closed connections.

    Args:
        send: Coroutine function `send(client_id, message)` which delivers
            a message to a connected client.
        expiry: Seconds of inactivity after which
            [`expire()`][huddle.relay.rooms.RoomRegistry.expire] discards a
            room.
    """

    def __init__(
        self,
        send: SendCallable,
        *,
        expiry: float = 24 * 60 * 60,
    ) -> None:
        self._send = send
        self._expiry = datetime.timedelta(seconds=expiry)
        self._rooms: dict[str, Room] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Client mapped to the rooms it is in and the sequence number of the
        # join that added it to each room
        self._memberships: dict[str, dict[str, int]] = {}
        self._joins = itertools.count()

    @property
    def expiry(self) -> datetime.timedelta:
        """Inactivity threshold after which rooms are expired."""
        return self._expiry

    @contextlib.asynccontextmanager
    async def _locked(self, room_id: str) -> AsyncGenerator[None, None]:
        # A waiter can wake up holding a lock that was discarded together
        # with its room while it waited so re-acquire until the lock held is
        # the one currently registered for the room.
        while True:
            lock = self._locks.setdefault(room_id, asyncio.Lock())
            await lock.acquire()
            if self._locks.get(room_id) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            if room_id not in self._rooms and self._locks.get(room_id) is lock:
                del self._locks[room_id]
            lock.release()

    def _discard(self, room: Room) -> None:
        for member in room.members:
            self._remove_membership(member, room.room_id)
        room.members.clear()
        room.host = None
        self._rooms.pop(room.room_id, None)

    def _remove_membership(self, client_id: str, room_id: str) -> None:
        rooms = self._memberships.get(client_id)
        if rooms is not None:
            rooms.pop(room_id, None)
            if not rooms:
                del self._memberships[client_id]

    async def _broadcast(
        self,
        room: Room,
        message: RelayMessage,
        *,
        exclude: str | None = None,
    ) -> list[str]:
        recipients = room.others(exclude) if exclude else list(room.members)
        for recipient in recipients:
            await self._send(recipient, message)
        return recipients

    def get_room(
        self,
        room_id: str,
        *,
        touch: bool = False,
    ) -> RoomSnapshot | None:
        """Get a snapshot of a room.

        Args:
            room_id: Room to look up.
            touch: Refresh the room's last activity time, e.g., when a client
                checks that a room exists before joining it.

        Returns:
            Snapshot of the room or `None` if the room does not exist.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return None
        if touch:
            room.touch()
        return RoomSnapshot(
            room_id=room.room_id,
            members=tuple(room.members),
            host=room.host,
            created=room.created,
            last_activity=room.last_activity,
        )

    def rooms(self) -> list[RoomSnapshot]:
        """Get snapshots of all rooms."""
        snapshots = (self.get_room(room_id) for room_id in list(self._rooms))
        return [snapshot for snapshot in snapshots if snapshot is not None]

    def rooms_of(self, client_id: str) -> set[str]:
        """Get the identifiers of all rooms a client is a member of."""
        return set(self._memberships.get(client_id, ()))

    async def join(self, room_id: str, client_id: str) -> JoinResult:
        """Add a client to a room.

        The room is created if it does not exist and the client becomes host
        if the room has none. All other members are sent a
        [`UserJoined`][huddle.relay.messages.UserJoined] notice. Joining a
        room the client is already a member of changes nothing and only
        returns the current membership.

        Args:
            room_id: Room to join.
            client_id: Client joining the room.

        Returns:
            If the client is host and the other members of the room.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id)
                self._rooms[room_id] = room
                logger.info(f'Created room {room_id}')

            if client_id in room.members:
                logger.debug(f'Client {client_id} rejoined room {room_id}')
                return JoinResult(
                    is_host=room.host == client_id,
                    existing_members=room.others(client_id),
                )

            room.members[client_id] = _utc_current_time()
            room.touch()
            self._memberships.setdefault(client_id, {})[room_id] = next(
                self._joins,
            )
            if room.host is None:
                room.host = client_id

            is_host = room.host == client_id
            existing = room.others(client_id)
            logger.info(
                f'Client {client_id} joined room {room_id} '
                f'(host={is_host}, existing members={len(existing)})',
            )
            await self._broadcast(
                room,
                UserJoined(
                    room_id=room_id,
                    peer_id=client_id,
                    is_host=is_host,
                ),
                exclude=client_id,
            )
            return JoinResult(is_host=is_host, existing_members=existing)

    async def relay(
        self,
        room_id: str,
        from_client_id: str,
        message: SignalMessage,
    ) -> list[str]:
        """Forward a signal to one or all other members of a room.

        The message's `sender` is overwritten with `from_client_id`. If the
        message has a `target` that is a member of the room, only the target
        receives it. A target that is not a member causes the message to be
        dropped and logged; the sender is not notified. Without a target the
        message is sent to every other member.

        Args:
            room_id: Room to relay within.
            from_client_id: Client that sent the message.
            message: Signal to forward.

        Returns:
            Identifiers of the members the message was delivered to.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(from_client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None or from_client_id not in room.members:
                logger.warning(
                    f'Client {from_client_id} attempted to relay '
                    f'{message.message_type} in room {room_id} without being '
                    'a member, dropping message',
                )
                return []

            room.touch()
            message.sender = from_client_id
            if message.target is None:
                recipients = await self._broadcast(
                    room,
                    message,
                    exclude=from_client_id,
                )
                logger.debug(
                    f'Broadcast {message.message_type} from {from_client_id} '
                    f'to {len(recipients)} member(s) of room {room_id}',
                )
                return recipients
            elif message.target in room.members:
                await self._send(message.target, message)
                logger.debug(
                    f'Forwarded {message.message_type} from {from_client_id} '
                    f'to {message.target} in room {room_id}',
                )
                return [message.target]
            else:
                logger.warning(
                    f'Client {from_client_id} attempted to send '
                    f'{message.message_type} to {message.target} which is not '
                    f'a member of room {room_id}, dropping message',
                )
                return []

    async def broadcast_media_status(
        self,
        room_id: str,
        client_id: str,
        audio_enabled: bool,
        video_enabled: bool,
    ) -> list[str]:
        """Forward a member's media status to the other members.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None or client_id not in room.members:
                logger.warning(
                    f'Client {client_id} sent media status for room '
                    f'{room_id} without being a member, dropping message',
                )
                return []
            room.touch()
            status = MediaStatusChange(
                room_id=room_id,
                audio_enabled=audio_enabled,
                video_enabled=video_enabled,
                sender=client_id,
            )
            return await self._broadcast(room, status, exclude=client_id)

    async def broadcast_chat(
        self,
        room_id: str,
        client_id: str,
        message: str,
    ) -> list[str]:
        """Send a chat message from a member to every member of a room.

        The sender receives its own message back which confirms delivery
        and keeps the order of chat messages the same for every member.

        Args:
            room_id: Room to send the chat message in.
            client_id: Member that wrote the message.
            message: Text of the chat message.

        Returns:
            Identifiers of the members the message was delivered to.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None or client_id not in room.members:
                logger.warning(
                    f'Client {client_id} sent a chat message to room '
                    f'{room_id} without being a member, dropping message',
                )
                return []
            room.touch()
            chat = ChatMessage(
                room_id=room_id,
                message=message,
                sender=client_id,
            )
            recipients = await self._broadcast(room, chat)
            logger.debug(
                f'Broadcast chat message from {client_id} to '
                f'{len(recipients)} member(s) of room {room_id}',
            )
            return recipients

    async def _leave_locked(self, room: Room, client_id: str) -> None:
        del room.members[client_id]
        self._remove_membership(client_id, room.room_id)
        room.touch()
        was_host = room.host == client_id
        logger.info(
            f'Client {client_id} left room {room.room_id} (host={was_host})',
        )

        if not room.members:
            self._discard(room)
            logger.info(f'Deleted empty room {room.room_id}')
            return

        if was_host:
            # Members preserves insertion order so this is the earliest
            # remaining joiner
            room.host = next(iter(room.members))

        await self._broadcast(
            room,
            UserLeft(
                room_id=room.room_id,
                peer_id=client_id,
                was_host=was_host,
            ),
        )
        if was_host:
            assert room.host is not None
            logger.info(
                f'Transferred host of room {room.room_id} to {room.host}',
            )
            await self._send(room.host, HostTransferred(room_id=room.room_id))

    async def leave_room(self, room_id: str, client_id: str) -> bool:
        """Remove a client from a single room.

        Remaining members are sent a [`UserLeft`][huddle.relay.messages.UserLeft]
        notice. If the client was host, the earliest remaining member becomes
        host and is sent a
        [`HostTransferred`][huddle.relay.messages.HostTransferred] notice.
        The room is deleted once empty.

        Returns:
            `True` if the client was a member of the room.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None or client_id not in room.members:
                return False
            await self._leave_locked(room, client_id)
            return True

    async def leave(self, client_id: str) -> list[str]:
        """Remove a client from every room it is a member of.

        This is called when a client's connection closes. Only the
        memberships the client held when this was called are removed. A
        room the client joins again while the leave is in progress, e.g.,
        from a new connection, keeps the client. See
        [`leave_room()`][huddle.relay.rooms.RoomRegistry.leave_room].

        Returns:
            Identifiers of the rooms the client left.
        """
        joined = dict(self._memberships.get(client_id, {}))
        left = []
        for room_id in sorted(joined):
            async with self._locked(room_id):
                current = self._memberships.get(client_id, {}).get(room_id)
                if current != joined[room_id]:
                    continue
                room = self._rooms.get(room_id)
                if room is None or client_id not in room.members:
                    continue
                await self._leave_locked(room, client_id)
                left.append(room_id)
        return left

    async def end_meeting(self, room_id: str, client_id: str) -> None:
        """End the meeting in a room on behalf of its host.

        All other members are sent
        [`MeetingEnded`][huddle.relay.messages.MeetingEnded] and the room is
        discarded.

        Raises:
            BadRequestError: If the room or client identifier is malformed.
            ForbiddenError: If the client is not the room's host.
        """
        validate_identifier(room_id, 'room id')
        validate_identifier(client_id, 'client id')

        async with self._locked(room_id):
            room = self._rooms.get(room_id)
            if room is None or room.host != client_id:
                raise ForbiddenError(
                    f'Only the host of room {room_id} can end the meeting.',
                )
            await self._broadcast(
                room,
                MeetingEnded(room_id=room_id),
                exclude=client_id,
            )
            self._discard(room)
            logger.info(
                f'Host {client_id} ended the meeting in room {room_id}',
            )

    async def expire(self, now: datetime.datetime | None = None) -> list[str]:
        """Discard rooms that have been inactive longer than the expiry.

        Every member of an expired room is sent
        [`RoomExpired`][huddle.relay.messages.RoomExpired].

        Args:
            now: Current time. Defaults to the current UTC time.

        Returns:
            Identifiers of the rooms that were expired.
        """
        now = _utc_current_time() if now is None else now
        expired = []
        for room_id in list(self._rooms):
            async with self._locked(room_id):
                room = self._rooms.get(room_id)
                if room is None or now - room.last_activity <= self._expiry:
                    continue
                logger.info(
                    f'Expiring room {room_id} after inactivity since '
                    f'{room.last_activity.isoformat()}',
                )
                await self._broadcast(room, RoomExpired(room_id=room_id))
                self._discard(room)
                expired.append(room_id)
        return expired
