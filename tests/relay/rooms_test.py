from __future__ import annotations

import asyncio
import datetime
import logging

import pytest

from huddle.relay.exceptions import BadRequestError
from huddle.relay.exceptions import ForbiddenError
from huddle.relay.messages import AnswerSignal
from huddle.relay.messages import ChatMessage
from huddle.relay.messages import HostTransferred
from huddle.relay.messages import MediaStatusChange
from huddle.relay.messages import MeetingEnded
from huddle.relay.messages import OfferSignal
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RoomExpired
from huddle.relay.messages import UserJoined
from huddle.relay.messages import UserLeft
from huddle.relay.rooms import RoomRegistry
from huddle.relay.rooms import validate_identifier


class Outbox:
    def __init__(self) -> None:
        self.messages: list[tuple[str, RelayMessage]] = []

    async def send(self, client_id: str, message: RelayMessage) -> None:
        await asyncio.sleep(0)
        self.messages.append((client_id, message))

    def to(self, client_id: str) -> list[RelayMessage]:
        return [m for c, m in self.messages if c == client_id]

    def clear(self) -> None:
        self.messages.clear()


def _check_single_host(registry: RoomRegistry) -> None:
    for room in registry.rooms():
        assert len(room.members) > 0
        assert room.host is not None
        assert room.host in room.members


@pytest.mark.parametrize(
    'value',
    ('R7', 'a', 'user@example.com', 'room_1.2-3:x', 'x' * 128),
)
def test_validate_identifier(value: str) -> None:
    assert validate_identifier(value, 'room id') == value


@pytest.mark.parametrize(
    'value',
    ('', 'has space', 'x' * 129, 'slash/room', None, 42),
)
def test_validate_identifier_malformed(value: object) -> None:
    with pytest.raises(BadRequestError, match='Malformed room id'):
        validate_identifier(value, 'room id')


@pytest.mark.asyncio()
async def test_first_joiner_is_host() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)

    result = await registry.join('R1', 'alice')
    assert result.is_host
    assert result.existing_members == []
    assert outbox.messages == []

    result = await registry.join('R1', 'bob')
    assert not result.is_host
    assert result.existing_members == ['alice']
    assert outbox.to('alice') == [
        UserJoined(room_id='R1', peer_id='bob', is_host=False),
    ]

    room = registry.get_room('R1')
    assert room is not None
    assert room.members == ('alice', 'bob')
    assert room.host == 'alice'
    assert registry.rooms_of('bob') == {'R1'}


@pytest.mark.asyncio()
async def test_join_twice_is_idempotent() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)

    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    result = await registry.join('R1', 'bob')
    assert not result.is_host
    assert result.existing_members == ['alice']
    assert outbox.messages == []
    room = registry.get_room('R1')
    assert room is not None
    assert room.members == ('alice', 'bob')


@pytest.mark.asyncio()
async def test_join_malformed_room() -> None:
    registry = RoomRegistry(Outbox().send)
    with pytest.raises(BadRequestError):
        await registry.join('bad room', 'alice')
    assert registry.rooms() == []


@pytest.mark.asyncio()
async def test_host_transfer_on_leave() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)

    await registry.join('R7', 'A')
    await registry.join('R7', 'B')
    await registry.join('R7', 'C')
    outbox.clear()

    assert await registry.leave_room('R7', 'A')

    room = registry.get_room('R7')
    assert room is not None
    assert room.host == 'B'
    assert room.members == ('B', 'C')
    assert outbox.to('B') == [
        UserLeft(room_id='R7', peer_id='A', was_host=True),
        HostTransferred(room_id='R7'),
    ]
    assert outbox.to('C') == [
        UserLeft(room_id='R7', peer_id='A', was_host=True),
    ]
    _check_single_host(registry)


@pytest.mark.asyncio()
async def test_non_host_leave_keeps_host() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)

    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    await registry.leave_room('R1', 'bob')
    room = registry.get_room('R1')
    assert room is not None
    assert room.host == 'alice'
    assert outbox.to('alice') == [
        UserLeft(room_id='R1', peer_id='bob', was_host=False),
    ]


@pytest.mark.asyncio()
async def test_last_member_leaving_deletes_room() -> None:
    registry = RoomRegistry(Outbox().send)
    await registry.join('R1', 'alice')
    assert await registry.leave_room('R1', 'alice')
    assert registry.get_room('R1') is None
    assert registry.rooms_of('alice') == set()
    assert not await registry.leave_room('R1', 'alice')


@pytest.mark.asyncio()
async def test_leave_all_rooms() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R2', 'alice')
    await registry.join('R2', 'bob')

    assert await registry.leave('alice') == ['R1', 'R2']
    assert registry.get_room('R1') is None
    room = registry.get_room('R2')
    assert room is not None
    assert room.host == 'bob'
    assert await registry.leave('nobody') == []


@pytest.mark.asyncio()
async def test_concurrent_joins_single_host() -> None:
    registry = RoomRegistry(Outbox().send)
    clients = [f'client-{i}' for i in range(20)]

    results = await asyncio.gather(
        *(registry.join('R1', client) for client in clients),
    )

    assert sum(result.is_host for result in results) == 1
    _check_single_host(registry)

    await asyncio.gather(
        *(registry.leave_room('R1', client) for client in clients[:10]),
    )
    _check_single_host(registry)
    room = registry.get_room('R1')
    assert room is not None
    assert room.host == room.members[0]


@pytest.mark.asyncio()
async def test_concurrent_join_and_leave_churn() -> None:
    registry = RoomRegistry(Outbox().send)

    async def _churn(client_id: str) -> None:
        for _ in range(5):
            await registry.join('R1', client_id)
            await registry.leave_room('R1', client_id)
        await registry.join('R1', client_id)

    await asyncio.gather(*(_churn(f'c{i}') for i in range(8)))
    _check_single_host(registry)
    room = registry.get_room('R1')
    assert room is not None
    assert len(room.members) == 8


@pytest.mark.asyncio()
async def test_relay_to_target() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    await registry.join('R1', 'carol')
    outbox.clear()

    signal = OfferSignal('R1', sdp='v=0', sender='mallory', target='bob')
    assert await registry.relay('R1', 'alice', signal) == ['bob']
    assert outbox.messages == [('bob', signal)]
    assert signal.sender == 'alice'


@pytest.mark.asyncio()
async def test_relay_broadcast() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    await registry.join('R1', 'carol')
    outbox.clear()

    signal = OfferSignal('R1', sdp='v=0')
    assert await registry.relay('R1', 'bob', signal) == ['alice', 'carol']
    assert [client for client, _ in outbox.messages] == ['alice', 'carol']


@pytest.mark.asyncio()
async def test_relay_absent_target_dropped(caplog) -> None:
    caplog.set_level(logging.WARNING)
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    signal = AnswerSignal('R1', sdp='v=0', target='zed')
    assert await registry.relay('R1', 'alice', signal) == []
    assert outbox.messages == []
    assert any('not a member' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_relay_from_non_member_dropped() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')

    signal = OfferSignal('R1', sdp='v=0', target='alice')
    assert await registry.relay('R1', 'eve', signal) == []
    assert await registry.relay('R2', 'alice', signal) == []
    assert outbox.messages == []


@pytest.mark.asyncio()
async def test_broadcast_media_status() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    recipients = await registry.broadcast_media_status(
        'R1',
        'alice',
        False,
        True,
    )
    assert recipients == ['bob']
    assert outbox.to('bob') == [
        MediaStatusChange(
            room_id='R1',
            audio_enabled=False,
            video_enabled=True,
            sender='alice',
        ),
    ]
    assert await registry.broadcast_media_status('R1', 'eve', True, True) == []


@pytest.mark.asyncio()
async def test_end_meeting_by_host() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    await registry.end_meeting('R1', 'alice')
    assert outbox.messages == [('bob', MeetingEnded(room_id='R1'))]
    assert registry.get_room('R1') is None
    assert registry.rooms_of('bob') == set()

    # The room can be reused afterwards
    result = await registry.join('R1', 'bob')
    assert result.is_host


@pytest.mark.asyncio()
async def test_end_meeting_by_non_host_forbidden() -> None:
    registry = RoomRegistry(Outbox().send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')

    with pytest.raises(ForbiddenError):
        await registry.end_meeting('R1', 'bob')
    with pytest.raises(ForbiddenError):
        await registry.end_meeting('missing', 'bob')

    room = registry.get_room('R1')
    assert room is not None
    assert room.members == ('alice', 'bob')


@pytest.mark.asyncio()
async def test_expire_inactive_rooms() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send, expiry=60)
    await registry.join('old', 'alice')
    await registry.join('old', 'bob')
    await registry.join('new', 'carol')
    outbox.clear()

    room = registry.get_room('new')
    assert room is not None
    now = room.last_activity + datetime.timedelta(seconds=30)
    assert await registry.expire(now) == []

    # Activity in "new" keeps it alive while "old" goes stale
    later = now + datetime.timedelta(seconds=45)
    registry._rooms['new'].last_activity = later
    assert await registry.expire(later) == ['old']

    assert registry.get_room('old') is None
    assert registry.get_room('new') is not None
    assert outbox.to('alice') == [RoomExpired(room_id='old')]
    assert outbox.to('bob') == [RoomExpired(room_id='old')]
    assert registry.rooms_of('alice') == set()


@pytest.mark.asyncio()
async def test_get_room_touch_refreshes_activity() -> None:
    registry = RoomRegistry(Outbox().send, expiry=60)
    await registry.join('R1', 'alice')
    room = registry.get_room('R1')
    assert room is not None
    stale = room.created - datetime.timedelta(hours=1)
    registry._rooms['R1'].last_activity = stale

    touched = registry.get_room('R1', touch=True)
    assert touched is not None
    assert touched.last_activity > stale
    assert registry.get_room('missing', touch=True) is None


def test_expiry_property() -> None:
    registry = RoomRegistry(Outbox().send, expiry=90)
    assert registry.expiry == datetime.timedelta(seconds=90)


@pytest.mark.parametrize(
    ('room_id', 'client_id', 'kind'),
    (('bad room!', 'alice', 'room id'), ('R1', 'bad client!', 'client id')),
)
@pytest.mark.asyncio()
async def test_operations_reject_malformed_identifiers(
    room_id: str,
    client_id: str,
    kind: str,
) -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()
    before = registry.rooms()

    operations = (
        registry.relay(room_id, client_id, OfferSignal(room_id, sdp='v=0')),
        registry.broadcast_media_status(room_id, client_id, True, False),
        registry.broadcast_chat(room_id, client_id, 'hello'),
        registry.leave_room(room_id, client_id),
        registry.end_meeting(room_id, client_id),
    )
    for operation in operations:
        with pytest.raises(BadRequestError, match=f'Malformed {kind}'):
            await operation

    assert registry.rooms() == before
    assert outbox.messages == []
    assert 'bad room!' not in registry._locks


@pytest.mark.asyncio()
async def test_broadcast_chat_includes_sender() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    await registry.join('R1', 'bob')
    outbox.clear()

    recipients = await registry.broadcast_chat('R1', 'bob', 'hello')
    assert recipients == ['alice', 'bob']
    chat = ChatMessage(room_id='R1', message='hello', sender='bob')
    assert outbox.to('alice') == [chat]
    assert outbox.to('bob') == [chat]


@pytest.mark.asyncio()
async def test_broadcast_chat_from_non_member_dropped() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('R1', 'alice')
    outbox.clear()

    assert await registry.broadcast_chat('R1', 'eve', 'hello') == []
    assert await registry.broadcast_chat('R2', 'alice', 'hello') == []
    assert outbox.messages == []


@pytest.mark.asyncio()
async def test_leave_keeps_membership_joined_during_leave() -> None:
    outbox = Outbox()
    registry = RoomRegistry(outbox.send)
    await registry.join('A', 'alice')
    await registry.join('A', 'bob')
    await registry.join('B', 'alice')
    await registry.join('B', 'carol')

    rejoined = False

    async def send(client_id: str, message: RelayMessage) -> None:
        nonlocal rejoined
        await outbox.send(client_id, message)
        # While alice's disconnect is leaving room A, a new connection of
        # alice ends the meeting in B and starts a new one there
        if isinstance(message, UserLeft) and not rejoined:
            rejoined = True
            await registry.end_meeting('B', 'alice')
            await registry.join('B', 'alice')

    registry._send = send

    assert await registry.leave('alice') == ['A']
    assert rejoined

    room = registry.get_room('B')
    assert room is not None
    assert room.members == ('alice',)
    assert room.host == 'alice'
    assert registry.rooms_of('alice') == {'B'}
    assert outbox.to('carol') == [MeetingEnded(room_id='B')]
