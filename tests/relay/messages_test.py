from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from huddle.relay.messages import AnswerSignal
from huddle.relay.messages import CandidateSignal
from huddle.relay.messages import ChatMessage
from huddle.relay.messages import decode_relay_message
from huddle.relay.messages import encode_relay_message
from huddle.relay.messages import EndMeetingRequest
from huddle.relay.messages import HostTransferred
from huddle.relay.messages import JoinRoomRequest
from huddle.relay.messages import LeaveRoomRequest
from huddle.relay.messages import MediaStatusChange
from huddle.relay.messages import MeetingEnded
from huddle.relay.messages import OfferSignal
from huddle.relay.messages import RelayMessage
from huddle.relay.messages import RelayMessageDecodeError
from huddle.relay.messages import RelayMessageEncodeError
from huddle.relay.messages import RelayMessageType
from huddle.relay.messages import RelayRegistrationRequest
from huddle.relay.messages import RelayResponse
from huddle.relay.messages import RoomExpired
from huddle.relay.messages import RoomInfo
from huddle.relay.messages import UserJoined
from huddle.relay.messages import UserLeft


@pytest.mark.parametrize(
    'message',
    (
        RelayRegistrationRequest('alice'),
        RelayResponse(),
        RelayResponse(success=False, message='bad request', error=True),
        JoinRoomRequest('R1'),
        LeaveRoomRequest('R1'),
        EndMeetingRequest('R1'),
        RoomInfo('R1', is_host=False, existing_members=['alice', 'bob']),
        UserJoined('R1', peer_id='carol', is_host=False),
        UserLeft('R1', peer_id='alice', was_host=True),
        HostTransferred('R1'),
        MeetingEnded('R1'),
        RoomExpired('R1'),
        MediaStatusChange('R1', audio_enabled=False, video_enabled=True),
        ChatMessage('R1', message='hello', sender='alice'),
        OfferSignal('R1', sdp='v=0', sender='alice', target='bob'),
        AnswerSignal('R1', sdp='v=0', sender='bob', target='alice'),
        CandidateSignal(
            'R1',
            candidate='candidate:1 1 udp 1 10.0.0.1 5000 typ host',
            sdp_mid='0',
            sdp_mline_index=0,
        ),
    ),
)
def test_encode_decode_messages(message: RelayMessage) -> None:
    encoded = encode_relay_message(message)
    assert decode_relay_message(encoded) == message


def test_message_type_names_match_classes() -> None:
    message = OfferSignal('R1', sdp='v=0')
    data = json.loads(encode_relay_message(message))
    assert data['message_type'] == RelayMessageType.offer.name
    assert RelayMessageType[data['message_type']].value == 'OfferSignal'


def test_signal_without_target_encodes_null() -> None:
    data = json.loads(encode_relay_message(OfferSignal('R1', sdp='v=0')))
    assert data['target'] is None
    assert data['sender'] is None


@pytest.mark.parametrize(
    ('message', 'match'),
    (
        ('not json', 'JSON'),
        ('[1, 2, 3]', 'JSON object'),
        ('{"room_id": "R1"}', 'message_type'),
        ('{"message_type": "Unknown"}', 'unknown message type'),
        ('{"message_type": 7}', 'unknown message type'),
        (
            '{"message_type": "join_room", "room_id": "R1", "extra": 1}',
            'JoinRoomRequest',
        ),
        ('{"message_type": "join_room"}', 'JoinRoomRequest'),
        ('{"message_type": "join_room", "room_id": 5}', 'room_id'),
        (
            '{"message_type": "offer", "room_id": "R1", "sdp": "v=0", '
            '"target": 3}',
            'target',
        ),
        (
            '{"message_type": "candidate", "room_id": "R1", '
            '"candidate": "", "sdp_mline_index": true}',
            'sdp_mline_index',
        ),
        (
            '{"message_type": "room_info", "room_id": "R1", '
            '"is_host": true, "existing_members": ["a", 1]}',
            'existing_members',
        ),
        (
            '{"message_type": "chat", "room_id": "R1", "message": 1}',
            'ChatMessage',
        ),
        (
            '{"message_type": "media_status", "room_id": "R1", '
            '"audio_enabled": "yes", "video_enabled": true}',
            'audio_enabled',
        ),
    ),
)
def test_decode_malformed_messages(message: str, match: str) -> None:
    with pytest.raises(RelayMessageDecodeError, match=match):
        decode_relay_message(message)


def test_encode_non_message() -> None:
    with pytest.raises(RelayMessageEncodeError, match='RelayMessage'):
        encode_relay_message(object())  # type: ignore[arg-type]


def test_construct_invalid_field_type() -> None:
    with pytest.raises(ValidationError, match='sdp_mline_index'):
        CandidateSignal('R1', candidate='', sdp_mline_index=False)
    with pytest.raises(ValidationError, match='room_id'):
        JoinRoomRequest(7)  # type: ignore[arg-type]


def test_encode_unserializable_field() -> None:
    message = RelayResponse()
    # Assignment is not validated so this slips past construction
    message.message = object()  # type: ignore[assignment]
    with pytest.raises(RelayMessageEncodeError):
        encode_relay_message(message)
