"""Message types for relay client and relay server communication.

Every message is a pydantic dataclass which is sent over the websocket as a
single JSON object. The `message_type` key holds the name of the
[`RelayMessageType`][huddle.relay.messages.RelayMessageType] member and is
used by [`decode_relay_message()`][huddle.relay.messages.decode_relay_message]
to pick the class. Fields are validated in strict mode when a message is
constructed so malformed payloads are rejected at the transport boundary.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import sys
from typing import List
from typing import Optional
from typing import Union

from pydantic import ConfigDict
from pydantic.dataclasses import dataclass


class RelayMessageType(enum.Enum):
    """Types of messages supported."""

    relay_response = 'RelayResponse'
    """Relay response message."""
    relay_registration = 'RelayRegistrationRequest'
    """Relay registration request message."""
    join_room = 'JoinRoomRequest'
    """Request to join a room."""
    leave_room = 'LeaveRoomRequest'
    """Request to leave a room."""
    end_meeting = 'EndMeetingRequest'
    """Request from the host to end the meeting for everyone."""
    room_info = 'RoomInfo'
    """Reply to a join request."""
    user_joined = 'UserJoined'
    """Notice that a new member joined."""
    user_left = 'UserLeft'
    """Notice that a member left."""
    host_transferred = 'HostTransferred'
    """Notice to a member that it is the new host."""
    meeting_ended = 'MeetingEnded'
    """Notice that the host ended the meeting."""
    room_expired = 'RoomExpired'
    """Notice that the room was closed for inactivity."""
    media_status = 'MediaStatusChange'
    """Advisory audio/video enabled state of a member."""
    chat = 'ChatMessage'
    """Chat message shared with every member of a room."""
    offer = 'OfferSignal'
    """Session description offer."""
    answer = 'AnswerSignal'
    """Session description answer."""
    candidate = 'CandidateSignal'
    """Connectivity candidate."""


# Strict mode rejects coercions such as a bool for an int field and forbidding
# extra fields rejects keys no message type defines.
_MESSAGE_CONFIG = ConfigDict(strict=True, extra='forbid')


@dataclass(config=_MESSAGE_CONFIG)
class RelayMessage:
    """Base message."""

    pass


@dataclass(config=_MESSAGE_CONFIG)
class RelayRegistrationRequest(RelayMessage):
    """Register with relay server as a client.

    Attributes:
        client_id: Identifier the client will be known by in rooms.
    """

    client_id: str
    message_type: str = RelayMessageType.relay_registration.name


@dataclass(config=_MESSAGE_CONFIG)
class RelayResponse(RelayMessage):
    """Message returned by relay server on success or error.

    Attributes:
        success: If the request was successful.
        message: Message from server.
        error: If `message` is an error message.
    """

    success: bool = True
    message: Optional[str] = None  # noqa: UP007
    error: bool = False
    message_type: str = RelayMessageType.relay_response.name


@dataclass(config=_MESSAGE_CONFIG)
class JoinRoomRequest(RelayMessage):
    """Request to join a room, creating it if needed.

    Attributes:
        room_id: Room to join.
    """

    room_id: str
    message_type: str = RelayMessageType.join_room.name


@dataclass(config=_MESSAGE_CONFIG)
class LeaveRoomRequest(RelayMessage):
    """Request to leave a room."""

    room_id: str
    message_type: str = RelayMessageType.leave_room.name


@dataclass(config=_MESSAGE_CONFIG)
class EndMeetingRequest(RelayMessage):
    """Request from the room host to end the meeting for all members."""

    room_id: str
    message_type: str = RelayMessageType.end_meeting.name


@dataclass(config=_MESSAGE_CONFIG)
class RoomInfo(RelayMessage):
    """Reply sent to a client after it joins a room.

    Attributes:
        room_id: Room that was joined.
        is_host: If the joining client is the room host.
        existing_members: Other members of the room in join order.
    """

    room_id: str
    is_host: bool
    existing_members: List[str]  # noqa: UP006
    message_type: str = RelayMessageType.room_info.name


@dataclass(config=_MESSAGE_CONFIG)
class UserJoined(RelayMessage):
    """Notice sent to existing members when a new member joins."""

    room_id: str
    peer_id: str
    is_host: bool
    message_type: str = RelayMessageType.user_joined.name


@dataclass(config=_MESSAGE_CONFIG)
class UserLeft(RelayMessage):
    """Notice sent to remaining members when a member leaves."""

    room_id: str
    peer_id: str
    was_host: bool
    message_type: str = RelayMessageType.user_left.name


@dataclass(config=_MESSAGE_CONFIG)
class HostTransferred(RelayMessage):
    """Notice sent to the member elected as the new host."""

    room_id: str
    message_type: str = RelayMessageType.host_transferred.name


@dataclass(config=_MESSAGE_CONFIG)
class MeetingEnded(RelayMessage):
    """Notice sent to all members when the host ends the meeting."""

    room_id: str
    message_type: str = RelayMessageType.meeting_ended.name


@dataclass(config=_MESSAGE_CONFIG)
class RoomExpired(RelayMessage):
    """Notice sent to all members when the room is closed for inactivity."""

    room_id: str
    message_type: str = RelayMessageType.room_expired.name


@dataclass(config=_MESSAGE_CONFIG)
class MediaStatusChange(RelayMessage):
    """Advisory broadcast of a member's track enabled state.

    Attributes:
        room_id: Room the status applies to.
        audio_enabled: If the member's audio tracks are enabled.
        video_enabled: If the member's video tracks are enabled.
        sender: Member the status belongs to. Set by the relay server.
    """

    room_id: str
    audio_enabled: bool
    video_enabled: bool
    sender: Optional[str] = None  # noqa: UP007
    message_type: str = RelayMessageType.media_status.name


@dataclass(config=_MESSAGE_CONFIG)
class ChatMessage(RelayMessage):
    """Chat message shared with every member of a room.

    Attributes:
        room_id: Room the message is sent in.
        message: Text of the message.
        sender: Member that wrote the message. Set by the relay server.
    """

    room_id: str
    message: str
    sender: Optional[str] = None  # noqa: UP007
    message_type: str = RelayMessageType.chat.name


@dataclass(config=_MESSAGE_CONFIG)
class OfferSignal(RelayMessage):
    """Session description offer sent to start a negotiation.

    Attributes:
        room_id: Room the sender and target are members of.
        sdp: Session description protocol body of the offer.
        sender: Member that sent the offer. Always set by the relay server
            before forwarding.
        target: Member the offer is for. `None` broadcasts to all other
            members of the room.
    """

    room_id: str
    sdp: str
    sender: Optional[str] = None  # noqa: UP007
    target: Optional[str] = None  # noqa: UP007
    message_type: str = RelayMessageType.offer.name


@dataclass(config=_MESSAGE_CONFIG)
class AnswerSignal(RelayMessage):
    """Session description answer to a received offer.

    Attributes:
        room_id: Room the sender and target are members of.
        sdp: Session description protocol body of the answer.
        sender: Member that sent the answer.
        target: Member that sent the offer being answered.
    """

    room_id: str
    sdp: str
    sender: Optional[str] = None  # noqa: UP007
    target: Optional[str] = None  # noqa: UP007
    message_type: str = RelayMessageType.answer.name


@dataclass(config=_MESSAGE_CONFIG)
class CandidateSignal(RelayMessage):
    """Connectivity candidate trickled by a peer.

    Attributes:
        room_id: Room the sender and target are members of.
        candidate: Candidate attribute as produced by the browser
            (`candidate:...`). An empty string marks the end of candidates.
        sdp_mid: Media stream identification tag the candidate belongs to.
        sdp_mline_index: Index of the media description the candidate
            belongs to.
        sender: Member that sent the candidate.
        target: Member the candidate is for.
    """

    room_id: str
    candidate: str
    sdp_mid: Optional[str] = None  # noqa: UP007
    sdp_mline_index: Optional[int] = None  # noqa: UP007
    sender: Optional[str] = None  # noqa: UP007
    target: Optional[str] = None  # noqa: UP007
    message_type: str = RelayMessageType.candidate.name


SignalMessage = Union[OfferSignal, AnswerSignal, CandidateSignal]
"""Closed union of the signals forwarded between peers by the relay."""

SIGNAL_TYPES = (OfferSignal, AnswerSignal, CandidateSignal)


class RelayMessageError(Exception):
    """Base exception type for relay messages."""

    pass


class RelayMessageDecodeError(RelayMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """Exception raised when an message cannot be encoded."""

    pass


def decode_relay_message(message: str) -> RelayMessage:
    """Decode JSON string into correct relay message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        RelayMessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise RelayMessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise RelayMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        message_type_name = data.pop('message_type')
    except KeyError as e:
        raise RelayMessageDecodeError(
            'Message does not contain a message_type key.',
        ) from e

    try:
        message_type = getattr(
            sys.modules[__name__],
            RelayMessageType[message_type_name].value,
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise RelayMessageDecodeError(
            'The message is of an unknown message type: '
            f'{message_type_name}.',
        ) from e

    try:
        return message_type(**data)
    except (TypeError, ValueError) as e:
        raise RelayMessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def encode_relay_message(message: RelayMessage) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        RelayMessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, RelayMessage):
        raise RelayMessageEncodeError(
            f'Message is not an instance of {RelayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dataclasses.asdict(message)

    try:
        return json.dumps(data)
    except TypeError as e:
        raise RelayMessageEncodeError('Error encoding message.') from e
