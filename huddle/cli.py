"""CLI for joining a room as a peer."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from aiortc.contrib.media import MediaBlackhole

from huddle.config import PeerConfig
from huddle.media import LocalMedia
from huddle.media import open_local_media
from huddle.orchestrator import ConnectionOrchestrator
from huddle.orchestrator import RoomEvent
from huddle.orchestrator import RoomEventType
from huddle.relay.client import RelayClient

logger = logging.getLogger(__name__)

_FINAL_EVENTS = (RoomEventType.ENDED, RoomEventType.EXPIRED)


def _describe(event: RoomEvent) -> str:
    if event.type is RoomEventType.JOINED:
        members = ', '.join(event.data) if event.data else 'none'
        return f'Joined room (existing members: {members})'
    elif event.type is RoomEventType.TRACK:
        return f'Receiving {event.data.kind} from {event.peer_id}'
    elif event.type is RoomEventType.CHAT:
        return f'{event.peer_id}: {event.data}'
    elif event.type is RoomEventType.MEDIA_STATUS:
        return (
            f'{event.peer_id} audio={event.data.audio_enabled} '
            f'video={event.data.video_enabled}'
        )
    elif event.peer_id is not None:
        return f'{event.type.value}: {event.peer_id}'
    elif event.data is not None:
        return f'{event.type.value}: {event.data}'
    return event.type.value


async def _log_events(orchestrator: ConnectionOrchestrator) -> RoomEvent:
    sink = MediaBlackhole()
    try:
        while True:
            event = await orchestrator.next_event()
            logger.info(_describe(event))
            if event.type is RoomEventType.TRACK:
                # Remote frames must be consumed or they queue up
                sink.addTrack(event.data)
                await sink.start()
            if event.type in _FINAL_EVENTS:
                return event
    finally:
        await sink.stop()


async def join(
    relay: str,
    room_id: str,
    *,
    client_id: str | None = None,
    media: LocalMedia | None = None,
    config: PeerConfig | None = None,
    verify_certificate: bool = True,
) -> None:
    """Join a room and stay until the meeting ends or SIGINT/SIGTERM.

    Note:
        This function will not configure any logging.

    Args:
        relay: Address of the relay server.
        room_id: Room to join.
        client_id: Identifier to register with. Random if `None`.
        media: Local media to send to peers.
        config: Peer connection configuration.
        verify_certificate: Verify the relay server's SSL certificate.
    """
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    relay_client = RelayClient(
        relay,
        client_id=client_id,
        verify_certificate=verify_certificate,
    )

    async with ConnectionOrchestrator(
        relay_client,
        room_id,
        media=media,
        config=config,
    ) as orchestrator:
        events = asyncio.create_task(_log_events(orchestrator))
        await asyncio.wait({stop, events}, return_when=asyncio.FIRST_COMPLETED)
        if not events.done():
            events.cancel()
            await asyncio.gather(events, return_exceptions=True)
            await orchestrator.leave()

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)


@click.command()
@click.option('--relay', required=True, help='Relay server address.')
@click.option('--room', 'room_id', required=True, help='Room to join.')
@click.option('--client-id', help='Identifier to join with.')
@click.option(
    '--media',
    metavar='PATH',
    help='Media device or file to send (e.g., /dev/video0).',
)
@click.option(
    '--media-format',
    metavar='FORMAT',
    help='FFmpeg input format of the media (e.g., v4l2).',
)
@click.option(
    '--config',
    '-c',
    'config_path',
    help='Peer connection configuration file.',
)
@click.option(
    '--verify-certificate/--no-verify-certificate',
    default=True,
    help='Verify the SSL certificate of the relay server.',
)
@click.option(
    '--log-level',
    default='INFO',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    relay: str,
    room_id: str,
    client_id: str | None,
    media: str | None,
    media_format: str | None,
    config_path: str | None,
    verify_certificate: bool,
    log_level: str,
) -> None:
    """Join a room and exchange media with the other members."""
    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=log_level.upper(),
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if not relay.startswith(('ws://', 'wss://')):
        raise click.BadParameter(
            'must start with ws:// or wss://',
            param_hint='--relay',
        )

    config = PeerConfig() if config_path is None else PeerConfig.from_toml(
        config_path,
    )
    local_media = (
        LocalMedia()
        if media is None
        else open_local_media(media, format=media_format)
    )

    try:
        asyncio.run(
            join(
                relay,
                room_id,
                client_id=client_id,
                media=local_media,
                config=config,
                verify_certificate=verify_certificate,
            ),
        )
    finally:
        local_media.stop()
