"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
import uvicorn
from websockets.asyncio.server import serve as websockets_serve

from huddle.relay.config import RelayServingConfig
from huddle.relay.http import create_app
from huddle.relay.server import RelayServer
from huddle.utils.tasks import cancel_and_wait
from huddle.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_room_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs open rooms and connected clients.

    Args:
        server: Relay server instance to log the rooms of.
        interval: Seconds between logging rooms.
        limit: Only log detailed room list if the number of rooms is
            less than this number. Useful for debugging or avoiding
            clobbering the logs by printing thousands of rooms.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            clients = server.client_manager.get_clients()
            rooms = sorted(
                server.registry.rooms(),
                key=lambda room: room.room_id,
            )
            message = (
                f'Connected clients: {len(clients)}, open rooms: {len(rooms)}'
            )
            if limit is not None and 0 < len(rooms) < limit:
                rooms_repr = '\n'.join(
                    f'{room.room_id}: host={room.host}, '
                    f'members={", ".join(room.members)}'
                    for room in rooms
                )
                message = f'{message}\n{rooms_repr}'
            logger.log(level, message)

    return spawn_guarded_background_task(_log, name='relay-server-room-logger')


def periodic_room_sweeper(
    server: RelayServer,
    interval: float = 60 * 60,
) -> asyncio.Task[None]:
    """Create an asyncio task which periodically expires inactive rooms.

    Args:
        server: Relay server instance whose registry is swept.
        interval: Seconds between sweeps.

    Returns:
        Asyncio task.
    """

    async def _sweep() -> None:
        while True:
            await asyncio.sleep(interval)
            expired = await server.registry.expire()
            if expired:
                logger.info(
                    f'Expired {len(expired)} inactive room(s): '
                    f'{", ".join(expired)}',
                )

    return spawn_guarded_background_task(
        _sweep,
        name='relay-server-room-sweeper',
    )


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][huddle.relay.server.RelayServer]
    and starts a websocket server listening for new connections
    and incoming messages. If `config.http.port` is set, the room validation
    HTTP app is served alongside with uvicorn.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][huddle.relay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        room_expiry=config.rooms.expiry_seconds,
        max_message_bytes=config.max_message_bytes,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    room_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_room_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        room_logger_task = periodic_room_logger(
            server,
            config.logging.current_room_interval,
            config.logging.current_room_limit,
            level=level,
        )
    sweeper_task = periodic_room_sweeper(server, config.rooms.sweep_interval)

    http_server: uvicorn.Server | None = None
    http_task: asyncio.Task[None] | None = None
    if config.http.port is not None:
        http_server = uvicorn.Server(
            uvicorn.Config(
                create_app(server.registry),
                host=config.http.host or config.host or '127.0.0.1',
                port=config.http.port,
                log_config=None,
                access_log=False,
                ssl_certfile=config.certfile,
                ssl_keyfile=config.keyfile,
            ),
        )
        http_task = spawn_guarded_background_task(
            http_server.serve,
            name='relay-server-http',
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        logger=None,
        ssl=ssl_context,
    ):
        logger.info(f'Relay server listening on port {config.port}')
        if config.http.port is not None:
            logger.info(
                f'Room validation listening on port {config.http.port}',
            )
        logger.info('Use ctrl-C to stop')
        await stop

    if http_server is not None and http_task is not None:
        http_server.should_exit = True
        await asyncio.wait_for(http_task, timeout=5)

    await cancel_and_wait(room_logger_task)
    await cancel_and_wait(sweeper_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option(
    '--http-port',
    type=int,
    metavar='PORT',
    help='Port to serve room validation on.',
)
@click.option(
    '--room-expiry',
    type=float,
    metavar='SECONDS',
    help='Seconds of inactivity before a room is closed.',
)
@click.option(
    '--sweep-interval',
    type=float,
    metavar='SECONDS',
    help='Seconds between checks for inactive rooms.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    http_port: int | None,
    room_expiry: float | None,
    sweep_interval: float | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay server instance.

    The relay server is used by clients to meet in rooms and establish
    peer-to-peer WebRTC connections. If no configuration file is provided, a
    default configuration will be created from
    [`RelayServingConfig()`][huddle.relay.config.RelayServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if http_port is not None:
        config.http.port = http_port
    if room_expiry is not None:
        config.rooms.expiry_seconds = room_expiry
    if sweep_interval is not None:
        config.rooms.sweep_interval = sweep_interval
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)

    asyncio.run(serve(config))
