"""Relay server configuration file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys
from typing import Optional
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from huddle.utils.config import load


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_room_interval: Optional seconds between logging the
            number of open rooms and connected clients.
        current_room_limit: Max threshold for enumerating the
            detailed list of rooms. If `None`, no detailed list will be
            logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: Optional[str] = None  # noqa: UP007
    default_level: Union[int, str] = logging.INFO  # noqa: UP007
    websockets_level: Union[int, str] = logging.WARNING  # noqa: UP007
    current_room_interval: Optional[int] = 60  # noqa: UP007
    current_room_limit: Optional[int] = 32  # noqa: UP007


class RelayRoomConfig(BaseModel):
    """Room lifetime configuration.

    Attributes:
        expiry_seconds: Rooms without activity (joins, leaves, or relayed
            messages) for longer than this are closed and their members
            notified.
        sweep_interval: Seconds between checks for expired rooms.
    """

    model_config = ConfigDict(extra='forbid')

    expiry_seconds: float = 24 * 60 * 60
    sweep_interval: float = 60 * 60


class RelayHttpConfig(BaseModel):
    """HTTP room validation surface configuration.

    Attributes:
        host: Network interface the HTTP server binds to. Defaults to the
            relay server's host.
        port: Network port the HTTP server binds to. The HTTP server is not
            started if `None`.
    """

    model_config = ConfigDict(extra='forbid')

    host: Optional[str] = None  # noqa: UP007
    port: Optional[int] = None  # noqa: UP007


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        logging: Logging configuration.
        rooms: Room lifetime configuration.
        http: HTTP surface configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server.
    """

    model_config = ConfigDict(extra='forbid')

    host: Optional[str] = None  # noqa: UP007
    port: int = 8700
    certfile: Optional[str] = None  # noqa: UP007
    keyfile: Optional[str] = None  # noqa: UP007
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    rooms: RelayRoomConfig = Field(default_factory=RelayRoomConfig)
    http: RelayHttpConfig = Field(default_factory=RelayHttpConfig)
    max_message_bytes: Optional[int] = None  # noqa: UP007

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="relay.toml"
            port = 8700

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_room_interval = 60
            current_room_limit = 32

            [rooms]
            expiry_seconds = 86400.0
            sweep_interval = 3600.0
            ```

        Example:
            Serve with SSL and the room validation endpoint.
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 8700
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"

            [http]
            port = 8701
            ```

        Note:
            Omitted values will be set to their defaults (if they are an
            optional value with a default).
            ```python
            from huddle.relay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            assert config.http.port == 8701
            assert config.rooms.sweep_interval == 3600
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
