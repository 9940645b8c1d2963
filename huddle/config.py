"""Peer connection configuration."""

from __future__ import annotations

import pathlib
import sys
from typing import List
from typing import Optional
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from aiortc import RTCConfiguration
from aiortc import RTCIceServer
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from huddle.utils.config import load

DEFAULT_STUN_SERVER = 'stun:stun.l.google.com:19302'


class IceServerConfig(BaseModel):
    """STUN or TURN server used to gather connectivity candidates.

    Attributes:
        urls: One or more `stun:` or `turn:` URLs of the server.
        username: Username for TURN servers.
        credential: Credential for TURN servers.
    """

    model_config = ConfigDict(extra='forbid')

    urls: Union[str, List[str]]  # noqa: UP006,UP007
    username: Optional[str] = None  # noqa: UP007
    credential: Optional[str] = None  # noqa: UP007


def _default_ice_servers() -> list[IceServerConfig]:
    return [IceServerConfig(urls=DEFAULT_STUN_SERVER)]


class PeerConfig(BaseModel):
    """Configuration of the peer connections a client negotiates.

    Attributes:
        ice_servers: STUN/TURN servers passed to every peer connection.
        handshake_timeout: Seconds a negotiation may take from sending or
            receiving an offer until it is complete. The negotiation is
            abandoned and retried after this. `None` waits forever.
        max_retries: Maximum number of times a timed out negotiation with
            one peer is restarted.
    """

    model_config = ConfigDict(extra='forbid')

    ice_servers: List[IceServerConfig] = Field(  # noqa: UP006
        default_factory=_default_ice_servers,
    )
    handshake_timeout: Optional[float] = 30  # noqa: UP007
    max_retries: int = 2

    @field_validator('handshake_timeout')
    @classmethod
    def _handshake_timeout_validator(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError('Handshake timeout must be > 0.')
        return v

    @field_validator('max_retries')
    @classmethod
    def _max_retries_validator(cls, v: int) -> int:
        if v < 0:
            raise ValueError('Max retries must be >= 0.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="peer.toml"
            handshake_timeout = 20
            max_retries = 3

            [[ice_servers]]
            urls = "stun:stun.l.google.com:19302"

            [[ice_servers]]
            urls = ["turn:turn.example.com:3478"]
            username = "user"
            credential = "secret"
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def to_rtc_configuration(self) -> RTCConfiguration:
        """Build the configuration passed to new peer connections."""
        return RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=server.urls,
                    username=server.username,
                    credential=server.credential,
                )
                for server in self.ice_servers
            ],
        )
