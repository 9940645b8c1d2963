"""Helper classes for managing clients connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Client:
    """Representation of a registered client connection.

    Attributes:
        client_id: Identifier the client registered with.
        websocket: WebSocket connection to the client.
        created: Time the client registered at.
    """

    client_id: str
    websocket: ServerConnection
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Client):
            return (
                self.client_id == other.client_id
                and self.websocket is other.websocket
            )
        else:
            return False

    def __hash__(self) -> int:
        return hash((self.client_id, id(self.websocket)))

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(client_id={self.client_id}, '
            f'address={address}, created={created})'
        )


class ClientManager:
    """Manages active connections with registered clients.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][huddle.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._clients_by_id: dict[str, Client] = {}
        self._clients_by_websocket: dict[ServerConnection, Client] = {}

    def add_client(self, client: Client) -> None:
        """Add a new registered client."""
        self._clients_by_id[client.client_id] = client
        self._clients_by_websocket[client.websocket] = client

    def get_clients(self) -> list[Client]:
        """Get a list of all clients."""
        return list(self._clients_by_id.values())

    def get_client_by_id(self, client_id: str) -> Client | None:
        """Get a client by the client's identifier."""
        return self._clients_by_id.get(client_id, None)

    def get_client_by_websocket(
        self,
        websocket: ServerConnection,
    ) -> Client | None:
        """Get a client by the current websocket connection."""
        return self._clients_by_websocket.get(websocket, None)

    def remove_client(self, client: Client) -> None:
        """Remove a client.

        A no-op if the client's identifier has since been registered by a
        different connection.
        """
        if self._clients_by_id.get(client.client_id) == client:
            self._clients_by_id.pop(client.client_id, None)
        self._clients_by_websocket.pop(client.websocket, None)
