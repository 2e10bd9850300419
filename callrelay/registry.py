"""Registry of participants connected to a signaling server."""
from __future__ import annotations

import dataclasses
import datetime
import threading
from typing import Any
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Duplex message channel to a single participant.

    [`ServerConnection`][websockets.asyncio.server.ServerConnection]
    satisfies this protocol.
    """

    @property
    def remote_address(self) -> Any:
        """Address of the remote end of the connection."""
        ...

    async def send(self, message: str) -> None:
        """Send a message on the connection."""
        ...


def _utc_current_time() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Participant:
    """Named participant reachable over a connection.

    Attributes:
        name: Display name chosen by the participant at login.
        connection: Connection to the participant. The registry does not
            own the connection.
        joined: Time the participant logged in.
    """

    name: str
    connection: Connection
    joined: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        joined = self.joined.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = getattr(self.connection, 'remote_address', None)
        return (
            f'{self.__class__.__name__}(name={self.name}, '
            f'address={address}, joined={joined})'
        )


class Registry:
    """Thread-safe mapping of connections to logged in participants.

    Entries are keyed by connection so there is at most one participant per
    connection. Display names are not unique: looking up a name returns the
    participant that most recently logged in with that name and is still
    connected.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # Insertion order is login order so the last entry is the most recent.
        self._participants: dict[Connection, Participant] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._participants)

    def register(self, connection: Connection, name: str) -> Participant:
        """Add or replace the participant for a connection.

        Args:
            connection: Connection the login was received on.
            name: Display name to register the connection under.

        Returns:
            The new participant.
        """
        participant = Participant(name=name, connection=connection)
        with self._lock:
            # Pop first so a repeated login moves to the most recent position.
            self._participants.pop(connection, None)
            self._participants[connection] = participant
        return participant

    def find_by_connection(
        self,
        connection: Connection,
    ) -> Participant | None:
        """Get the participant logged in on a connection."""
        with self._lock:
            return self._participants.get(connection, None)

    def find_by_name(self, name: str) -> Participant | None:
        """Get the most recently logged in participant with a name."""
        with self._lock:
            for participant in reversed(self._participants.values()):
                if participant.name == name:
                    return participant
        return None

    def participants(self) -> list[Participant]:
        """Get a list of all participants in login order."""
        with self._lock:
            return list(self._participants.values())

    def remove(self, connection: Connection) -> Participant | None:
        """Remove the participant for a connection.

        Returns:
            The removed participant or `None` if the connection had not
            logged in.
        """
        with self._lock:
            return self._participants.pop(connection, None)
