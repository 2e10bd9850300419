"""Client interface to a signaling server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.protocol import State

from callrelay.exceptions import SignalingNotConnectedError
from callrelay.messages import decode_envelope
from callrelay.messages import encode_envelope
from callrelay.messages import Envelope
from callrelay.messages import Login

logger = logging.getLogger(__name__)


class SignalingClient:
    """Client interface to a signaling server.

    The client logs in with its name as soon as the websocket connection is
    opened.

    Tip:
        This class can be used as an async context manager!
        ```python
        from callrelay.client import SignalingClient

        async with SignalingClient('ws://localhost:8765', 'alice') as client:
            await client.send(StartCall(other_person='bob'))
            envelope = await client.recv()
        ```

    Args:
        address: Address of the signaling server. Should start with `ws://`
            or `wss://`.
        name: Display name to log in with.
        ssl_context: Custom SSL context to pass to
            [`connect()`][websockets.asyncio.client.connect]. A TLS context
            is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection.
        verify_certificate: Verify the server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        name: str,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Signaling server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._name = name
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Address of the signaling server."""
        return self._address

    @property
    def name(self) -> str:
        """Name the client logs in with."""
        return self._name

    @property
    def connected(self) -> bool:
        """Check if the websocket connection is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the signaling server.

        Raises:
            SignalingNotConnectedError: If the websocket connection to the
                server is not open.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        raise SignalingNotConnectedError(
            'Websocket connection to the signaling server is not open. '
            'Try calling connect() first.',
        )

    async def connect(self) -> None:
        """Connect and log in to the signaling server.

        Note:
            This method is a no-op if a connection is already established.

        Raises:
            OSError: If the server could not be connected to.
            TimeoutError: If the connection was not opened within the
                timeout.
        """
        async with self._connect_lock:
            if self.connected:
                return

            websocket = await connect(
                self._address,
                open_timeout=self._timeout,
                ssl=self._ssl_context,
            )
            await websocket.send(encode_envelope(Login(name=self._name)))
            self._websocket = websocket
            logger.info(
                f'Logged in to signaling server at {self._address} as '
                f'{self._name}',
            )

    async def close(self) -> None:
        """Close the connection to the signaling server."""
        if self._websocket is not None:
            await self._websocket.close()
            logger.info(
                f'Closed connection to signaling server at {self._address}',
            )

    async def recv(self) -> Envelope:
        """Receive the next envelope.

        Returns:
            The envelope received from the signaling server.

        Raises:
            SignalingNotConnectedError: If the client is not connected.
            EnvelopeDecodeError: If the message received cannot be decoded.
            websockets.exceptions.ConnectionClosed: If the connection closes
                while waiting on a message.
        """
        message = await self.websocket.recv()
        return decode_envelope(message)

    async def send(self, envelope: Envelope) -> None:
        """Send an envelope.

        Args:
            envelope: The envelope to send to the signaling server.

        Raises:
            SignalingNotConnectedError: If the client is not connected or
                the connection closes while sending.
        """
        message = encode_envelope(envelope)
        try:
            await self.websocket.send(message)
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingNotConnectedError(
                'Websocket connection to the signaling server closed while '
                f'sending a {envelope.channel.value} envelope.',
            ) from e
