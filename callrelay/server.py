"""Signaling server implementation for facilitating WebRTC calls.

The signaling server is a lightweight server accessible by all participants
(e.g., has a public IP address) that relays the session descriptions and ICE
candidates two participants need to establish a direct peer-to-peer
connection. The server never sees the media exchanged between participants.
"""
from __future__ import annotations

import logging
import sys

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from callrelay.exceptions import EnvelopeDecodeError
from callrelay.exceptions import UnknownChannelError
from callrelay.messages import decode_envelope
from callrelay.registry import Registry
from callrelay.router import ANONYMOUS_NAME
from callrelay.router import MessageRouter

logger = logging.getLogger(__name__)


class SignalingServer:
    """WebRTC signaling server.

    Participants connect over a websocket, log in with a display name, and
    then address call envelopes to other participants by name. The
    server forwards each envelope to the addressee with the `otherPerson`
    field rewritten to the name of the sender.

    The server is built on websockets and designed to be served using
    [`serve()`][callrelay.run.serve].

    Per-message errors never close the connection: malformed envelopes,
    unknown channels, and oversized messages are logged and dropped.

    Args:
        registry: Optional registry to use. A new one is created if `None`.
        anonymous_name: Name substituted for senders that have not logged in.
        max_message_bytes: Optional maximum size of participant messages in
            bytes. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        registry: Registry | None = None,
        *,
        anonymous_name: str = ANONYMOUS_NAME,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry = Registry() if registry is None else registry
        self._router = MessageRouter(
            self._registry,
            anonymous_name=anonymous_name,
        )
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> Registry:
        """Registry of logged in participants."""
        return self._registry

    @property
    def router(self) -> MessageRouter:
        """Router used to forward envelopes."""
        return self._router

    async def _process_message(
        self,
        websocket: ServerConnection,
        message: str | bytes,
    ) -> None:
        if (
            self._max_message_bytes is not None
            and sys.getsizeof(message) > self._max_message_bytes
        ):
            logger.warning(
                f'Dropping message from {websocket.remote_address} with '
                f'size {sys.getsizeof(message)} bytes which exceeds the max '
                f'configured size of {self._max_message_bytes} bytes',
            )
            return

        try:
            envelope = decode_envelope(message)
        except UnknownChannelError as e:
            logger.warning(
                f'Dropping message from {websocket.remote_address}: {e}',
            )
            return
        except EnvelopeDecodeError as e:
            logger.warning(
                'Dropping malformed message from '
                f'{websocket.remote_address}: {e}',
            )
            return

        await self._router.route(websocket, envelope)

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Processes messages received on the connection until it closes and
        then removes the participant logged in on the connection.

        Args:
            websocket: Websocket connection with a participant.
        """
        logger.debug(f'Opened connection with {websocket.remote_address}')
        try:
            while True:
                try:
                    message = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    break
                except websockets.exceptions.ConnectionClosedError as e:
                    logger.info(
                        f'Connection with {websocket.remote_address} closed '
                        f'unexpectedly: {e}',
                    )
                    break

                await self._process_message(websocket, message)
        finally:
            self._router.disconnect(websocket)
