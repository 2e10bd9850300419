"""Routing of envelopes between participants."""
from __future__ import annotations

import dataclasses
import logging

import websockets.exceptions

from callrelay.exceptions import EnvelopeEncodeError
from callrelay.messages import CallEnvelope
from callrelay.messages import encode_envelope
from callrelay.messages import Envelope
from callrelay.messages import Login
from callrelay.registry import Connection
from callrelay.registry import Participant
from callrelay.registry import Registry

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = '[unknown]'


class MessageRouter:
    """Forwards envelopes to the participant they are addressed to.

    A forwarded envelope has its `other_person` field replaced with the
    name of the sender. Envelopes addressed to a name that is not logged in
    are dropped without notifying the sender.

    Args:
        registry: Registry of logged in participants.
        anonymous_name: Name substituted for senders that have not logged in.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        anonymous_name: str = ANONYMOUS_NAME,
    ) -> None:
        self._registry = registry
        self._anonymous_name = anonymous_name

    @property
    def registry(self) -> Registry:
        """Registry of logged in participants."""
        return self._registry

    async def route(self, connection: Connection, envelope: Envelope) -> None:
        """Process an envelope received on a connection.

        Args:
            connection: Connection the envelope was received on.
            envelope: Envelope to process.
        """
        if isinstance(envelope, Login):
            participant = self._registry.register(connection, envelope.name)
            logger.info(f'{participant.name} joined: {participant!r}')
        elif isinstance(envelope, CallEnvelope):
            await self.forward(connection, envelope)
        else:
            logger.warning(
                f'Dropping envelope of unknown type {type(envelope).__name__} '
                f'from {connection.remote_address}',
            )

    async def forward(
        self,
        connection: Connection,
        envelope: CallEnvelope,
    ) -> None:
        """Forward a call envelope to its addressee.

        Args:
            connection: Connection of the sender.
            envelope: Envelope to forward.
        """
        sender = self._registry.find_by_connection(connection)
        sender_name = (
            self._anonymous_name if sender is None else sender.name
        )
        receiver = self._registry.find_by_name(envelope.other_person)
        if receiver is None:
            logger.info(
                f'Dropping {envelope.channel.value} from {sender_name} to '
                f'{envelope.other_person} because the addressee is not '
                'logged in',
            )
            return

        logger.info(
            f'Forwarding {envelope.channel.value} from {sender_name} to '
            f'{receiver.name}',
        )
        forwarded = dataclasses.replace(envelope, other_person=sender_name)
        await self.send(receiver, forwarded)

    async def send(self, participant: Participant, envelope: Envelope) -> None:
        """Send an envelope to a participant.

        Encoding and transport failures are logged and the envelope is
        dropped.

        Args:
            participant: Participant to send to.
            envelope: Envelope to send.
        """
        try:
            message = encode_envelope(envelope)
        except EnvelopeEncodeError as e:
            logger.error(f'Failed to encode envelope: {e}')
            return

        try:
            await participant.connection.send(message)
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            logger.warning(
                f'Dropping {envelope.channel.value} to {participant.name} '
                f'because the connection is closed: {e}',
            )

    def disconnect(self, connection: Connection) -> None:
        """Remove the participant on a closed connection.

        Args:
            connection: Connection that closed.
        """
        participant = self._registry.remove(connection)
        if participant is not None:
            logger.info(f'{participant.name} disconnected')
