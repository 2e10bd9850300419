"""Envelope types exchanged between participants and the signaling server.

Envelopes are JSON objects discriminated by the `channel` field. The
session descriptions and ICE candidates carried by call envelopes are opaque
to the server and are passed through unchanged.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar

from callrelay.exceptions import EnvelopeDecodeError
from callrelay.exceptions import EnvelopeEncodeError
from callrelay.exceptions import UnknownChannelError


class Channel(enum.Enum):
    """Channel tags supported on the wire."""

    login = 'login'
    """Participant announces its display name."""
    start_call = 'start_call'
    """Caller notifies the callee of an incoming call."""
    ice_candidate = 'webrtc_ice_candidate'
    """ICE candidate for an in-progress negotiation."""
    offer = 'webrtc_offer'
    """Session description offer."""
    answer = 'webrtc_answer'
    """Session description answer."""
    busy = 'busy'
    """Callee rejects a call because it is in another session."""


# Python attribute names which differ from the wire field names.
_WIRE_NAMES = {'other_person': 'otherPerson'}


@dataclasses.dataclass
class Envelope:
    """Base envelope."""

    channel: ClassVar[Channel]


@dataclasses.dataclass
class Login(Envelope):
    """Register the sending connection under a display name.

    Attributes:
        name: Display name of the participant.
    """

    name: str
    channel: ClassVar[Channel] = Channel.login


@dataclasses.dataclass
class CallEnvelope(Envelope):
    """Envelope addressed to another participant.

    Attributes:
        other_person: Name of the addressee when sent by a participant.
            The server rewrites this to the name of the sender before
            forwarding so receivers always see who the envelope came from.
    """

    other_person: str


@dataclasses.dataclass
class StartCall(CallEnvelope):
    """Notify the addressee that a call is being started."""

    channel: ClassVar[Channel] = Channel.start_call


@dataclasses.dataclass
class IceCandidate(CallEnvelope):
    """Forward a network candidate to the addressee.

    Attributes:
        candidate: Opaque ICE candidate.
    """

    candidate: Any = dataclasses.field(kw_only=True)
    channel: ClassVar[Channel] = Channel.ice_candidate


@dataclasses.dataclass
class Offer(CallEnvelope):
    """Forward a session description offer to the addressee.

    Attributes:
        offer: Opaque session description.
    """

    offer: Any = dataclasses.field(kw_only=True)
    channel: ClassVar[Channel] = Channel.offer


@dataclasses.dataclass
class Answer(CallEnvelope):
    """Forward a session description answer to the addressee.

    Attributes:
        answer: Opaque session description.
    """

    answer: Any = dataclasses.field(kw_only=True)
    channel: ClassVar[Channel] = Channel.answer


@dataclasses.dataclass
class Busy(CallEnvelope):
    """Tell the addressee its call was rejected because of another call."""

    channel: ClassVar[Channel] = Channel.busy


ENVELOPE_TYPES: dict[Channel, type[Envelope]] = {
    Channel.login: Login,
    Channel.start_call: StartCall,
    Channel.ice_candidate: IceCandidate,
    Channel.offer: Offer,
    Channel.answer: Answer,
    Channel.busy: Busy,
}


def _wire_name(field_name: str) -> str:
    return _WIRE_NAMES.get(field_name, field_name)


def decode_envelope(message: str | bytes) -> Envelope:
    """Decode a JSON string into the correct envelope type.

    Every field of the envelope type is required. Fields not known to the
    envelope type are discarded.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed envelope.

    Raises:
        UnknownChannelError: If the channel tag is not recognized.
        EnvelopeDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EnvelopeDecodeError('Failed to load message as JSON.') from e

    if not isinstance(data, dict):
        raise EnvelopeDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    channel_name = data.get('channel')
    if not isinstance(channel_name, str):
        raise EnvelopeDecodeError('Envelope does not contain a channel key.')

    try:
        channel = Channel(channel_name)
    except ValueError as e:
        raise UnknownChannelError(
            f'The envelope has an unknown channel: {channel_name}.',
        ) from e

    envelope_type = ENVELOPE_TYPES[channel]
    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(envelope_type):
        wire_name = _wire_name(field.name)
        try:
            kwargs[field.name] = data[wire_name]
        except KeyError as e:
            raise EnvelopeDecodeError(
                f'The {channel.value} envelope is missing the required '
                f'{wire_name} field.',
            ) from e
        if field.name in ('name', 'other_person') and not isinstance(
            kwargs[field.name],
            str,
        ):
            raise EnvelopeDecodeError(
                f'The {wire_name} field of a {channel.value} envelope must '
                'be a string.',
            )

    return envelope_type(**kwargs)


def encode_envelope(envelope: Envelope) -> str:
    """Encode an envelope as a JSON string.

    Args:
        envelope: Envelope to JSON encode.

    Raises:
        EnvelopeEncodeError: If the envelope cannot be JSON encoded.
    """
    if (
        not isinstance(envelope, Envelope)
        or getattr(type(envelope), 'channel', None) is None
    ):
        raise EnvelopeEncodeError(
            f'Expected an instance of an {Envelope.__name__} subtype. '
            f'Got {type(envelope).__name__}.',
        )

    data: dict[str, Any] = {'channel': envelope.channel.value}
    for field in dataclasses.fields(envelope):
        data[_wire_name(field.name)] = getattr(envelope, field.name)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise EnvelopeEncodeError('Error encoding envelope.') from e
