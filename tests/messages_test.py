from __future__ import annotations

import json

import pytest

from callrelay.exceptions import EnvelopeDecodeError
from callrelay.exceptions import EnvelopeEncodeError
from callrelay.exceptions import UnknownChannelError
from callrelay.messages import Answer
from callrelay.messages import Busy
from callrelay.messages import CallEnvelope
from callrelay.messages import decode_envelope
from callrelay.messages import encode_envelope
from callrelay.messages import Envelope
from callrelay.messages import IceCandidate
from callrelay.messages import Login
from callrelay.messages import Offer
from callrelay.messages import StartCall

CANDIDATE = {
    'candidate': 'candidate:1 1 UDP 2122252543 10.0.0.2 50000 typ host',
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}


@pytest.mark.parametrize(
    ('envelope', 'expected'),
    (
        (Login(name='alice'), {'channel': 'login', 'name': 'alice'}),
        (
            StartCall(other_person='bob'),
            {'channel': 'start_call', 'otherPerson': 'bob'},
        ),
        (
            IceCandidate(other_person='bob', candidate=CANDIDATE),
            {
                'channel': 'webrtc_ice_candidate',
                'otherPerson': 'bob',
                'candidate': CANDIDATE,
            },
        ),
        (
            Offer(other_person='bob', offer={'type': 'offer', 'sdp': 'x'}),
            {
                'channel': 'webrtc_offer',
                'otherPerson': 'bob',
                'offer': {'type': 'offer', 'sdp': 'x'},
            },
        ),
        (
            Answer(other_person='bob', answer={'type': 'answer', 'sdp': 'y'}),
            {
                'channel': 'webrtc_answer',
                'otherPerson': 'bob',
                'answer': {'type': 'answer', 'sdp': 'y'},
            },
        ),
        (Busy(other_person='bob'), {'channel': 'busy', 'otherPerson': 'bob'}),
    ),
)
def test_wire_format(envelope: Envelope, expected: dict[str, object]) -> None:
    encoded = encode_envelope(envelope)
    assert json.loads(encoded) == expected
    assert decode_envelope(encoded) == envelope


def test_decode_bytes() -> None:
    message = b'{"channel": "login", "name": "alice"}'
    assert decode_envelope(message) == Login(name='alice')


def test_decode_discards_unknown_fields() -> None:
    message = json.dumps(
        {'channel': 'start_call', 'otherPerson': 'bob', 'with': 'carol'},
    )
    assert decode_envelope(message) == StartCall(other_person='bob')


def test_decode_keeps_opaque_payload() -> None:
    payload = {'type': 'offer', 'sdp': 'v=0\r\n', 'extra': [1, 2, {'a': None}]}
    message = json.dumps(
        {'channel': 'webrtc_offer', 'otherPerson': 'bob', 'offer': payload},
    )
    envelope = decode_envelope(message)
    assert isinstance(envelope, Offer)
    assert envelope.offer == payload


@pytest.mark.parametrize(
    'message',
    (
        'not json',
        b'\xff\xfe',
        '[1, 2, 3]',
        '{"name": "alice"}',
        '{"channel": 42}',
        '{"channel": "login"}',
        '{"channel": "login", "name": 42}',
        '{"channel": "start_call"}',
        '{"channel": "start_call", "otherPerson": null}',
        '{"channel": "webrtc_offer", "otherPerson": "bob"}',
        '{"channel": "webrtc_answer", "otherPerson": "bob"}',
        '{"channel": "webrtc_ice_candidate", "otherPerson": "bob"}',
    ),
)
def test_decode_malformed(message: str | bytes) -> None:
    with pytest.raises(EnvelopeDecodeError):
        decode_envelope(message)


def test_decode_unknown_channel() -> None:
    with pytest.raises(UnknownChannelError, match='hangup'):
        decode_envelope('{"channel": "hangup", "otherPerson": "bob"}')


def test_encode_non_envelope() -> None:
    with pytest.raises(EnvelopeEncodeError):
        encode_envelope(object())  # type: ignore[arg-type]


def test_encode_base_envelope() -> None:
    with pytest.raises(EnvelopeEncodeError):
        encode_envelope(CallEnvelope(other_person='bob'))


def test_encode_unserializable_payload() -> None:
    with pytest.raises(EnvelopeEncodeError, match='Error encoding'):
        encode_envelope(Offer(other_person='bob', offer=object()))


@pytest.mark.parametrize('envelope_type', (IceCandidate, Offer, Answer))
def test_payload_is_required_keyword(envelope_type: type[Envelope]) -> None:
    with pytest.raises(TypeError):
        envelope_type(other_person='bob')
    with pytest.raises(TypeError):
        envelope_type('bob', {'type': 'offer', 'sdp': 'x'})
