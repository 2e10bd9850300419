from __future__ import annotations

import json
import logging
from unittest import mock

import pytest
import websockets.exceptions

from callrelay.messages import Answer
from callrelay.messages import Envelope
from callrelay.messages import IceCandidate
from callrelay.messages import Login
from callrelay.messages import Offer
from callrelay.messages import StartCall
from callrelay.registry import Registry
from callrelay.router import ANONYMOUS_NAME
from callrelay.router import MessageRouter


def get_mock_connection() -> mock.MagicMock:
    connection = mock.MagicMock()
    connection.remote_address = ('127.0.0.1', 12345)
    connection.send = mock.AsyncMock()
    return connection


def sent_messages(connection: mock.MagicMock) -> list[dict[str, object]]:
    return [
        json.loads(call.args[0]) for call in connection.send.await_args_list
    ]


@pytest.mark.asyncio()
async def test_login_registers_connection(caplog) -> None:
    caplog.set_level(logging.INFO)
    router = MessageRouter(Registry())
    connection = get_mock_connection()

    await router.route(connection, Login(name='alice'))

    participant = router.registry.find_by_name('alice')
    assert participant is not None
    assert participant.connection is connection
    assert any('alice joined' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_second_login_replaces_name() -> None:
    router = MessageRouter(Registry())
    connection = get_mock_connection()

    await router.route(connection, Login(name='alice'))
    await router.route(connection, Login(name='alicia'))

    assert len(router.registry) == 1
    participant = router.registry.find_by_connection(connection)
    assert participant is not None
    assert participant.name == 'alicia'


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    'envelope',
    (
        StartCall(other_person='bob'),
        IceCandidate(other_person='bob', candidate={'candidate': 'c'}),
        Offer(other_person='bob', offer={'type': 'offer', 'sdp': 'o'}),
        Answer(other_person='bob', answer={'type': 'answer', 'sdp': 'a'}),
    ),
)
async def test_forward_rewrites_addressee(envelope: Envelope) -> None:
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    await router.route(alice, Login(name='alice'))
    await router.route(bob, Login(name='bob'))

    await router.route(alice, envelope)

    alice.send.assert_not_awaited()
    (message,) = sent_messages(bob)
    assert message['channel'] == envelope.channel.value
    assert message['otherPerson'] == 'alice'
    # The sender's envelope is not mutated by the rewrite
    assert envelope.other_person == 'bob'  # type: ignore[attr-defined]


@pytest.mark.asyncio()
async def test_forward_start_call_exact_message() -> None:
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    await router.route(alice, Login(name='A'))
    await router.route(bob, Login(name='B'))

    await router.route(alice, StartCall(other_person='B'))

    assert sent_messages(bob) == [
        {'channel': 'start_call', 'otherPerson': 'A'},
    ]


@pytest.mark.asyncio()
async def test_forward_passes_payload_through() -> None:
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    await router.route(alice, Login(name='alice'))
    await router.route(bob, Login(name='bob'))
    candidate = {'candidate': 'candidate:1 1 udp 1 1.2.3.4 5 typ host'}

    await router.route(
        alice,
        IceCandidate(other_person='bob', candidate=candidate),
    )

    (message,) = sent_messages(bob)
    assert message['candidate'] == candidate


@pytest.mark.asyncio()
async def test_forward_to_unknown_name_is_dropped(caplog) -> None:
    caplog.set_level(logging.INFO)
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    await router.route(alice, Login(name='alice'))
    await router.route(bob, Login(name='bob'))

    await router.route(alice, StartCall(other_person='carol'))

    alice.send.assert_not_awaited()
    bob.send.assert_not_awaited()
    assert any(
        'addressee is not logged in' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_forward_from_anonymous_sender() -> None:
    router = MessageRouter(Registry())
    anonymous = get_mock_connection()
    bob = get_mock_connection()
    await router.route(bob, Login(name='bob'))

    await router.route(anonymous, StartCall(other_person='bob'))

    assert sent_messages(bob) == [
        {'channel': 'start_call', 'otherPerson': ANONYMOUS_NAME},
    ]


@pytest.mark.asyncio()
async def test_forward_custom_anonymous_name() -> None:
    router = MessageRouter(Registry(), anonymous_name='nobody')
    bob = get_mock_connection()
    await router.route(bob, Login(name='bob'))

    await router.route(get_mock_connection(), StartCall(other_person='bob'))

    assert sent_messages(bob)[0]['otherPerson'] == 'nobody'


@pytest.mark.asyncio()
async def test_forward_write_failure_is_dropped(caplog) -> None:
    caplog.set_level(logging.WARNING)
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    bob.send.side_effect = websockets.exceptions.ConnectionClosedOK(None, None)
    await router.route(alice, Login(name='alice'))
    await router.route(bob, Login(name='bob'))

    await router.route(alice, StartCall(other_person='bob'))

    bob.send.assert_awaited_once()
    alice.send.assert_not_awaited()
    assert any(
        'connection is closed' in record.message for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_send_encode_failure_is_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)
    router = MessageRouter(Registry())
    bob = get_mock_connection()
    participant = router.registry.register(bob, 'bob')

    await router.send(participant, Offer(other_person='a', offer=object()))

    bob.send.assert_not_awaited()
    assert any(
        'Failed to encode envelope' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_route_unknown_envelope_type(caplog) -> None:
    caplog.set_level(logging.WARNING)
    router = MessageRouter(Registry())

    await router.route(get_mock_connection(), Envelope())

    assert any('unknown type' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_disconnect_removes_participant(caplog) -> None:
    caplog.set_level(logging.INFO)
    router = MessageRouter(Registry())
    alice = get_mock_connection()
    bob = get_mock_connection()
    await router.route(alice, Login(name='alice'))
    await router.route(bob, Login(name='bob'))

    router.disconnect(bob)
    await router.route(alice, IceCandidate(other_person='bob', candidate={}))

    bob.send.assert_not_awaited()
    assert router.registry.find_by_name('bob') is None
    assert any(
        'bob disconnected' in record.message for record in caplog.records
    )

    # Disconnecting a connection that never logged in is a no-op
    router.disconnect(get_mock_connection())
