from __future__ import annotations

import asyncio
import ssl
from unittest import mock

import pytest
import websockets.exceptions

from callrelay.client import SignalingClient
from callrelay.exceptions import EnvelopeDecodeError
from callrelay.exceptions import SignalingNotConnectedError
from callrelay.messages import StartCall
from testing.signaling_server import SignalingServerInfo


async def wait_logged_in(server: SignalingServerInfo, name: str) -> None:
    for _ in range(100):
        if server.signaling_server.registry.find_by_name(name) is not None:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f'{name} never logged in.')


def test_bad_address() -> None:
    with pytest.raises(ValueError, match='ws://'):
        SignalingClient('http://localhost', 'alice')


def test_wss_creates_ssl_context() -> None:
    client = SignalingClient('wss://localhost', 'alice')
    assert isinstance(client._ssl_context, ssl.SSLContext)
    assert client._ssl_context.verify_mode == ssl.CERT_REQUIRED

    client = SignalingClient(
        'wss://localhost',
        'alice',
        verify_certificate=False,
    )
    assert client._ssl_context is not None
    assert client._ssl_context.verify_mode == ssl.CERT_NONE


@pytest.mark.asyncio()
async def test_not_connected() -> None:
    client = SignalingClient('ws://localhost', 'alice')
    assert not client.connected
    with pytest.raises(SignalingNotConnectedError):
        await client.send(StartCall(other_person='bob'))
    with pytest.raises(SignalingNotConnectedError):
        await client.recv()
    # Closing a client that never connected is a no-op
    await client.close()


@pytest.mark.asyncio()
async def test_connect_logs_in(signaling_server: SignalingServerInfo) -> None:
    async with SignalingClient(signaling_server.address, 'alice') as client:
        assert client.connected
        assert client.name == 'alice'
        assert client.address == signaling_server.address
        await wait_logged_in(signaling_server, 'alice')

        # Connecting again is a no-op
        websocket = client.websocket
        await client.connect()
        assert client.websocket is websocket

    assert not client.connected
    with pytest.raises(SignalingNotConnectedError):
        client.websocket  # noqa: B018


@pytest.mark.asyncio()
async def test_send_and_recv(signaling_server: SignalingServerInfo) -> None:
    async with SignalingClient(
        signaling_server.address,
        'alice',
    ) as alice, SignalingClient(signaling_server.address, 'bob') as bob:
        await wait_logged_in(signaling_server, 'alice')
        await wait_logged_in(signaling_server, 'bob')

        await alice.send(StartCall(other_person='bob'))
        envelope = await asyncio.wait_for(bob.recv(), 1)
        assert envelope == StartCall(other_person='alice')


@pytest.mark.asyncio()
async def test_send_connection_closed(
    signaling_server: SignalingServerInfo,
) -> None:
    async with SignalingClient(signaling_server.address, 'alice') as client:
        closed = websockets.exceptions.ConnectionClosedOK(None, None)
        with mock.patch.object(
            client.websocket,
            'send',
            mock.AsyncMock(side_effect=closed),
        ):
            with pytest.raises(SignalingNotConnectedError) as exc_info:
                await client.send(StartCall(other_person='bob'))

    assert exc_info.value.__cause__ is closed


@pytest.mark.asyncio()
async def test_recv_bad_message(signaling_server: SignalingServerInfo) -> None:
    async with SignalingClient(signaling_server.address, 'alice') as client:
        await wait_logged_in(signaling_server, 'alice')
        participant = signaling_server.signaling_server.registry.find_by_name(
            'alice',
        )
        assert participant is not None
        await participant.connection.send('{"channel": "nope"}')

        with pytest.raises(EnvelopeDecodeError):
            await asyncio.wait_for(client.recv(), 1)
