"""Tools for running a local signaling server for unit tests."""
from __future__ import annotations

from typing import AsyncGenerator
from typing import NamedTuple

import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.asyncio.server import Server

from callrelay.server import SignalingServer
from testing.utils import open_port


class SignalingServerInfo(NamedTuple):
    """NamedTuple returned by signaling_server fixture."""

    signaling_server: SignalingServer
    websocket_server: Server
    host: str
    port: int
    address: str


@pytest_asyncio.fixture()
async def signaling_server() -> AsyncGenerator[SignalingServerInfo, None]:
    """Fixture that runs a signaling server locally.

    Yields:
        `SignalingServerInfo <.SignalingServerInfo>`
    """
    host = 'localhost'
    port = open_port()
    address = f'ws://{host}:{port}'

    signaling_server = SignalingServer()
    async with serve(
        signaling_server.handler,
        host,
        port,
    ) as websocket_server:
        server_info = SignalingServerInfo(
            signaling_server=signaling_server,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )
        assert websocket_server.is_serving()
        yield server_info
