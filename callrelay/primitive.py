"""Negotiation primitive backed by an aiortc peer connection."""
from __future__ import annotations

import logging
from typing import Any
from typing import Awaitable
from typing import Callable

from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp

from callrelay.exceptions import NegotiationPrimitiveError

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ('stun:stun.stunprotocol.org',)


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    """Convert a session description to its JSON representation."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Convert the JSON representation of a session description.

    Raises:
        NegotiationPrimitiveError: If `data` is not a valid description.
    """
    try:
        return RTCSessionDescription(sdp=data['sdp'], type=data['type'])
    except (KeyError, TypeError, ValueError) as e:
        raise NegotiationPrimitiveError(
            f'Invalid session description: {e}',
        ) from e


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    """Convert an aiortc ICE candidate to its JSON representation."""
    return {
        'candidate': f'candidate:{candidate_to_sdp(candidate)}',
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


class AiortcPrimitive:
    """Negotiation primitive using [aiortc](https://aiortc.readthedocs.io/).

    Descriptions use the browser `RTCSessionDescriptionInit` shape
    (`{"type": ..., "sdp": ...}`) and candidates the `RTCIceCandidateInit`
    shape (`{"candidate": "candidate:...", "sdpMid": ...,
    "sdpMLineIndex": ...}`) so the primitive interoperates with browser
    participants.

    Note:
        aiortc gathers every local candidate while applying the local
        description, so local candidates are sent inside the description
        and the `on_ice_candidate` callback is never invoked.

    Args:
        peer_connection: Optional peer connection to negotiate. Tracks and
            data channels should be added to the connection before an offer
            is created. A new connection is created if `None`.
        ice_servers: STUN/TURN server URLs used when creating a new peer
            connection.
    """

    def __init__(
        self,
        peer_connection: RTCPeerConnection | None = None,
        *,
        ice_servers: tuple[str, ...] | list[str] = DEFAULT_ICE_SERVERS,
    ) -> None:
        if peer_connection is None:
            configuration = RTCConfiguration(
                iceServers=[RTCIceServer(urls=list(ice_servers))]
                if len(ice_servers) > 0
                else [],
            )
            peer_connection = RTCPeerConnection(configuration=configuration)
        self._pc = peer_connection

    @property
    def peer_connection(self) -> RTCPeerConnection:
        """Underlying aiortc peer connection."""
        return self._pc

    @property
    def local_description(self) -> dict[str, str] | None:
        """Local description including all gathered candidates."""
        description = self._pc.localDescription
        if description is None:
            return None
        return description_to_dict(description)

    async def create_offer(self) -> dict[str, str]:
        """Create a session description offer."""
        try:
            return description_to_dict(await self._pc.createOffer())
        except Exception as e:
            raise NegotiationPrimitiveError(
                f'Failed to create offer: {e}',
            ) from e

    async def create_answer(self) -> dict[str, str]:
        """Create a session description answer to the remote offer."""
        try:
            return description_to_dict(await self._pc.createAnswer())
        except Exception as e:
            raise NegotiationPrimitiveError(
                f'Failed to create answer: {e}',
            ) from e

    async def set_local_description(self, description: Any) -> None:
        """Apply a local session description."""
        obj = description_from_dict(description)
        try:
            await self._pc.setLocalDescription(obj)
        except Exception as e:
            raise NegotiationPrimitiveError(
                f'Failed to set local description: {e}',
            ) from e

    async def set_remote_description(self, description: Any) -> None:
        """Apply a remote session description."""
        obj = description_from_dict(description)
        try:
            await self._pc.setRemoteDescription(obj)
        except Exception as e:
            raise NegotiationPrimitiveError(
                f'Failed to set remote description: {e}',
            ) from e

    async def add_ice_candidate(self, candidate: Any) -> None:
        """Add a remote ICE candidate.

        A `None` or empty candidate signals the end of candidates and is
        ignored.
        """
        if candidate is None:
            return

        try:
            sdp = candidate['candidate']
            if sdp == '':
                return
            if sdp.startswith('candidate:'):
                sdp = sdp[len('candidate:') :]
            obj = candidate_from_sdp(sdp)
            obj.sdpMid = candidate.get('sdpMid')
            obj.sdpMLineIndex = candidate.get('sdpMLineIndex')
            await self._pc.addIceCandidate(obj)
        except Exception as e:
            raise NegotiationPrimitiveError(
                f'Failed to add ICE candidate: {e}',
            ) from e

    async def close(self) -> None:
        """Close the peer connection."""
        await self._pc.close()

    def on_ice_candidate(
        self,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        """Register a callback for gathered local candidates.

        aiortc does not trickle candidates so the callback is never invoked.
        """
        logger.debug(
            'aiortc sends local candidates inside the session description',
        )

    def on_connection_state(
        self,
        callback: Callable[[str], Awaitable[None]],
    ) -> None:
        """Register a callback for connection state changes."""

        async def _on_change() -> None:
            await callback(self._pc.connectionState)

        self._pc.on('connectionstatechange', _on_change)
