"""callrelay is a signaling relay for establishing WebRTC calls.

Two participants log in to a [`SignalingServer`][callrelay.server.SignalingServer]
by name and exchange session descriptions and ICE candidates through it
until their peer-to-peer connection is established. The client-side
[`Negotiator`][callrelay.negotiation.Negotiator] drives that exchange.
"""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('callrelay')
