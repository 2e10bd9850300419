"""Networking helpers for tests."""
from __future__ import annotations

import socket


def open_port(host: str = 'localhost') -> int:
    """Find a TCP port on `host` that no other socket is bound to."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]
